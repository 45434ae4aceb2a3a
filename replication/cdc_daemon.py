"""
CDC Daemon - MongoDB to ClickHouse Replication
==============================================

Continuously consumes a MongoDB change stream and replicates every change
that carries a document as a row in ClickHouse, adding columns as new
fields appear.

Features:
- Reader thread decoupled from the writer by a bounded queue
- Single writer, so events are applied in change stream order
- Resume token checkpointing after every processed event (configurable)
- Reconnect with exponential backoff on transient stream errors
- Graceful shutdown handling: queued events are drained before exit
"""

import logging
import signal
import threading
from queue import Empty, Full, Queue
from typing import Any, Dict, Mapping, Optional

from observability import AlertManager, MetricsCollector, log_context, new_trace_id

from .connectors.clickhouse_connector import ClickHouseConnector
from .connectors.mongodb_connector import ChangeStreamReader, MongoDBConnector
from .errors import (
    CheckpointError,
    EndOfStream,
    MigrationError,
    ReplicationError,
    StoreConnectionError,
    TransientStreamError,
)
from .events import ChangeEvent
from .pipeline import ReplicationPipeline
from .schema_registry import SchemaRegistry

logger = logging.getLogger(__name__)

# How long blocking queue operations wait before re-checking the running flag
POLL_SECONDS = 0.5


class _EndMarker:
    """Queued by the reader when the change stream ended."""


class _ReaderFailure:
    """Queued by the reader when it gives up; carries the fatal error."""

    def __init__(self, error: Exception):
        self.error = error


class CDCDaemon:
    """
    Real-time CDC daemon that replicates MongoDB changes into ClickHouse.

    Args:
        task_settings: Settings dict from load_task_settings()
        source: MongoDB connector (built from settings when omitted)
        sink: ClickHouse connector (built from settings when omitted)
        checkpoint_store: Resume token store (None disables checkpointing)
        metrics: Metrics collector
        alerts: Alert manager
    """

    def __init__(
        self,
        task_settings: Dict,
        source: Optional[MongoDBConnector] = None,
        sink: Optional[ClickHouseConnector] = None,
        checkpoint_store=None,
        metrics: Optional[MetricsCollector] = None,
        alerts: Optional[AlertManager] = None
    ):
        self.task_settings = task_settings
        settings = task_settings["task_settings"]

        self.source = source or MongoDBConnector(task_settings["source"]["connection"])
        self.sink = sink or ClickHouseConnector(task_settings["target"]["connection"])
        self.checkpoint_store = checkpoint_store
        self.metrics = metrics or MetricsCollector(backend="prometheus")
        self.alerts = alerts or AlertManager()

        self.registry = SchemaRegistry(
            self.sink,
            migration_retries=settings["migration_retries"],
            retry_backoff_seconds=settings["retry_backoff_seconds"],
        )
        self.pipeline = ReplicationPipeline.from_settings(
            settings, self.registry, self.sink, metrics=self.metrics, alerts=self.alerts
        )

        self.max_reconnect_attempts = settings["max_reconnect_attempts"]
        self.retry_backoff_seconds = settings["retry_backoff_seconds"]
        self.max_retry_backoff_seconds = settings["max_retry_backoff_seconds"]
        self.checkpoint_interval = settings["checkpoint_interval"]

        # State
        self.running = False
        self.run_id = new_trace_id()
        self.event_queue: Queue = Queue(maxsize=settings["queue_size"])
        self.events_processed = 0
        self._reader: Optional[ChangeStreamReader] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._last_processed_token: Optional[Mapping[str, Any]] = None
        self._last_saved_token: Optional[Mapping[str, Any]] = None
        self._writer_stopped = False
        self._stop_requested = threading.Event()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.stop()

    def install_signal_handlers(self):
        """Stop on SIGINT / SIGTERM. Only possible from the main thread."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def stop(self):
        self.running = False
        self._stop_requested.set()

    def _backoff(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds unless stopped first. Returns False if stopped."""
        self._stop_requested.wait(delay)
        return self.running

    # =========================================
    # LIFECYCLE
    # =========================================

    def connect(self):
        """Connect to both stores and prepare the destination table."""
        self.source.connect()
        logger.info("✓ Connected to MongoDB")
        self.sink.connect()
        logger.info("✓ Connected to ClickHouse")

        self.sink.ensure_table()
        self.registry.reconcile()
        logger.info(f"Known columns: {sorted(self.registry.known_columns)}")

    def disconnect(self):
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        self.source.disconnect()
        self.sink.disconnect()
        logger.info("Connections closed")

    def _load_resume_token(self) -> Optional[Mapping[str, Any]]:
        if self.checkpoint_store is None:
            return None
        token = self.checkpoint_store.load()
        if token is not None:
            logger.info(f"Resuming from checkpoint: {self.checkpoint_store.describe()}")
        return token

    def _save_checkpoint(self, force: bool = False):
        if self.checkpoint_store is None or self._last_processed_token is None:
            return
        if self._last_processed_token == self._last_saved_token:
            return
        if not force and self.events_processed % self.checkpoint_interval != 0:
            return
        self.checkpoint_store.save(self._last_processed_token, self.events_processed)
        self._last_saved_token = self._last_processed_token

    # =========================================
    # READER
    # =========================================

    def _open_stream(self, resume_token: Optional[Mapping[str, Any]]) -> Optional[ChangeStreamReader]:
        """
        Open the change stream, retrying transient failures with backoff.

        Returns:
            The reader, or None if the daemon was stopped while retrying
        """
        delay = self.retry_backoff_seconds
        attempts = 0
        while True:
            try:
                return self.source.watch(resume_token)
            except TransientStreamError as e:
                attempts += 1
                if attempts > self.max_reconnect_attempts:
                    raise StoreConnectionError(
                        "mongodb", f"Change stream unavailable after {attempts} attempts: {e}"
                    ) from e
                if not e.resumable:
                    resume_token = self._last_processed_token or self._load_resume_token()
                logger.warning(
                    f"Opening change stream failed ({attempts}/{self.max_reconnect_attempts}): {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                self.metrics.record_counter("cdc_stream_reconnects_total", labels={"reason": "open_failed"})
                if not self._backoff(delay):
                    logger.info("Shutdown requested while reopening the change stream")
                    return None
                delay = min(delay * 2, self.max_retry_backoff_seconds)

    def _enqueue(self, item) -> bool:
        """Block until the item is queued; give up (False) if the daemon is stopping."""
        while self.running:
            try:
                self.event_queue.put(item, timeout=POLL_SECONDS)
                return True
            except Full:
                continue
        return False

    def _put_final(self, item):
        """Queue an end/failure marker even while shutting down."""
        while True:
            try:
                self.event_queue.put(item, timeout=POLL_SECONDS)
                return
            except Full:
                if not self.running and self._writer_stopped:
                    return

    def _read_loop(self, resume_token: Optional[Mapping[str, Any]]):
        """Reader thread: pull events from the change stream into the queue."""
        with log_context(run_id=self.run_id, role="reader"):
            try:
                self._reader = self._open_stream(resume_token)
                failures = 0
                if self._reader is None:
                    return
                while self.running:
                    try:
                        event = self._reader.read_next()
                    except EndOfStream:
                        logger.info("Change stream ended")
                        self._put_final(_EndMarker())
                        return
                    except TransientStreamError as e:
                        failures += 1
                        if failures > self.max_reconnect_attempts:
                            raise StoreConnectionError(
                                "mongodb", f"Change stream failed {failures} times in a row: {e}"
                            ) from e
                        if not self._reconnect(e, failures):
                            return
                        continue

                    failures = 0
                    if event is None:
                        continue
                    logger.info(f"Received change event - Id: {event.id}")
                    if not self._enqueue(event):
                        logger.info("Shutdown requested; event left for the next run")
                        return
                    self.metrics.record_gauge("cdc_queue_depth", self.event_queue.qsize())
            except ReplicationError as e:
                logger.error(f"Reader stopped: {e}")
                self._put_final(_ReaderFailure(e))
            except Exception as e:
                logger.exception(f"Reader crashed: {e!r}")
                error = StoreConnectionError("mongodb", f"Change stream reader crashed: {e!r}")
                error.__cause__ = e
                self._put_final(_ReaderFailure(error))
            finally:
                if self._reader is not None:
                    self._reader.close()

    def _reconnect(self, error: TransientStreamError, failures: int) -> bool:
        """Reopen the stream after ``error``. Returns False if the daemon was stopped meanwhile."""
        delay = min(
            self.retry_backoff_seconds * (2 ** (failures - 1)),
            self.max_retry_backoff_seconds
        )
        logger.warning(
            f"Error processing change stream ({failures}/{self.max_reconnect_attempts}): {error}. "
            f"Reconnecting in {delay:.1f}s"
        )
        self.metrics.record_counter(
            "cdc_stream_reconnects_total",
            labels={"reason": "resumable" if error.resumable else "checkpoint"}
        )
        self._reader.close()
        token = self._reader.resume_token
        self._reader = None
        if not self._backoff(delay):
            return False

        if not error.resumable:
            # The stream cannot continue from the last delivered token; go back
            # to the last processed one and let the queue drain first.
            self.event_queue.join()
            token = self._last_processed_token or self._load_resume_token()
        self._reader = self._open_stream(token)
        return self._reader is not None

    # =========================================
    # WRITER
    # =========================================

    def _handle(self, event: ChangeEvent):
        context = {
            "event_id": str(event.id),
            "collection": event.collection,
            "operation": event.operation.value,
        }
        if event.document_key is not None:
            context["document_key"] = str(event.document_key)
        with log_context(**context):
            logger.debug(f"Applying change to {event.namespace.qualified_name}")
            self.pipeline.process_event(event)
        self.events_processed += 1
        self._last_processed_token = event.id
        self._save_checkpoint()

    def _write_loop(self):
        """Apply queued events in order until the stream ends or shutdown completes."""
        while True:
            try:
                item = self.event_queue.get(timeout=POLL_SECONDS)
            except Empty:
                if not self._reader_thread.is_alive() and self.event_queue.empty():
                    if self.running:
                        raise StoreConnectionError("mongodb", "Change stream reader exited without ending the stream")
                    return
                continue

            try:
                if isinstance(item, _EndMarker):
                    return
                if isinstance(item, _ReaderFailure):
                    raise item.error
                self._handle(item)
            finally:
                self.event_queue.task_done()

    def _shutdown(self) -> Optional[CheckpointError]:
        """Stop the reader, save the final checkpoint and close both stores."""
        self.running = False
        self._writer_stopped = True
        if self._reader_thread is not None:
            self._reader_thread.join(timeout=10)

        checkpoint_error = None
        try:
            self._save_checkpoint(force=True)
        except CheckpointError as e:
            logger.error(f"Final checkpoint not saved: {e}")
            self.alerts.alert_pipeline_failure(f"Final checkpoint not saved: {e}", alert_type="checkpoint_failure")
            checkpoint_error = e
        finally:
            self.disconnect()

        logger.info(
            f"CDC Daemon stopped: {self.events_processed} events processed, "
            f"{self.pipeline.unprocessed_events} unprocessed"
        )
        return checkpoint_error

    def run(self):
        """
        Run the daemon until the stream ends, a fatal error occurs or stop() is called.

        Raises:
            StoreConnectionError: a store stayed unreachable or the reader crashed
            MigrationError: an event was deferred under the defer_event policy
            CheckpointError: the resume token could not be saved
        """
        logger.info("=" * 60)
        logger.info("CDC DAEMON - MONGODB -> CLICKHOUSE")
        logger.info("=" * 60)

        with log_context(run_id=self.run_id, role="writer"):
            self._writer_stopped = False
            self._reader_thread = None
            self._stop_requested.clear()

            try:
                self.connect()
                resume_token = self._load_resume_token()
                self.running = True

                self._reader_thread = threading.Thread(
                    target=self._read_loop, args=(resume_token,), name="cdc-reader", daemon=True
                )
                self._reader_thread.start()
                logger.info("Watching for MongoDB changes...")

                self._write_loop()
            except (StoreConnectionError, MigrationError, CheckpointError) as e:
                logger.error(f"Replication stopped: {e}")
                self.alerts.alert_pipeline_failure(str(e))
                raise
            finally:
                checkpoint_error = self._shutdown()

            if checkpoint_error is not None:
                raise checkpoint_error
