"""
Replication Pipeline
====================

Applies one change event to ClickHouse: schema check, column migration,
value encoding and row insert, in that order.

Failure policy:
- A field whose column cannot be added is left out of the row
  (``skip_field``), or the whole event is held back until the column exists
  (``defer_event``; the daemon stops without checkpointing it).
- A field whose value cannot be encoded is left out of the row.
- A failed insert is retried with exponential backoff. If it still fails,
  a connectivity problem stops the daemon; any other error is counted and the
  event is given up, and repeated failures for the same document shape raise
  an operator alert.
"""

import logging
import time
from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from observability import AlertManager, MetricsCollector

from .connectors.clickhouse_connector import PIPELINE_COLUMNS, ClickHouseConnector
from .errors import EncodingError, InsertError, MigrationError, StoreConnectionError
from .events import ChangeEvent
from .schema_registry import SchemaRegistry
from .value_encoder import DEFAULT_MAX_DEPTH, encode, escape_identifier, quote_literal

logger = logging.getLogger(__name__)

SKIP_FIELD = "skip_field"
DEFER_EVENT = "defer_event"


class EventOutcome(str, Enum):
    INSERTED = "inserted"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReplicationPipeline:
    """
    Per-event write path shared by the daemon and the tests.

    Args:
        registry: Schema registry for the destination table
        sink: ClickHouse connector
        metrics: Metrics collector
        alerts: Alert manager for operator-visible escalations
        on_migration_failure: 'skip_field' or 'defer_event'
        max_insert_retries: Retries after the first failed insert
        retry_backoff_seconds: Delay before the first retry, doubled each time
        max_retry_backoff_seconds: Upper bound on the retry delay
        max_encoding_depth: Deepest nesting accepted by the encoder
        failure_alert_threshold: Consecutive failures per document shape before alerting
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        sink: ClickHouseConnector,
        metrics: Optional[MetricsCollector] = None,
        alerts: Optional[AlertManager] = None,
        on_migration_failure: str = SKIP_FIELD,
        max_insert_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        max_retry_backoff_seconds: float = 30.0,
        max_encoding_depth: int = DEFAULT_MAX_DEPTH,
        failure_alert_threshold: int = 5
    ):
        if on_migration_failure not in (SKIP_FIELD, DEFER_EVENT):
            raise ValueError(f"Unknown migration failure policy: {on_migration_failure}")

        self.registry = registry
        self.sink = sink
        self.metrics = metrics or MetricsCollector(backend="prometheus")
        self.alerts = alerts or AlertManager()
        self.on_migration_failure = on_migration_failure
        self.max_insert_retries = max_insert_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.max_retry_backoff_seconds = max_retry_backoff_seconds
        self.max_encoding_depth = max_encoding_depth
        self.failure_alert_threshold = failure_alert_threshold

        self.stats = Counter()
        self._shape_failures: Dict[Tuple[str, ...], int] = {}

    @classmethod
    def from_settings(
        cls,
        task_settings: Dict,
        registry: SchemaRegistry,
        sink: ClickHouseConnector,
        metrics: Optional[MetricsCollector] = None,
        alerts: Optional[AlertManager] = None
    ) -> "ReplicationPipeline":
        return cls(
            registry,
            sink,
            metrics=metrics,
            alerts=alerts,
            on_migration_failure=task_settings["on_migration_failure"],
            max_insert_retries=task_settings["max_insert_retries"],
            retry_backoff_seconds=task_settings["retry_backoff_seconds"],
            max_retry_backoff_seconds=task_settings["max_retry_backoff_seconds"],
            max_encoding_depth=task_settings["max_encoding_depth"],
            failure_alert_threshold=task_settings["failure_alert_threshold"],
        )

    @property
    def unprocessed_events(self) -> int:
        return self.stats[EventOutcome.FAILED.value]

    def process_event(self, event: ChangeEvent) -> EventOutcome:
        """
        Replicate one change event.

        Raises:
            MigrationError: under ``defer_event`` when a column still cannot be added
            StoreConnectionError: when ClickHouse stays unreachable through all retries
        """
        start = time.time()
        self.metrics.record_counter(
            "cdc_events_total",
            labels={"operation_type": event.operation.value, "collection": event.collection}
        )

        if not event.has_document:
            logger.info(f"No document for {event.operation.value} event in {event.collection}, skipping")
            outcome = EventOutcome.SKIPPED
        else:
            outcome = self._replicate(event)

        self.stats[outcome.value] += 1
        self.metrics.record_histogram(
            "cdc_event_processing_seconds", time.time() - start, {"outcome": outcome.value}
        )
        if event.cluster_time is not None:
            self._record_lag(event)
        return outcome

    def _record_lag(self, event: ChangeEvent):
        cluster_time = event.cluster_time
        if cluster_time.tzinfo is None:
            cluster_time = cluster_time.replace(tzinfo=timezone.utc)
        lag = (datetime.now(timezone.utc) - cluster_time).total_seconds()
        self.metrics.record_gauge("cdc_lag_seconds", max(lag, 0.0), {"collection": event.collection})

    def _replicate(self, event: ChangeEvent) -> EventOutcome:
        fields = self._document_fields(event)
        unavailable = self._ensure_columns(fields)

        document_columns = self._encode_fields(event, fields, unavailable)
        row = self.sink.build_row(
            quote_literal(event.operation.value),
            quote_literal(event.collection),
            document_columns
        )
        return self._insert(event, row, fields)

    def _document_fields(self, event: ChangeEvent) -> List[str]:
        fields = []
        for name in event.document.keys():
            if name in PIPELINE_COLUMNS:
                logger.warning(f"Field '{name}' collides with a pipeline column, leaving it out")
                self._skip_field("reserved_name")
                continue
            fields.append(name)
        return fields

    def _ensure_columns(self, fields: List[str]) -> Dict[str, MigrationError]:
        """Migrate new fields; return the ones that still have no column."""
        result = self.registry.ensure_columns(fields)
        table = self.sink.table

        if result.added:
            self.metrics.record_counter("cdc_columns_added_total", len(result.added), {"table_name": table})
        if result.ok:
            return {}

        self.metrics.record_counter("cdc_migration_failures_total", len(result.failed), {"table_name": table})
        for name, error in result.failed.items():
            self.alerts.alert_migration_failure(table, name, str(error))

        if self.on_migration_failure == DEFER_EVENT:
            logger.error(f"Deferring event: columns {sorted(result.failed)} could not be added")
            raise next(iter(result.failed.values()))

        logger.warning(f"Writing row without fields {sorted(result.failed)}: columns could not be added")
        for _ in result.failed:
            self._skip_field("migration_failed")
        return result.failed

    def _encode_fields(
        self,
        event: ChangeEvent,
        fields: List[str],
        unavailable: Dict[str, MigrationError]
    ) -> List[Tuple[str, str]]:
        columns = []
        for name in fields:
            if name in unavailable:
                continue
            try:
                literal = encode(event.document[name], max_depth=self.max_encoding_depth)
            except EncodingError as e:
                logger.warning(f"Cannot encode field '{name}': {e}, leaving it out")
                self._skip_field("encoding_failed")
                continue
            columns.append((escape_identifier(name), literal))
        return columns

    def _skip_field(self, reason: str):
        self.stats["fields_skipped"] += 1
        self.metrics.record_counter("cdc_fields_skipped_total", labels={"reason": reason})

    def _insert(self, event: ChangeEvent, row: List[Tuple[str, str]], fields: List[str]) -> EventOutcome:
        shape = tuple(sorted(fields))
        delay = self.retry_backoff_seconds
        error: Optional[InsertError] = None

        for attempt in range(self.max_insert_retries + 1):
            try:
                self.sink.insert_row(row)
            except InsertError as e:
                error = e
                if attempt < self.max_insert_retries:
                    logger.warning(
                        f"Insert attempt {attempt + 1}/{self.max_insert_retries + 1} failed: {e}. "
                        f"Retrying in {delay:.1f}s"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_backoff_seconds)
                continue

            logger.info(f"Data inserted into ClickHouse ({event.operation.value} on {event.collection})")
            self.metrics.record_counter("cdc_rows_inserted_total", labels={"collection": event.collection})
            self._shape_failures.pop(shape, None)
            return EventOutcome.INSERTED

        self.metrics.record_counter(
            "cdc_insert_failures_total",
            labels={"collection": event.collection, "retryable": str(error.retryable).lower()}
        )

        if error.retryable:
            raise StoreConnectionError("clickhouse", f"Insert failed after {self.max_insert_retries + 1} attempts: {error}")

        logger.error(f"Error inserting data, giving up on event: {error}")
        failures = self._shape_failures.get(shape, 0) + 1
        self._shape_failures[shape] = failures
        if failures >= self.failure_alert_threshold:
            self.alerts.alert_insert_failures(self.sink.table, list(shape), failures, str(error))
        return EventOutcome.FAILED
