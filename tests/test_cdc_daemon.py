"""
Tests for ``replication.cdc_daemon``.

The daemon runs for real (reader thread, bounded queue, writer) against a
scripted change stream and the in-memory ClickHouse fake.
"""

import pytest
from clickhouse_connect.driver.exceptions import DatabaseError, OperationalError
from pymongo.errors import ConnectionFailure, InvalidOperation, OperationFailure

from observability.logging.structured_logger import current_context
from replication.cdc_daemon import CDCDaemon
from replication.checkpoint import FileCheckpointStore
from replication.connectors.clickhouse_connector import ClickHouseConnector
from replication.errors import CheckpointError, MigrationError, StoreConnectionError, TransientStreamError

from .conftest import FakeChangeStream, FakeSource, make_change

TABLE = "mongodb_changes"


def doc_change(seq, **fields):
    return make_change(seq, document={"seq": seq, **fields})


def token(seq):
    return {"_data": f"8263{seq:08d}"}


@pytest.fixture
def checkpoint_store(tmp_path):
    return FileCheckpointStore(str(tmp_path / "checkpoint.json"))


@pytest.fixture
def make_daemon(task_settings, clickhouse_client, checkpoint_store, metrics, alerts):
    def _make(streams, **task_overrides):
        task_settings["task_settings"].update(task_overrides)
        sink = ClickHouseConnector(task_settings["target"]["connection"], client=clickhouse_client)
        source = FakeSource(streams)
        daemon = CDCDaemon(
            task_settings,
            source=source,
            sink=sink,
            checkpoint_store=checkpoint_store,
            metrics=metrics,
            alerts=alerts,
        )
        return daemon, source
    return _make


def replicated(client):
    return [row["seq"] for row in client.rows[TABLE]]


class TestRun:
    def test_replicates_until_stream_ends(self, make_daemon, clickhouse_client, checkpoint_store):
        daemon, source = make_daemon([FakeChangeStream([doc_change(i) for i in range(1, 6)])])

        daemon.run()

        assert replicated(clickhouse_client) == ["1", "2", "3", "4", "5"]
        assert daemon.events_processed == 5
        assert checkpoint_store.load() == token(5)
        assert checkpoint_store.read()["events_processed"] == 5
        assert not source.connected

    def test_schema_grows_with_documents(self, make_daemon, clickhouse_client):
        daemon, _ = make_daemon([FakeChangeStream([
            doc_change(1, name="Ann"),
            doc_change(2, name="Ann", age=30),
            make_change(3, operation="delete"),
        ])])

        daemon.run()

        assert {"seq", "name", "age"} <= set(clickhouse_client.tables[TABLE])
        assert len(clickhouse_client.rows[TABLE]) == 2
        assert daemon.events_processed == 3

    def test_resumes_from_checkpoint(self, make_daemon, checkpoint_store):
        checkpoint_store.save(token(7), 7)
        daemon, source = make_daemon([FakeChangeStream([doc_change(8)])])

        daemon.run()

        assert source.watch_tokens[0] == token(7)
        assert checkpoint_store.load() == token(8)

    def test_checkpoint_interval(self, make_daemon, checkpoint_store):
        saved = []
        original_save = checkpoint_store.save

        def record_save(resume_token, events_processed=0):
            saved.append(events_processed)
            original_save(resume_token, events_processed)

        checkpoint_store.save = record_save
        daemon, _ = make_daemon([FakeChangeStream([doc_change(i) for i in range(1, 6)])], checkpoint_interval=2)

        daemon.run()

        assert saved == [2, 4, 5]

    def test_events_are_logged_with_document_key(self, make_daemon):
        daemon, _ = make_daemon([FakeChangeStream([doc_change(3)])])
        contexts = []
        process_event = daemon.pipeline.process_event

        def record_context(event):
            contexts.append(current_context())
            return process_event(event)

        daemon.pipeline.process_event = record_context

        daemon.run()

        assert contexts[0]["document_key"] == str({"_id": 3})
        assert contexts[0]["collection"] == "users"
        assert contexts[0]["run_id"] == daemon.run_id

    def test_stop_drains_queued_events(self, make_daemon, clickhouse_client):
        holder = {}
        stream = FakeChangeStream(
            [doc_change(i) for i in range(1, 21)],
            keep_alive=True,
            on_exhausted=lambda: holder["daemon"].stop(),
        )
        daemon, _ = make_daemon([stream], queue_size=5)
        holder["daemon"] = daemon

        daemon.run()

        assert replicated(clickhouse_client) == [str(i) for i in range(1, 21)]


class TestReconnect:
    def test_resumes_after_transient_error(self, make_daemon, clickhouse_client, metrics):
        daemon, source = make_daemon([
            FakeChangeStream([doc_change(1), doc_change(2), ConnectionFailure("reset")]),
            FakeChangeStream([doc_change(3)]),
        ])

        daemon.run()

        assert source.watch_tokens == [None, token(2)]
        assert replicated(clickhouse_client) == ["1", "2", "3"]
        assert metrics.total("cdc_stream_reconnects_total", {"reason": "resumable"}) == 1

    def test_non_resumable_error_restarts_from_checkpoint(self, make_daemon, clickhouse_client):
        history_lost = OperationFailure("resume point no longer in oplog", code=286)
        daemon, source = make_daemon([
            FakeChangeStream([doc_change(1), history_lost]),
            FakeChangeStream([doc_change(2)]),
        ])

        daemon.run()

        assert source.watch_tokens == [None, token(1)]
        assert replicated(clickhouse_client) == ["1", "2"]

    def test_gives_up_after_max_attempts(self, make_daemon, alerts):
        streams = [FakeChangeStream([ConnectionFailure("down")]) for _ in range(4)]
        daemon, _ = make_daemon(streams, max_reconnect_attempts=2)

        with pytest.raises(StoreConnectionError):
            daemon.run()

        assert alerts.history[-1]["alert_type"] == "pipeline_failure"

    def test_stop_interrupts_reopen_backoff(self, make_daemon):
        daemon, source = make_daemon(
            [TransientStreamError("not primary")] * 3,
            retry_backoff_seconds=60,
            max_retry_backoff_seconds=60,
        )
        watch = source.watch

        def stop_then_watch(resume_token=None):
            daemon.stop()
            return watch(resume_token)

        source.watch = stop_then_watch

        daemon.run()

        assert source.watch_tokens == [None]
        assert not source.connected

    def test_open_failure_retried(self, make_daemon, clickhouse_client):
        daemon, source = make_daemon([
            TransientStreamError("not primary"),
            FakeChangeStream([doc_change(1)]),
        ])

        daemon.run()

        assert source.watch_tokens == [None, None]
        assert replicated(clickhouse_client) == ["1"]


class TestFatalErrors:
    def test_clickhouse_outage_stops_without_checkpoint(self, make_daemon, clickhouse_client, checkpoint_store):
        daemon, _ = make_daemon(
            [FakeChangeStream([doc_change(1), doc_change(2)])],
            max_insert_retries=1,
        )
        clickhouse_client.fail("VALUES ('insert', 'users', 2)", OperationalError("connection refused"), times=5)

        with pytest.raises(StoreConnectionError):
            daemon.run()

        assert replicated(clickhouse_client) == ["1"]
        assert checkpoint_store.load() == token(1)

    def test_deferred_event_is_not_checkpointed(self, make_daemon, clickhouse_client, checkpoint_store):
        daemon, _ = make_daemon(
            [FakeChangeStream([doc_change(1), doc_change(2, bad=True)])],
            on_migration_failure="defer_event",
        )
        clickhouse_client.fail("EXISTS bad ", DatabaseError("Code: 44. Cannot add column"))

        with pytest.raises(MigrationError):
            daemon.run()

        assert checkpoint_store.load() == token(1)

    def test_driver_error_stops_with_alert(self, make_daemon, clickhouse_client, alerts):
        daemon, source = make_daemon([
            FakeChangeStream([doc_change(1), InvalidOperation("cursor gone"), doc_change(2)]),
        ])

        with pytest.raises(StoreConnectionError):
            daemon.run()

        assert replicated(clickhouse_client) == ["1"]
        assert alerts.history[-1]["alert_type"] == "pipeline_failure"
        assert not source.connected

    def test_reader_crash_is_not_a_clean_end(self, make_daemon, alerts):
        daemon, _ = make_daemon([FakeChangeStream([doc_change(1), RuntimeError("boom")])])

        with pytest.raises(StoreConnectionError) as exc_info:
            daemon.run()

        assert "boom" in str(exc_info.value)
        assert len(alerts.history) == 1


class TestCheckpointFailures:
    @pytest.fixture
    def broken_store(self, tmp_path):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        return FileCheckpointStore(str(blocker / "checkpoint.json"))

    def test_failed_save_still_disconnects(self, make_daemon, clickhouse_client, broken_store, alerts):
        daemon, source = make_daemon([FakeChangeStream([doc_change(1), doc_change(2)])])
        daemon.checkpoint_store = broken_store

        with pytest.raises(CheckpointError):
            daemon.run()

        assert not source.connected
        assert clickhouse_client.closed
        assert daemon.sink.client is None
        assert {alert["alert_type"] for alert in alerts.history} == {"pipeline_failure", "checkpoint_failure"}

    def test_failed_final_save_raises_after_clean_end(self, make_daemon, clickhouse_client, broken_store, alerts):
        daemon, source = make_daemon([FakeChangeStream([doc_change(1)])], checkpoint_interval=10)
        daemon.checkpoint_store = broken_store

        with pytest.raises(CheckpointError):
            daemon.run()

        assert replicated(clickhouse_client) == ["1"]
        assert not source.connected
        assert [alert["alert_type"] for alert in alerts.history] == ["checkpoint_failure"]
