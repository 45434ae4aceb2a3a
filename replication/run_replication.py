#!/usr/bin/env python3
"""
Replication Runner
==================

CLI script to run the MongoDB -> ClickHouse replication daemon.

Usage:
    python -m replication.run_replication run                 # Replicate until stopped
    python -m replication.run_replication test                # Test connections only
    python -m replication.run_replication checkpoint          # Show the stored resume token
    python -m replication.run_replication reset-checkpoint    # Start from "now" next run
"""

import argparse
import logging
import sys
from typing import Dict

from observability import AlertManager, MetricsCollector, configure_logging

from .cdc_daemon import CDCDaemon
from .checkpoint import create_checkpoint_store
from .config import load_task_settings
from .connectors.clickhouse_connector import ClickHouseConnector
from .connectors.mongodb_connector import MongoDBConnector
from .errors import ConfigError, ReplicationError

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def build_metrics(metrics_settings: Dict) -> MetricsCollector:
    metrics = MetricsCollector(
        backend=metrics_settings.get("backend", "prometheus"),
        pushgateway_url=metrics_settings.get("pushgateway_url"),
        job_name=metrics_settings.get("job_name", "mongo_clickhouse_cdc"),
    )
    if metrics.backend == "prometheus" and metrics_settings.get("http_port"):
        metrics.serve(int(metrics_settings["http_port"]))
    return metrics


def build_alerts(alert_settings: Dict) -> AlertManager:
    return AlertManager(
        postgres_dsn=alert_settings.get("postgres_dsn"),
        slack_webhook_url=alert_settings.get("slack_webhook_url"),
        dedup_window_minutes=alert_settings.get("dedup_window_minutes", 60),
        source=alert_settings.get("source", "mongo_clickhouse_cdc"),
    )


def test_connections(task_settings: Dict) -> bool:
    """Test source and target connections."""
    print("=" * 60)
    print("TESTING CONNECTIONS")
    print("=" * 60)

    source = MongoDBConnector(task_settings["source"]["connection"])
    sink = ClickHouseConnector(task_settings["target"]["connection"])

    try:
        source.connect()
        print("\n✓ MongoDB Source")

        sink.connect()
        sink.ensure_table()
        columns = sorted(sink.list_columns())
        print(f"\n✓ ClickHouse Target: {sink.table}")
        for column in columns:
            print(f"    - {column}")

        print("\n✓ All connections successful!")
        return True
    except ReplicationError as e:
        print(f"\n✗ Connection failed: {e}")
        return False
    finally:
        source.disconnect()
        sink.disconnect()


def show_checkpoint(task_settings: Dict) -> bool:
    store = create_checkpoint_store(task_settings["task_settings"]["checkpoint"])
    checkpoint = store.read()
    print(f"Checkpoint: {store.describe()}")
    print(f"    Resume token: {checkpoint.get('resume_token')}")
    print(f"    Last saved: {checkpoint.get('last_timestamp')}")
    print(f"    Events processed: {checkpoint.get('events_processed', 0):,}")
    return True


def reset_checkpoint(task_settings: Dict) -> bool:
    store = create_checkpoint_store(task_settings["task_settings"]["checkpoint"])
    store.clear()
    print(f"✓ Checkpoint cleared: {store.describe()}")
    return True


def run_daemon(task_settings: Dict) -> bool:
    """Run the replication daemon until it is stopped or fails."""
    settings = task_settings["task_settings"]
    metrics = build_metrics(settings["metrics"])
    alerts = build_alerts(settings["alerts"])
    checkpoint_store = create_checkpoint_store(settings["checkpoint"])

    daemon = CDCDaemon(
        task_settings,
        checkpoint_store=checkpoint_store,
        metrics=metrics,
        alerts=alerts,
    )
    daemon.install_signal_handlers()

    try:
        daemon.run()
        return True
    except ReplicationError as e:
        logger.error(f"Replication failed: {e}")
        return False
    finally:
        if metrics.pushgateway_url:
            metrics.push_to_prometheus()
        alerts.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="MongoDB -> ClickHouse Change Replication")
    parser.add_argument(
        "command",
        choices=["run", "test", "checkpoint", "reset-checkpoint"],
        help="Command to run"
    )
    parser.add_argument("--config", help="Path to config directory")

    args = parser.parse_args(argv)

    try:
        task_settings = load_task_settings(args.config)
    except ConfigError as e:
        print(f"✗ Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    log_settings = task_settings["task_settings"]["logging"]
    configure_logging(
        level=log_settings.get("level", "INFO"),
        json_format=log_settings.get("json_format", False),
        log_to_file=log_settings.get("log_to_file", False),
        log_path=log_settings.get("log_path"),
    )

    commands = {
        "run": run_daemon,
        "test": test_connections,
        "checkpoint": show_checkpoint,
        "reset-checkpoint": reset_checkpoint,
    }
    try:
        success = commands[args.command](task_settings)
    except ConfigError as e:
        print(f"✗ Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)
    except ReplicationError as e:
        print(f"✗ {args.command} failed: {e}", file=sys.stderr)
        success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
