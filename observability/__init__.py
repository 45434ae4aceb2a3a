"""
Observability for the replication daemon.

- ``metrics.collector``: replication counters, gauges and histograms (prometheus_client)
- ``alerts.manager``: deduplicated alerts to PostgreSQL and Slack
- ``logging.structured_logger``: plain or JSON logs with per-event context

Example:
    configure_logging(level="INFO", json_format=True)
    metrics = MetricsCollector(backend="prometheus")
    with log_context(collection="users"):
        metrics.record_counter("cdc_rows_inserted_total", labels={"collection": "users"})
"""

from .alerts.manager import AlertManager
from .logging.structured_logger import configure_logging, log_context, new_trace_id
from .metrics.collector import MetricsCollector

__all__ = ["AlertManager", "MetricsCollector", "configure_logging", "log_context", "new_trace_id"]
