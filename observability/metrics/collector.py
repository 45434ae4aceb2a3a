"""
Metrics Collector
=================

Replication metrics, exported through prometheus_client or kept in memory.

The prometheus backend owns a private registry that can be scraped over HTTP
(``serve``) or pushed to a Pushgateway once the run ends. The memory backend
keeps the most recent samples so tests can assert on what the daemon did.
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional

from prometheus_client import (
    CollectorRegistry, Counter, Gauge, Histogram,
    generate_latest, push_to_gateway, start_http_server
)

logger = logging.getLogger(__name__)

# name -> (kind, help text, label names)
REPLICATION_METRICS = {
    "cdc_events_total": (
        "counter", "Change events read from the change stream", ("operation_type", "collection")),
    "cdc_stream_reconnects_total": (
        "counter", "Attempts to reopen the change stream", ("reason",)),
    "cdc_queue_depth": (
        "gauge", "Events buffered between the stream reader and the writer", ()),
    "cdc_lag_seconds": (
        "gauge", "Delay between a change's cluster time and its insert", ("collection",)),
    "cdc_columns_added_total": (
        "counter", "Columns created in the destination table", ("table_name",)),
    "cdc_migration_failures_total": (
        "counter", "ADD COLUMN statements that failed", ("table_name",)),
    "cdc_rows_inserted_total": (
        "counter", "Rows written to the destination table", ("collection",)),
    "cdc_insert_failures_total": (
        "counter", "Events whose row was not written", ("collection", "retryable")),
    "cdc_fields_skipped_total": (
        "counter", "Document fields left out of a row", ("reason",)),
    "cdc_event_processing_seconds": (
        "histogram", "Time spent migrating, encoding and inserting one event", ("outcome",)),
}

_PROMETHEUS_TYPES = {"counter": Counter, "gauge": Gauge, "histogram": Histogram}


class MetricsCollector:
    """
    Records replication metrics.

    Args:
        backend: ``prometheus`` or ``memory``
        pushgateway_url: Pushgateway address used by ``push_to_prometheus``
        job_name: Job label for pushed metrics
        max_samples: Samples kept by the memory backend; older ones are dropped
    """

    def __init__(
        self,
        backend: str = "prometheus",
        pushgateway_url: Optional[str] = None,
        job_name: str = "mongo_clickhouse_cdc",
        max_samples: int = 10000
    ):
        if backend not in ("prometheus", "memory"):
            raise ValueError(f"Unknown metrics backend: {backend}")

        self.backend = backend
        self.pushgateway_url = pushgateway_url
        self.job_name = job_name

        self._lock = threading.Lock()
        self._samples: Deque[Dict] = deque(maxlen=max_samples)
        self._registry = CollectorRegistry()
        self._instruments: Dict = {}

        if backend == "prometheus":
            for name, (kind, help_text, label_names) in REPLICATION_METRICS.items():
                self._instruments[name] = _PROMETHEUS_TYPES[kind](
                    name, help_text, label_names, registry=self._registry
                )

    def _apply(self, name: str, kind: str, value: float, labels: Dict):
        instrument = self._instruments.get(name)
        if instrument is None:
            logger.debug(f"Ignoring unregistered metric {name}")
            return
        if labels:
            instrument = instrument.labels(**labels)

        if kind == "counter":
            instrument.inc(value)
        elif kind == "gauge":
            instrument.set(value)
        else:
            instrument.observe(value)

    def _record(self, name: str, kind: str, value: float, labels: Optional[Dict]):
        labels = labels or {}
        with self._lock:
            if self.backend == "memory":
                self._samples.append({
                    "metric_name": name,
                    "metric_type": kind,
                    "value": value,
                    "labels": labels,
                    "timestamp": datetime.now().isoformat(),
                })
            else:
                self._apply(name, kind, value, labels)

    # =========================================
    # RECORDING
    # =========================================

    def record_counter(self, metric_name: str, value: float = 1, labels: Optional[Dict] = None):
        self._record(metric_name, "counter", value, labels)

    def record_gauge(self, metric_name: str, value: float, labels: Optional[Dict] = None):
        self._record(metric_name, "gauge", value, labels)

    def record_histogram(self, metric_name: str, value: float, labels: Optional[Dict] = None):
        self._record(metric_name, "histogram", value, labels)

    # =========================================
    # EXPORT
    # =========================================

    def serve(self, port: int):
        """Start the /metrics HTTP endpoint (prometheus backend only)."""
        if self.backend != "prometheus":
            logger.warning(f"Not serving metrics on :{port}, backend is {self.backend}")
            return
        start_http_server(port, registry=self._registry)
        logger.info(f"Metrics available at :{port}/metrics")

    def push_to_prometheus(self) -> bool:
        """
        Push the registry to the Pushgateway.

        Returns:
            True if the push went through
        """
        if not self.pushgateway_url:
            logger.warning("No Pushgateway configured, metrics not pushed")
            return False

        try:
            push_to_gateway(self.pushgateway_url, job=self.job_name, registry=self._registry)
        except OSError as e:
            logger.error(f"Pushgateway {self.pushgateway_url} rejected metrics: {e}")
            return False
        logger.info(f"Pushed metrics for job {self.job_name}")
        return True

    def get_prometheus_metrics(self) -> str:
        return generate_latest(self._registry).decode("utf-8")

    # =========================================
    # MEMORY BACKEND
    # =========================================

    def get_memory_metrics(self) -> List[Dict]:
        with self._lock:
            return list(self._samples)

    def total(self, metric_name: str, labels: Optional[Dict] = None) -> float:
        """Sum of recorded values for ``metric_name`` whose labels include ``labels``."""
        wanted = (labels or {}).items()
        return sum(
            sample["value"]
            for sample in self.get_memory_metrics()
            if sample["metric_name"] == metric_name
            and all(sample["labels"].get(k) == v for k, v in wanted)
        )

    def clear_memory_metrics(self):
        with self._lock:
            self._samples.clear()
