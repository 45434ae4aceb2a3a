"""
Alert Manager
=============

Operator-visible alerts raised by the replication daemon.

Every alert is kept in an in-memory history. When configured, alerts are also
written to PostgreSQL (``replication.alerts``) and posted to a Slack webhook.
Repeats of the same alert inside the dedup window are dropped.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional, Tuple

import psycopg2
import requests
from psycopg2.extras import Json

logger = logging.getLogger(__name__)

SEVERITIES = ("info", "warning", "error", "critical")

SLACK_COLORS = {
    "info": "#439fe0",
    "warning": "#daa038",
    "error": "#d00000",
    "critical": "#7a0019",
}

INSERT_ALERTS_SQL = """
    INSERT INTO replication.alerts
        (raised_at, alert_type, severity, source, title, message, details)
    VALUES (%s, %s, %s, %s, %s, %s, %s)
"""


class AlertManager:
    """
    Raises alerts and routes them to the configured channels.

    Args:
        postgres_dsn: DSN of the database holding ``replication.alerts``
        slack_webhook_url: Slack incoming webhook URL
        dedup_window_minutes: Repeats of an alert inside this window are dropped
        source: Name reported as the alert source
        history_size: Number of recent alerts kept in memory
    """

    def __init__(
        self,
        postgres_dsn: Optional[str] = None,
        slack_webhook_url: Optional[str] = None,
        dedup_window_minutes: int = 60,
        source: str = "mongo_clickhouse_cdc",
        history_size: int = 500
    ):
        self.postgres_dsn = postgres_dsn
        self.slack_webhook_url = slack_webhook_url
        self.dedup_window = timedelta(minutes=dedup_window_minutes)
        self.source = source

        self._history: Deque[Dict] = deque(maxlen=history_size)
        self._raised_at: Dict[Tuple[str, str, str], datetime] = {}
        self._lock = threading.Lock()
        self._conn = None

    @property
    def history(self) -> List[Dict]:
        with self._lock:
            return list(self._history)

    def close(self):
        conn, self._conn = self._conn, None
        if conn is None or conn.closed:
            return
        try:
            conn.close()
        except psycopg2.Error as e:
            logger.warning(f"Error closing alert database connection: {e}")

    def _connection(self):
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self.postgres_dsn)
        return self._conn

    # =========================================
    # RAISING ALERTS
    # =========================================

    def send_alert(
        self,
        severity: str,
        title: str,
        message: str,
        alert_type: str = "pipeline_failure",
        source: Optional[str] = None,
        metadata: Optional[Dict] = None,
        dedup: bool = True
    ) -> Optional[Dict]:
        """
        Record an alert and notify the configured channels.

        Args:
            severity: One of info, warning, error, critical (anything else is a warning)
            title: Short summary; part of the dedup key
            message: Details for the operator
            alert_type: insert_failure, schema_migration_failure, pipeline_failure, ...
            source: Reporting component (defaults to the manager's source)
            metadata: Extra structured context
            dedup: Drop the alert if the same one was raised inside the window

        Returns:
            The alert record, or None if it was a duplicate
        """
        severity = severity.lower() if severity.lower() in SEVERITIES else "warning"
        source = source or self.source
        key = (alert_type, source, title)
        now = datetime.now()

        with self._lock:
            last = self._raised_at.get(key)
            if dedup and last is not None and now - last < self.dedup_window:
                logger.debug(f"Suppressing repeated alert: {title}")
                return None
            self._raised_at[key] = now

            alert = {
                "alert_type": alert_type,
                "severity": severity,
                "source": source,
                "title": title,
                "message": message,
                "metadata": dict(metadata or {}),
                "created_at": now.isoformat(),
            }
            self._history.append(alert)

        level = logging.CRITICAL if severity == "critical" else logging.WARNING
        logger.log(level, f"ALERT [{severity}] {title}: {message}")

        if self.postgres_dsn:
            self._store(alert, now)
        if self.slack_webhook_url:
            self._notify_slack(alert)
        return alert

    def _store(self, alert: Dict, raised_at: datetime):
        try:
            conn = self._connection()
            with conn.cursor() as cur:
                cur.execute(INSERT_ALERTS_SQL, (
                    raised_at,
                    alert["alert_type"],
                    alert["severity"],
                    alert["source"],
                    alert["title"],
                    alert["message"],
                    Json(alert["metadata"]),
                ))
            conn.commit()
        except psycopg2.Error as e:
            logger.error(f"Could not store alert '{alert['title']}': {e}")
            # Reconnect on the next alert
            self.close()

    def _notify_slack(self, alert: Dict):
        payload = {
            "text": f"[{alert['severity'].upper()}] {alert['title']}",
            "attachments": [{
                "color": SLACK_COLORS[alert["severity"]],
                "text": alert["message"],
                "footer": f"{alert['source']} · {alert['alert_type']}",
            }],
        }
        try:
            response = requests.post(self.slack_webhook_url, json=payload, timeout=10)
        except requests.RequestException as e:
            logger.error(f"Slack webhook unreachable: {e}")
            return
        if response.status_code != 200:
            logger.warning(f"Slack webhook answered {response.status_code}")

    # =========================================
    # REPLICATION ALERTS
    # =========================================

    def alert_insert_failures(
        self,
        table_name: str,
        fields: List[str],
        failures: int,
        error_message: str
    ) -> Optional[Dict]:
        """Rows with the same field set keep being rejected."""
        return self.send_alert(
            "error",
            f"Repeated insert failures: {table_name}",
            f"{failures} consecutive rows with fields {fields} were rejected by "
            f"'{table_name}'. Last error: {error_message}",
            alert_type="insert_failure",
            metadata={"table_name": table_name, "fields": fields, "failures": failures},
        )

    def alert_migration_failure(self, table_name: str, field_name: str, error_message: str) -> Optional[Dict]:
        """A column for a new field could not be added."""
        return self.send_alert(
            "warning",
            f"Schema migration failed: {table_name}.{field_name}",
            f"Could not add a column for field '{field_name}'. Error: {error_message}",
            alert_type="schema_migration_failure",
            metadata={"table_name": table_name, "field_name": field_name},
        )

    def alert_pipeline_failure(self, error_message: str, alert_type: str = "pipeline_failure") -> Optional[Dict]:
        """The daemon stopped on a fatal error. Never deduplicated."""
        return self.send_alert(
            "critical",
            "Replication stopped",
            f"The replication daemon stopped: {error_message}",
            alert_type=alert_type,
            dedup=False,
        )
