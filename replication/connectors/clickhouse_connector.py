"""
ClickHouse Target Connector
===========================

Connector for writing change rows to ClickHouse.
Owns the destination table: bootstrap, additive DDL and single-row inserts.
"""

import logging
from typing import Dict, List, Sequence, Set, Tuple

import clickhouse_connect
from clickhouse_connect.driver.exceptions import ClickHouseError, OperationalError

from ..errors import InsertError, StoreConnectionError, StoreError
from ..value_encoder import escape_identifier

logger = logging.getLogger(__name__)

BASE_COLUMNS = ("_id", "itemid", "operation_type", "collection", "type", "timestamp")
PIPELINE_COLUMNS = ("operation_type", "collection")
COLUMN_TYPE = "String"


class ClickHouseConnector:
    """
    ClickHouse connector for change replication.
    """

    def __init__(self, config: Dict, client=None):
        """
        Initialize ClickHouse connector.

        Args:
            config: Connection configuration dict with host, port, user, password, database, table
            client: Already constructed clickhouse-connect client (skips connect)
        """
        self.config = config
        self.table = config.get("table", "mongodb_changes")
        self.client = client

    def connect(self):
        """Establish connection to ClickHouse."""
        if self.client is None:
            try:
                self.client = clickhouse_connect.get_client(
                    host=self.config["host"],
                    port=int(self.config["port"]),
                    username=self.config["user"],
                    password=self.config["password"],
                    database=self.config["database"],
                    secure=self.config.get("secure", False),
                    connect_timeout=self.config.get("connect_timeout", 10),
                    send_receive_timeout=self.config.get("send_receive_timeout", 30),
                )
            except ClickHouseError as e:
                raise StoreConnectionError("clickhouse", str(e)) from e

        logger.info(
            f"Connected to ClickHouse: {self.config['host']}:{self.config['port']}/"
            f"{self.config['database']} as {self.config['user']}"
        )

    def disconnect(self):
        """Close the HTTP client."""
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("ClickHouse connection closed")

    def execute(self, statement: str):
        """
        Run a single DDL/DML statement.

        Raises:
            StoreError: retryable for network faults and timeouts, not retryable otherwise
        """
        try:
            self.client.command(statement)
        except OperationalError as e:
            raise StoreError(str(e), statement=statement, retryable=True) from e
        except ClickHouseError as e:
            raise StoreError(str(e), statement=statement, retryable=False) from e

    # =========================================
    # DDL
    # =========================================

    def ensure_table(self):
        """Create the change table if it does not exist."""
        statement = f"""
            CREATE TABLE IF NOT EXISTS {escape_identifier(self.table)} (
                _id String,
                itemid String,
                operation_type String,
                collection String,
                type String,
                timestamp DateTime DEFAULT now()
            ) ENGINE = MergeTree()
            ORDER BY (timestamp, _id)
        """
        self.execute(statement)
        logger.info(f"Table ready: {self.table}")

    def apply_column_add(self, identifier: str):
        """
        Add a String column; an existing column counts as success.

        Args:
            identifier: Column name already passed through escape_identifier
        """
        statement = (
            f"ALTER TABLE {escape_identifier(self.table)} "
            f"ADD COLUMN IF NOT EXISTS {identifier} {COLUMN_TYPE}"
        )
        try:
            self.execute(statement)
        except StoreError as e:
            if "already exists" in str(e).lower():
                logger.debug(f"Column {identifier} already exists")
                return
            raise

    def list_columns(self) -> Set[str]:
        """Get the live column names of the change table."""
        try:
            result = self.client.query(
                "SELECT name FROM system.columns "
                "WHERE database = currentDatabase() AND table = {table:String}",
                parameters={"table": self.table},
            )
        except OperationalError as e:
            raise StoreError(str(e), retryable=True) from e
        except ClickHouseError as e:
            raise StoreError(str(e), retryable=False) from e
        return {row[0] for row in result.result_rows}

    # =========================================
    # DML
    # =========================================

    @staticmethod
    def build_row(
        operation_type: str,
        collection: str,
        document_columns: Sequence[Tuple[str, str]]
    ) -> List[Tuple[str, str]]:
        """
        Assemble the ordered (identifier, literal) list for one row.

        ``operation_type`` and ``collection`` are literals; they always come
        first, followed by the document's own columns in their given order.
        """
        return [("operation_type", operation_type), ("collection", collection), *document_columns]

    def insert_row(self, columns: Sequence[Tuple[str, str]]):
        """
        Insert one row. Does not retry.

        Args:
            columns: Ordered (identifier, literal) pairs

        Raises:
            InsertError: if the statement failed
        """
        identifiers = ", ".join(identifier for identifier, _ in columns)
        literals = ", ".join(literal for _, literal in columns)
        statement = f"INSERT INTO {escape_identifier(self.table)} ({identifiers}) VALUES ({literals})"
        try:
            self.execute(statement)
        except StoreError as e:
            raise InsertError(str(e), retryable=e.retryable) from e
