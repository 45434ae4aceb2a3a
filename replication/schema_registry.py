"""
Schema Registry
===============

Authoritative in-process view of the change table's columns.

Detects field names that have no column yet and extends the table with
additive ``ADD COLUMN IF NOT EXISTS`` DDL. A name is only marked known after
the DDL for it succeeded, so a failed migration is retried the next time the
field shows up.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Set

from .connectors.clickhouse_connector import BASE_COLUMNS, COLUMN_TYPE
from .errors import MigrationError, StoreError
from .value_encoder import escape_identifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchemaColumn:
    name: str
    sql_type: str = COLUMN_TYPE


@dataclass
class MigrationResult:
    """Outcome of a migrate() call."""

    added: Set[str] = field(default_factory=set)
    failed: Dict[str, MigrationError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class SchemaRegistry:
    """
    Append-only set of known column names for one destination table.

    Args:
        sink: Connector exposing apply_column_add() and list_columns()
        base_columns: Columns the table is created with
        migration_retries: Extra attempts for a retryable DDL failure
        retry_backoff_seconds: Delay before the first retry, doubled each time
    """

    def __init__(
        self,
        sink,
        base_columns: Iterable[str] = BASE_COLUMNS,
        migration_retries: int = 2,
        retry_backoff_seconds: float = 0.5
    ):
        self.sink = sink
        self.migration_retries = migration_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._known: Set[str] = set(base_columns)
        self._lock = threading.Lock()

    @property
    def known_columns(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._known)

    @property
    def columns(self) -> List[SchemaColumn]:
        return [SchemaColumn(name) for name in sorted(self.known_columns)]

    def diff(self, field_names: Iterable[str]) -> Set[str]:
        """Return the field names that have no column yet."""
        with self._lock:
            return self._diff(field_names)

    def _diff(self, field_names: Iterable[str]) -> Set[str]:
        return {name for name in field_names if name not in self._known}

    def reconcile(self) -> Set[str]:
        """
        Pull the live column list from the sink into the known set.

        Returns:
            Names that were found live but were not known yet
        """
        live = self.sink.list_columns()
        with self._lock:
            discovered = live - self._known
            self._known |= live
        if discovered:
            logger.info(f"Reconciled {len(discovered)} existing columns: {sorted(discovered)}")
        return discovered

    def migrate(self, new_field_names: Iterable[str]) -> MigrationResult:
        """
        Add a column for every name that is not known yet.

        Names are migrated independently; one failure does not stop the rest.
        """
        with self._lock:
            return self._migrate(new_field_names)

    def ensure_columns(self, field_names: Iterable[str]) -> MigrationResult:
        """Diff and migrate as one step, holding the lock throughout."""
        with self._lock:
            return self._migrate(self._diff(field_names))

    def _migrate(self, names: Iterable[str]) -> MigrationResult:
        result = MigrationResult()
        pending = sorted(name for name in set(names) if name not in self._known)
        if pending:
            logger.info(f"Adding new columns: {pending}")

        for name in pending:
            try:
                self._add_column(name)
            except MigrationError as e:
                logger.error(f"Migration failed for field '{name}': {e}")
                result.failed[name] = e
                continue
            self._known.add(name)
            result.added.add(name)

        return result

    def _add_column(self, name: str):
        identifier = escape_identifier(name)
        delay = self.retry_backoff_seconds

        for attempt in range(self.migration_retries + 1):
            try:
                self.sink.apply_column_add(identifier)
                return
            except StoreError as e:
                if not e.retryable or attempt == self.migration_retries:
                    raise MigrationError(name, identifier, str(e), retryable=e.retryable) from e
                logger.warning(
                    f"ADD COLUMN {identifier} attempt {attempt + 1}/{self.migration_retries + 1} "
                    f"failed: {e}. Retrying in {delay:.1f}s"
                )
                time.sleep(delay)
                delay *= 2
