"""
Shared pytest fixtures for the replication tests.

Provides:
- FakeClickHouseClient: in-memory stand-in for a clickhouse-connect client that
  understands the CREATE / ALTER / INSERT statements the sink emits
- FakeChangeStream / FakeMongoClient: scripted pymongo change streams
- Settings built through load_task_settings() with a test environment
"""

import re
from typing import Any, Dict, List, Optional, Tuple

import pytest
from clickhouse_connect.driver.exceptions import DatabaseError

from observability import AlertManager, MetricsCollector
from replication.config import load_task_settings
from replication.connectors.clickhouse_connector import ClickHouseConnector
from replication.connectors.mongodb_connector import ChangeStreamReader


TEST_ENV = {
    "MONGODB_USER": "cdc",
    "MONGODB_PASSWORD": "secret",
    "MONGODB_HOST": "localhost",
    "MONGODB_PORT": "27017",
    "MONGODB_ADMIN_DB": "admin",
    "CLICKHOUSE_HOST": "localhost",
    "CLICKHOUSE_PORT": "8123",
    "CLICKHOUSE_USER": "default",
    "CLICKHOUSE_PASSWORD": "clickhouse",
    "CLICKHOUSE_DB": "default",
}


# =============================================================================
# ClickHouse fake
# =============================================================================


def _scan_group(text: str, start: int) -> Tuple[List[str], int]:
    """
    Split the parenthesised, comma separated list opening at text[start].

    Quotes (' and `) and backslash escapes are honoured. Returns the raw items
    and the index just past the closing parenthesis.
    """
    assert text[start] == "("
    items, current = [], []
    quote = None
    depth = 0
    i = start + 1
    while i < len(text):
        ch = text[i]
        if quote:
            current.append(ch)
            if ch == "\\":
                current.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", "`"):
            quote = ch
            current.append(ch)
        elif ch == "(":
            depth += 1
            current.append(ch)
        elif ch == ")" and depth:
            depth -= 1
            current.append(ch)
        elif ch == ",":
            items.append("".join(current).strip())
            current = []
        elif ch == ")":
            items.append("".join(current).strip())
            return items, i + 1
        else:
            current.append(ch)
        i += 1
    raise AssertionError(f"Unbalanced statement: {text}")


def _unescape(body: str) -> str:
    out, i = [], 0
    while i < len(body):
        if body[i] == "\\":
            out.append(body[i + 1])
            i += 2
        else:
            out.append(body[i])
            i += 1
    return "".join(out)


def parse_identifier(token: str) -> str:
    token = token.strip()
    if token.startswith("`"):
        return _unescape(token[1:-1])
    return token


def parse_literal(token: str) -> Optional[str]:
    if token == "NULL":
        return None
    if token.startswith("'"):
        return _unescape(token[1:-1])
    return token


class FakeQueryResult:
    def __init__(self, rows):
        self.result_rows = rows


class FakeClickHouseClient:
    """In-memory table store that executes the sink's statements."""

    def __init__(self):
        self.tables: Dict[str, List[str]] = {}
        self.rows: Dict[str, List[Dict[str, Optional[str]]]] = {}
        self.statements: List[str] = []
        self.closed = False
        self._failures: List[List[Any]] = []

    def fail(self, match: str, error: Exception, times: int = 1):
        """Raise ``error`` for the next ``times`` statements containing ``match``."""
        self._failures.append([match, error, times])

    def _maybe_fail(self, statement: str):
        for failure in self._failures:
            match, error, times = failure
            if times and match in statement:
                failure[2] = times - 1
                raise error

    def command(self, statement: str):
        statement = statement.strip()
        self._maybe_fail(statement)
        self.statements.append(statement)

        if statement.startswith("CREATE TABLE IF NOT EXISTS "):
            rest = " ".join(statement.split())[len("CREATE TABLE IF NOT EXISTS "):]
            table, _, _ = rest.partition(" ")
            definitions, _ = _scan_group(rest, rest.index("("))
            self.tables.setdefault(table, [d.split()[0] for d in definitions])
            self.rows.setdefault(table, [])
            return None

        match = re.match(r"ALTER TABLE (\S+) ADD COLUMN IF NOT EXISTS (.+) String$", statement)
        if match:
            table, identifier = match.groups()
            name = parse_identifier(identifier)
            if name not in self.tables[table]:
                self.tables[table].append(name)
            return None

        if statement.startswith("INSERT INTO "):
            rest = statement[len("INSERT INTO "):]
            table = rest.split(" ", 1)[0]
            identifiers, end = _scan_group(rest, rest.index("("))
            values_at = rest.index("VALUES", end) + len("VALUES ")
            literals, _ = _scan_group(rest, values_at)
            names = [parse_identifier(i) for i in identifiers]
            unknown = [name for name in names if name not in self.tables[table]]
            if unknown:
                raise DatabaseError(f"Code: 16. DB::Exception: No such column {unknown[0]}")
            self.rows[table].append(dict(zip(names, (parse_literal(v) for v in literals))))
            return None

        raise AssertionError(f"Unexpected statement: {statement}")

    def query(self, query: str, parameters: Optional[Dict] = None):
        self._maybe_fail(query)
        table = (parameters or {}).get("table")
        return FakeQueryResult([(name,) for name in self.tables.get(table, [])])

    def close(self):
        self.closed = True


# =============================================================================
# MongoDB fakes
# =============================================================================


def make_change(
    seq: int,
    operation: str = "insert",
    collection: str = "users",
    document: Optional[Dict] = None,
    database: str = "app"
) -> Dict:
    """Raw change stream document as pymongo returns it."""
    change = {
        "_id": {"_data": f"8263{seq:08d}"},
        "operationType": operation,
        "ns": {"db": database, "coll": collection},
        "documentKey": {"_id": seq},
    }
    if document is not None:
        change["fullDocument"] = document
    return change


class FakeChangeStream:
    """
    Scripted pymongo ChangeStream.

    ``script`` items are returned by try_next() in order; exceptions are raised.
    When the script runs out the stream closes itself unless ``keep_alive`` is
    set, in which case try_next() keeps returning None and ``on_exhausted`` is
    called once.
    """

    def __init__(self, script, keep_alive: bool = False, on_exhausted=None):
        self._script = list(script)
        self._keep_alive = keep_alive
        self._on_exhausted = on_exhausted
        self._open = True
        self.closed = False

    @property
    def alive(self) -> bool:
        return self._open

    def try_next(self):
        if self._script:
            item = self._script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self._on_exhausted is not None:
            callback, self._on_exhausted = self._on_exhausted, None
            callback()
        if not self._keep_alive:
            self._open = False
        return None

    def close(self):
        self._open = False
        self.closed = True


class FakeWatchable:
    """Client, database or collection handle that records watch() calls."""

    def __init__(self, name: str = "", calls: Optional[List] = None, streams: Optional[List] = None):
        self.name = name
        self.calls = calls if calls is not None else []
        self.streams = streams if streams is not None else []

    def __getitem__(self, key):
        name = f"{self.name}.{key}" if self.name else key
        return FakeWatchable(name, self.calls, self.streams)

    def watch(self, **options):
        self.calls.append((self.name, options))
        return self.streams.pop(0) if self.streams else FakeChangeStream([])


class FakeAdmin:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error

    def command(self, name):
        if self.error:
            raise self.error
        return {"ok": 1}


class FakeMongoClient(FakeWatchable):
    def __init__(self, streams=None, ping_error: Optional[Exception] = None):
        super().__init__(streams=list(streams or []))
        self.admin = FakeAdmin(ping_error)
        self.closed = False

    def close(self):
        self.closed = True


class FakeSource:
    """MongoDBConnector stand-in for daemon tests."""

    def __init__(self, streams):
        self.streams = list(streams)
        self.watch_tokens = []
        self.connected = False

    def connect(self):
        self.connected = True

    def disconnect(self):
        self.connected = False

    def watch(self, resume_token=None):
        self.watch_tokens.append(resume_token)
        item = self.streams.pop(0) if self.streams else FakeChangeStream([])
        if isinstance(item, Exception):
            raise item
        return ChangeStreamReader(item, resume_token=resume_token)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def test_env() -> Dict[str, str]:
    return dict(TEST_ENV)


@pytest.fixture
def task_settings(test_env, tmp_path) -> Dict:
    """Bundled settings with instant retries and a temporary checkpoint."""
    settings = load_task_settings(env=test_env)
    task = settings["task_settings"]
    task["retry_backoff_seconds"] = 0
    task["max_retry_backoff_seconds"] = 0
    task["checkpoint"]["path"] = str(tmp_path / "checkpoint.json")
    task["metrics"] = {"backend": "memory"}
    return settings


@pytest.fixture
def clickhouse_client() -> FakeClickHouseClient:
    return FakeClickHouseClient()


@pytest.fixture
def sink(task_settings, clickhouse_client) -> ClickHouseConnector:
    connector = ClickHouseConnector(task_settings["target"]["connection"], client=clickhouse_client)
    connector.ensure_table()
    return connector


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(backend="memory")


@pytest.fixture
def alerts() -> AlertManager:
    return AlertManager()
