"""
MongoDB Source Connector
========================

Connector for consuming MongoDB change streams.
Produces an ordered, lazy sequence of ChangeEvents and tracks the resume
token of the last delivered event so the caller can reconnect without loss.
"""

import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional
from urllib.parse import quote_plus

from bson.errors import BSONError
from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from ..errors import EndOfStream, StoreConnectionError, TransientStreamError
from ..events import ChangeEvent, OperationType

logger = logging.getLogger(__name__)

# ChangeStreamFatalError, ChangeStreamHistoryLost
NON_RESUMABLE_CODES = {280, 286}


class ChangeStreamReader:
    """
    Wraps an open pymongo change stream.

    Not restartable: once closed, a new reader must be opened through
    MongoDBConnector.watch() with ``resume_token``.
    """

    def __init__(self, stream, resume_token: Optional[Mapping[str, Any]] = None):
        self._stream = stream
        self._resume_token = resume_token
        self._invalidated = False

    @property
    def resume_token(self) -> Optional[Mapping[str, Any]]:
        """Resume token of the most recently delivered event."""
        return self._resume_token

    def read_next(self) -> Optional[ChangeEvent]:
        """
        Get the next change event.

        Returns:
            The next event, or None if nothing arrived within the await window

        Raises:
            EndOfStream: the stream was closed (e.g. after an invalidate event)
            TransientStreamError: network fault or cursor loss
            StoreConnectionError: any other driver error (the stream cannot be used)
        """
        if self._invalidated or not self._stream.alive:
            raise EndOfStream("Change stream closed")

        try:
            change = self._stream.try_next()
        except ConnectionFailure as e:
            raise TransientStreamError(f"Change stream connection lost: {e}") from e
        except OperationFailure as e:
            resumable = e.code not in NON_RESUMABLE_CODES
            raise TransientStreamError(f"Change stream failed: {e}", resumable=resumable) from e
        except (PyMongoError, BSONError) as e:
            raise StoreConnectionError("mongodb", f"Change stream unusable: {e}") from e

        if change is None:
            return None

        event = ChangeEvent.from_change(change)
        self._resume_token = event.id
        if event.operation is OperationType.INVALIDATE:
            self._invalidated = True
        return event

    def __iter__(self) -> Iterator[ChangeEvent]:
        while True:
            try:
                event = self.read_next()
            except EndOfStream:
                return
            if event is not None:
                yield event

    def close(self):
        try:
            self._stream.close()
        except PyMongoError as e:
            logger.warning(f"Error closing change stream: {e}")


class MongoDBConnector:
    """
    MongoDB connector for change stream consumption.
    """

    def __init__(self, config: Dict, client: Optional[MongoClient] = None):
        """
        Initialize MongoDB connector.

        Args:
            config: Connection configuration dict with host, port, user, password, admin_db
                and optional database, collections, full_document, max_await_time_ms
            client: Already constructed MongoClient (skips client creation)
        """
        self.config = config
        self.client = client

    @property
    def uri(self) -> str:
        user = quote_plus(self.config["user"])
        password = quote_plus(self.config["password"])
        return (
            f"mongodb://{user}:{password}@{self.config['host']}:{self.config['port']}"
            f"/{self.config['admin_db']}"
        )

    def connect(self):
        """Establish connection to MongoDB and verify it with a ping."""
        try:
            if self.client is None:
                self.client = MongoClient(
                    self.uri,
                    serverSelectionTimeoutMS=self.config.get("server_selection_timeout_ms", 10000),
                )
            self.client.admin.command("ping")
        except PyMongoError as e:
            raise StoreConnectionError("mongodb", str(e)) from e

        logger.info(f"Connected to MongoDB: {self.config['host']}:{self.config['port']}")

    def disconnect(self):
        """Close MongoDB connection."""
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("MongoDB connection closed")

    def _watch_target(self):
        database = self.config.get("database")
        collections = self.config.get("collections") or []
        if not database:
            return self.client
        if len(collections) == 1:
            return self.client[database][collections[0]]
        return self.client[database]

    def _pipeline(self) -> List[Dict]:
        collections = self.config.get("collections") or []
        if len(collections) > 1 or (collections and not self.config.get("database")):
            return [{"$match": {"ns.coll": {"$in": list(collections)}}}]
        return []

    def watch(self, resume_token: Optional[Mapping[str, Any]] = None) -> ChangeStreamReader:
        """
        Open a change stream.

        Args:
            resume_token: Token of the last processed event; the stream starts
                right after it. None starts at the current time.

        Returns:
            ChangeStreamReader over the configured cluster, database or collection
        """
        options = {
            "pipeline": self._pipeline(),
            "full_document": self.config.get("full_document", "updateLookup"),
            "max_await_time_ms": self.config.get("max_await_time_ms", 1000),
        }
        if resume_token is not None:
            options["resume_after"] = resume_token

        try:
            stream = self._watch_target().watch(**options)
        except ConnectionFailure as e:
            raise TransientStreamError(f"Cannot open change stream: {e}") from e
        except OperationFailure as e:
            resumable = e.code not in NON_RESUMABLE_CODES
            raise TransientStreamError(f"Cannot open change stream: {e}", resumable=resumable) from e
        except PyMongoError as e:
            raise StoreConnectionError("mongodb", f"Cannot open change stream: {e}") from e

        if resume_token is not None:
            logger.info(f"Change stream resumed after token {resume_token}")
        else:
            logger.info("Change stream opened at current time")
        return ChangeStreamReader(stream, resume_token=resume_token)
