"""
Replication Errors
==================

Error taxonomy shared by the reader, schema registry, encoder and sink.

- ConfigError: a required setting is missing or invalid (fatal, startup only)
- StoreConnectionError: a store cannot be reached (fatal once retries are exhausted)
- TransientStreamError: the change stream failed but can be resumed
- EndOfStream: the change stream was closed without error
- StoreError: a single statement failed at the destination
- MigrationError: an ADD COLUMN for one field failed
- InsertError: a row write failed
- EncodingError: a value could not be rendered (too deeply nested)
- CheckpointError: the resume token could not be loaded or saved
"""

from typing import Optional


class ReplicationError(Exception):
    """Base class for all replication errors."""


class ConfigError(ReplicationError):
    """Required configuration is missing or invalid."""


class StoreConnectionError(ReplicationError):
    """Cannot establish or re-establish a connection to a store."""

    def __init__(self, store: str, message: str):
        super().__init__(f"{store}: {message}")
        self.store = store


class TransientStreamError(ReplicationError):
    """
    The change stream reported a recoverable fault.

    When ``resumable`` is False the stream cannot continue from the last
    delivered token (e.g. the oplog no longer holds it) and the caller should
    fall back to the last durable checkpoint.
    """

    def __init__(self, message: str, resumable: bool = True):
        super().__init__(message)
        self.resumable = resumable


class EndOfStream(ReplicationError):
    """The change stream was closed by the server (e.g. after an invalidate)."""


class StoreError(ReplicationError):
    """A statement failed at the destination store."""

    def __init__(self, message: str, statement: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.statement = statement
        self.retryable = retryable


class MigrationError(ReplicationError):
    """Adding the column for a field failed; the field is not known yet."""

    def __init__(self, field: str, identifier: str, message: str, retryable: bool = False):
        super().__init__(f"Cannot add column {identifier}: {message}")
        self.field = field
        self.identifier = identifier
        self.retryable = retryable


class InsertError(ReplicationError):
    """The row write failed after encoding."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class EncodingError(ReplicationError):
    """A value cannot be rendered as a literal."""


class CheckpointError(ReplicationError):
    """The resume token could not be read or written."""
