"""
Change Events
=============

Immutable representation of one MongoDB change stream notification.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from bson.timestamp import Timestamp

UNKNOWN_COLLECTION = "unknown"


class OperationType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    INVALIDATE = "invalidate"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OperationType":
        """Map a MongoDB ``operationType`` to an OperationType (drop, rename, ... -> OTHER)."""
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class Namespace:
    database: str
    collection: str = UNKNOWN_COLLECTION

    @property
    def qualified_name(self) -> str:
        return f"{self.database}.{self.collection}"


@dataclass(frozen=True)
class ChangeEvent:
    """
    One observed mutation at the source.

    Attributes:
        id: Resume token of this change (the change document's ``_id``)
        operation: Kind of mutation
        namespace: Database and collection the change occurred in
        document: Full post-change document; None for deletes and invalidations
        document_key: ``documentKey`` of the change, if any
        cluster_time: Server time of the change, if reported
    """

    id: Mapping[str, Any]
    operation: OperationType
    namespace: Namespace
    document: Optional[Mapping[str, Any]] = None
    document_key: Optional[Mapping[str, Any]] = None
    cluster_time: Optional[datetime] = None

    @property
    def has_document(self) -> bool:
        return self.document is not None

    @property
    def collection(self) -> str:
        return self.namespace.collection

    @classmethod
    def from_change(cls, change: Dict[str, Any]) -> "ChangeEvent":
        """Build an event from a raw change stream document."""
        ns = change.get("ns") or {}
        cluster_time = change.get("clusterTime")
        if isinstance(cluster_time, Timestamp):
            cluster_time = cluster_time.as_datetime()
        elif not isinstance(cluster_time, datetime):
            cluster_time = None

        return cls(
            id=change.get("_id"),
            operation=OperationType.parse(change.get("operationType")),
            namespace=Namespace(
                database=ns.get("db", ""),
                collection=ns.get("coll") or UNKNOWN_COLLECTION,
            ),
            document=change.get("fullDocument"),
            document_key=change.get("documentKey"),
            cluster_time=cluster_time,
        )
