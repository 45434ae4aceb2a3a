"""
MongoDB -> ClickHouse Change Replication
========================================

Tails a MongoDB change stream and writes every change that carries a document
as a row in a ClickHouse table, adding String columns as new fields appear.

Components:
- connectors: MongoDB change stream reader, ClickHouse sink
- schema_registry: known columns and additive column migrations
- value_encoder: BSON value -> ClickHouse literal rendering
- pipeline: per-event migrate / encode / insert path
- cdc_daemon: reader thread, bounded queue and single writer
- checkpoint: resume token persistence
"""

from .cdc_daemon import CDCDaemon
from .config import load_task_settings
from .events import ChangeEvent, Namespace, OperationType
from .pipeline import EventOutcome, ReplicationPipeline
from .schema_registry import SchemaRegistry

__version__ = "1.0.0"
__all__ = [
    "CDCDaemon",
    "ChangeEvent",
    "EventOutcome",
    "Namespace",
    "OperationType",
    "ReplicationPipeline",
    "SchemaRegistry",
    "load_task_settings",
]
