"""
Replication Connectors
======================

Source and target connectors for the replication daemon.
"""

from .mongodb_connector import MongoDBConnector, ChangeStreamReader
from .clickhouse_connector import ClickHouseConnector

__all__ = ["MongoDBConnector", "ChangeStreamReader", "ClickHouseConnector"]
