"""
Ingestion Connectors
====================

Change sources and object stores used by the replication pipeline.
"""

from .base import ChangeSource, ObjectStore, SourceMetadata
from .binlog_source import MySQLBinlogSource
from .local_connector import LocalFileConnector
from .minio_connector import MinIOConnector
from .polling_source import SQLPollingSource

__all__ = [
    "ChangeSource",
    "ObjectStore",
    "SourceMetadata",
    "MySQLBinlogSource",
    "LocalFileConnector",
    "MinIOConnector",
    "SQLPollingSource",
]
