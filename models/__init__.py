"""
SQLAlchemy ORM models for database tables.

This package defines the persisted state of the sync engine and query path:

Models:
    base: Base declarative class and shared enums (StorageLocation,
          SyncStatus, QueueStatus, CacheStatus)
    connection: Registered external data sources
    sync: Datasource sync records and the per-table transfer queue
    chart: Charts, their table dependencies and cached results

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and fall back to JSON on other engines.

Usage:
    from models import DataConnection, DatasourceSync, SyncQueueItem
    from models.base import StorageLocation, SyncStatus, QueueStatus

Relationships:
    - DataConnection → DatasourceSync (one-to-one for synced connections)
    - DatasourceSync → SyncQueueItem (one-to-many, one per table per attempt)
    - Chart → ChartDataCache (one-to-many, per tenant and fingerprint)
    - Chart → ChartTableDependency (one-to-many)
"""

from models.base import Base, StorageLocation, SyncStatus, QueueStatus, CacheStatus
from models.connection import DataConnection
from models.sync import DatasourceSync, SyncQueueItem
from models.chart import Chart, ChartTableDependency, ChartDataCache

__all__ = [
    "Base",
    "StorageLocation",
    "SyncStatus",
    "QueueStatus",
    "CacheStatus",
    "DataConnection",
    "DatasourceSync",
    "SyncQueueItem",
    "Chart",
    "ChartTableDependency",
    "ChartDataCache",
]
