from datetime import datetime, timezone
from sqlalchemy import JSON, Enum
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (test engine)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def enum_column(enum_cls):
    """Enum column that stores the member values rather than names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


# ============================================================================
# ENUMS
# ============================================================================

class StorageLocation(str, enum.Enum):
    """Where a connection's data is answered from"""
    EXTERNAL = "external"
    TENANT_SHARED = "tenant_shared"
    SYNCED = "synced"


class SyncStatus(str, enum.Enum):
    """Datasource sync status"""
    IDLE = "idle"
    QUEUED = "queued"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


class QueueStatus(str, enum.Enum):
    """Per-table transfer queue item status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class CacheStatus(str, enum.Enum):
    """Declared chart cache status"""
    CACHED = "cached"
    STALE = "stale"
    DYNAMIC = "dynamic"
    UNKNOWN = "unknown"
