"""
Pydantic schemas for service results and API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from models.base import StorageLocation, SyncStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Data Transfer Results
# ============================================================================

class TransferInitResult(BaseModel):
    """Outcome of initializing a sync for one connection"""
    schema_name: str = ""
    tables_queued: int = 0
    tables_skipped: int = 0
    skipped_tables: List[str] = Field(default_factory=list)
    dropped_tables: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None


class QueueItemResult(BaseModel):
    """Outcome of processing one chunk of one queue item"""
    processed: bool
    item_id: Optional[str] = None
    table_name: Optional[str] = None
    rows_transferred: int = 0
    complete: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None


class SyncQueueResult(BaseModel):
    """Machine-readable progress of one queue-draining invocation"""
    items_processed: int = 0
    rows_transferred: int = 0
    errors: List[str] = Field(default_factory=list)
    complete: bool = False


class QueueItemInfo(BaseModel):
    id: str
    table_name: str
    status: str
    last_row_offset: int
    total_rows: Optional[int]
    priority: int
    error: Optional[str] = None


class SyncStatusResponse(BaseModel):
    """Sync record plus a summary of its queue"""
    connection_id: int
    sync_status: SyncStatus
    target_schema_name: Optional[str] = None
    sync_progress: Dict[str, Any] = Field(default_factory=dict)
    sync_schedule: Optional[Dict[str, Any]] = None
    sync_error: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    queue_summary: Dict[str, int] = Field(default_factory=dict)
    queue_items: List[QueueItemInfo] = Field(default_factory=list)

    class Config:
        use_enum_values = True


# ============================================================================
# Schedules
# ============================================================================

SCHEDULE_INTERVALS = ("HOURLY", "DAILY", "WEEKLY", "MONTHLY")
WEEKDAYS = ("Mo", "Tu", "We", "Th", "Fr", "Sa", "Su")


class SyncSchedule(BaseModel):
    """Recurring sync schedule. time is HH:MM in the given IANA timezone."""
    interval: str = Field(..., description="HOURLY, DAILY, WEEKLY or MONTHLY")
    time: str = Field(default="00:00", description="Time of day as HH:MM")
    timezone: str = Field(default="UTC", description="IANA timezone name")
    days_of_week: List[str] = Field(default_factory=list, description="Mo, Tu, We, Th, Fr, Sa, Su")

    @validator("interval", pre=True)
    def validate_interval(cls, v):
        v = str(v).upper()
        if v not in SCHEDULE_INTERVALS:
            raise ValueError(f"interval must be one of: {', '.join(SCHEDULE_INTERVALS)}")
        return v

    @validator("time")
    def validate_time(cls, v):
        parts = v.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError("time must be HH:MM")
        hour, minute = int(parts[0]), int(parts[1])
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError("time must be HH:MM")
        return f"{hour:02d}:{minute:02d}"

    @validator("timezone")
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone: {v}")
        return v

    @validator("days_of_week", pre=True)
    def validate_days(cls, v):
        if not v:
            return []
        days = [str(d)[:2].capitalize() for d in v]
        invalid = [d for d in days if d not in WEEKDAYS]
        if invalid:
            raise ValueError(f"unknown days: {', '.join(invalid)}")
        return days


# ============================================================================
# Data Transfer Requests
# ============================================================================

class TransferStartRequest(BaseModel):
    connection_id: int
    process_now: bool = Field(default=False, description="Drain the queue right after initializing")


class ScheduleRequest(BaseModel):
    connection_id: int
    schedule: Optional[SyncSchedule] = None


class ProcessRequest(BaseModel):
    max_time_ms: Optional[int] = Field(None, ge=1)
    chunk_size: Optional[int] = Field(None, ge=1)


class ResetRequest(BaseModel):
    connection_id: int


class ResetResponse(BaseModel):
    connection_id: int
    items_reset: int


# ============================================================================
# Query Routing / Chart Data
# ============================================================================

class QueryResult(BaseModel):
    """Rows from one routed query. Failures are reported, never raised."""
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    storage_location: Optional[StorageLocation] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    class Config:
        use_enum_values = True


class ChartDataMeta(BaseModel):
    cached: bool = False
    data_source: Optional[str] = None
    permanent: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_ms: int = 0


class ChartDataResult(BaseModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    columns: List[str] = Field(default_factory=list)
    meta: ChartDataMeta = Field(default_factory=ChartDataMeta)


class ChartDataRequest(BaseModel):
    """Chart query as supplied by the caller"""
    connection_id: int
    sql: str = Field(..., min_length=1)
    params: List[Any] = Field(default_factory=list)
    tenant_id: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "connection_id": 42,
                "sql": "SELECT `status`, COUNT(*) AS orders FROM `orders` WHERE `region` = ? GROUP BY `status`",
                "params": ["EMEA"],
                "tenant_id": "6f1c2d3e-0000-4000-8000-1234567890ab",
                "filters": {"region": "EMEA"}
            }
        }


class ChartRefreshRequest(BaseModel):
    tenant_id: Optional[str] = None


class ChartRefreshResponse(BaseModel):
    chart_id: int
    entries_invalidated: int


class ChartStateRequest(BaseModel):
    """Saved chart state: selected columns, filters, joins and base table"""
    state: Dict[str, Any]


class ChartStateResponse(BaseModel):
    chart_id: int
    tables: List[str] = Field(default_factory=list)
    has_dynamic_filter: bool = False
    cache_status: str
    entries_invalidated: int = 0


class CacheInvalidationRequest(BaseModel):
    tenant_id: str
    tables: List[str] = Field(..., min_length=1)


class CacheInvalidationResponse(BaseModel):
    tenant_id: str
    entries_invalidated: int


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=_now)
    database_connected: bool
    scheduler_running: bool = False
    syncs_by_status: Dict[str, int] = Field(default_factory=dict)
    failed_queue_items: int = 0
    # Declared last so the validator sees the fields above
    status: str = Field(default="healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if values.get("syncs_by_status", {}).get(SyncStatus.ERROR.value, 0) > 0:
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "scheduler_running": True,
                "syncs_by_status": {"idle": 4, "syncing": 1},
                "failed_queue_items": 0
            }
        }


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    error_kind: Optional[str] = None
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)
