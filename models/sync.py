from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Text, Index, ForeignKey, Uuid
from sqlalchemy.orm import relationship
import uuid
from models.base import Base, JSONType, SyncStatus, QueueStatus, enum_column, utcnow


class DatasourceSync(Base):
    """
    Sync configuration and status for a connection stored as ``synced``.

    Design:
    - One row per connection, created lazily on the first sync request
    - target_schema_name is generated once and reused by every re-sync
    - sync_progress is a snapshot for status pages:
      {stage, message, tables_total, tables_queued, tables_skipped,
       tables_done, current_table}
    """
    __tablename__ = "datasource_sync"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    connection_id = Column(
        BigInteger().with_variant(Integer, "sqlite"),
        ForeignKey("data_connections.id", ondelete="CASCADE"),
        nullable=False
    )

    target_schema_name = Column(String(63), nullable=True)
    sync_schedule = Column(JSONType, nullable=True)  # {interval, time, timezone}
    sync_status = Column(enum_column(SyncStatus), nullable=False, default=SyncStatus.IDLE)
    sync_progress = Column(JSONType, nullable=False, default=dict)
    foreign_key_metadata = Column(JSONType, nullable=False, default=list)
    sync_error = Column(Text, nullable=True)

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    next_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    queue_items = relationship(
        "SyncQueueItem",
        back_populates="sync",
        cascade="all, delete-orphan",
        passive_deletes=True
    )

    __table_args__ = (
        Index("idx_datasource_sync_connection_id", "connection_id", unique=True),
        Index("idx_datasource_sync_next_sync_at", "next_sync_at"),
        Index("idx_datasource_sync_status", "sync_status"),
    )


class SyncQueueItem(Base):
    """
    One table's transfer job within a sync attempt.

    last_row_offset is the resume cursor: rows [0, last_row_offset) of the
    source table are already in the target table.
    """
    __tablename__ = "sync_queue"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sync_id = Column(Uuid, ForeignKey("datasource_sync.id", ondelete="CASCADE"), nullable=False)

    table_name = Column(String(255), nullable=False)
    status = Column(enum_column(QueueStatus), nullable=False, default=QueueStatus.PENDING)
    last_row_offset = Column(Integer, nullable=False, default=0)
    total_rows = Column(Integer, nullable=True)  # Source count at enqueue time
    priority = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    sync = relationship("DatasourceSync", back_populates="queue_items")

    __table_args__ = (
        Index("idx_sync_queue_sync_id", "sync_id"),
        Index("idx_sync_queue_status", "status"),
    )
