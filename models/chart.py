from sqlalchemy import (
    Column, BigInteger, Integer, String, DateTime, Boolean, ForeignKey, Index, Uuid
)
import uuid
from models.base import Base, JSONType, CacheStatus, enum_column, utcnow

_BigId = BigInteger().with_variant(Integer, "sqlite")


class Chart(Base):
    """
    The slice of a chart the query path needs: its connection, its saved
    state and its caching flags.
    """
    __tablename__ = "charts"

    id = Column(_BigId, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    data_connection_id = Column(_BigId, ForeignKey("data_connections.id", ondelete="SET NULL"), nullable=True)
    state_json = Column(JSONType, nullable=False, default=dict)
    cache_status = Column(enum_column(CacheStatus), nullable=False, default=CacheStatus.UNKNOWN)
    has_dynamic_filter = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class ChartTableDependency(Base):
    """Tables a chart queries, used to invalidate its cached results."""
    __tablename__ = "chart_table_dependencies"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    chart_id = Column(_BigId, ForeignKey("charts.id", ondelete="CASCADE"), nullable=False)
    table_name = Column(String(255), nullable=False)
    schema_name = Column(String(63), nullable=True)
    dependency_type = Column(String(32), nullable=False, default="query")  # query, join, subquery

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_deps_table", "table_name"),
        Index("idx_deps_chart", "chart_id"),
        Index("idx_deps_chart_table_schema", "chart_id", "table_name", "schema_name", unique=True),
    )


class ChartDataCache(Base):
    """
    Stored query result for (chart, tenant, fingerprint).

    source_tables lists the tables the result depends on, or holds the
    permanent sentinel when table-level invalidation must never apply.
    """
    __tablename__ = "chart_data_cache"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    chart_id = Column(_BigId, ForeignKey("charts.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(String(64), nullable=False)
    cache_key = Column(String(64), nullable=False)

    cached_data = Column(JSONType, nullable=False)
    row_count = Column(Integer, nullable=True)

    # Validity
    cached_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    is_valid = Column(Boolean, nullable=False, default=True)

    # Dependencies for invalidation
    source_tables = Column(JSONType, nullable=False, default=list)

    query_duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_cache_chart_tenant", "chart_id", "tenant_id"),
        Index("idx_cache_tenant", "tenant_id"),
        Index("idx_cache_chart_tenant_key", "chart_id", "tenant_id", "cache_key", unique=True),
    )
