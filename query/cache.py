"""
Chart result cache: lookup, storage, invalidation and dependency tracking
"""

from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.exceptions import CacheError
from models.base import CacheStatus, StorageLocation, utcnow
from models.chart import Chart, ChartDataCache, ChartTableDependency
import hashlib
import json
import logging

logger = logging.getLogger(__name__)

# Dependency marker for entries that only an explicit refresh may clear
PERMANENT_SENTINEL = "__permanent__"

# Partition key when the caller has no tenant
NIL_TENANT = "00000000-0000-0000-0000-000000000000"

RELATIVE_DATE_OPERATORS = {
    "last_n_days",
    "last_n_weeks",
    "last_n_months",
    "this_week",
    "this_month",
    "today",
    "yesterday",
}
DYNAMIC_FILTER_TYPES = {"relative", "dynamic"}


# ============================================================================
# Policy helpers
# ============================================================================

def generate_cache_key(chart_id: int, params: Dict[str, Any]) -> str:
    """
    Fingerprint a chart query.

    ``params`` should carry the exact SQL, the filter values and the storage
    location, so entries never cross source kinds.
    """
    normalized = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(f"{chart_id}:{normalized}".encode("utf-8")).hexdigest()


def _location_value(location) -> str:
    return location.value if isinstance(location, StorageLocation) else str(location)


def uses_permanent_cache(location) -> bool:
    """External and synced data has no cheap change signal, so its cache never auto-expires."""
    return _location_value(location) in (StorageLocation.EXTERNAL.value, StorageLocation.SYNCED.value)


def should_use_cache(location, chart: Optional[Chart]) -> bool:
    if uses_permanent_cache(location):
        return True
    if _location_value(location) != StorageLocation.TENANT_SHARED.value:
        return False
    if chart is None:
        return True

    cache_status = chart.cache_status.value if isinstance(chart.cache_status, CacheStatus) else chart.cache_status
    if cache_status == CacheStatus.DYNAMIC.value or chart.has_dynamic_filter:
        return False
    # Flags can lag behind the saved state
    return not has_relative_date_filters(chart.state_json)


def extract_tables_from_state_json(state_json: Optional[Dict[str, Any]]) -> List[str]:
    """Tables referenced by a chart's saved state, in first-seen order."""
    if not isinstance(state_json, dict):
        return []

    tables: List[str] = []

    def add(name):
        if isinstance(name, str) and name and name not in tables:
            tables.append(name)

    for col in state_json.get("selectedColumns") or []:
        if isinstance(col, dict):
            add(col.get("table"))

    for f in state_json.get("filters") or []:
        if isinstance(f, dict):
            add(f.get("table"))

    for j in state_json.get("joins") or []:
        if isinstance(j, dict):
            add(j.get("leftTable"))
            add(j.get("rightTable"))

    add(state_json.get("table"))
    return tables


def has_relative_date_filters(state_json: Optional[Dict[str, Any]]) -> bool:
    if not isinstance(state_json, dict):
        return False

    filters = state_json.get("filters")
    if not isinstance(filters, list):
        return False

    for f in filters:
        if not isinstance(f, dict):
            continue
        if f.get("operator") in RELATIVE_DATE_OPERATORS:
            return True
        if f.get("filterType") in DYNAMIC_FILTER_TYPES:
            return True
    return False


# ============================================================================
# Cache store
# ============================================================================

class ChartCache:
    """
    Stored chart results keyed by (chart, tenant, fingerprint).

    Entries tagged with PERMANENT_SENTINEL are skipped by table-level
    invalidation; invalidate_chart clears them.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, chart_id: int, tenant_id: str, cache_key: str) -> Optional[ChartDataCache]:
        """Valid, unexpired entry for the key, or None"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ChartDataCache).where(
                    ChartDataCache.chart_id == chart_id,
                    ChartDataCache.tenant_id == tenant_id,
                    ChartDataCache.cache_key == cache_key,
                    ChartDataCache.is_valid.is_(True),
                    or_(ChartDataCache.valid_until.is_(None), ChartDataCache.valid_until > utcnow()),
                )
            )
            return result.scalar_one_or_none()

    async def set(
        self,
        chart_id: int,
        tenant_id: str,
        cache_key: str,
        rows: List[Dict[str, Any]],
        source_tables: Iterable[str],
        duration_ms: Optional[int] = None,
        valid_until: Optional[datetime] = None
    ) -> None:
        """
        Insert or replace the entry for (chart, tenant, key).

        Raises:
            CacheError: The entry could not be written
        """
        now = utcnow()
        values = {
            "cached_data": rows,
            "row_count": len(rows),
            "source_tables": list(source_tables),
            "query_duration_ms": duration_ms,
            "cached_at": now,
            "valid_until": valid_until,
            "is_valid": True,
            "updated_at": now,
        }

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(ChartDataCache).where(
                        ChartDataCache.chart_id == chart_id,
                        ChartDataCache.tenant_id == tenant_id,
                        ChartDataCache.cache_key == cache_key,
                    )
                )
                entry = result.scalar_one_or_none()

                if entry is None:
                    session.add(ChartDataCache(
                        chart_id=chart_id,
                        tenant_id=tenant_id,
                        cache_key=cache_key,
                        **values
                    ))
                else:
                    for field, value in values.items():
                        setattr(entry, field, value)

                await session.commit()
        except SQLAlchemyError as e:
            raise CacheError(
                f"Failed to cache data for chart {chart_id}",
                context={"chart_id": chart_id, "tenant_id": tenant_id},
                original_exception=e
            )

        logger.debug(f"Cached {len(rows)} rows for chart {chart_id} (tenant {tenant_id})")

    async def invalidate_for_tables(self, tenant_id: str, table_names: Iterable[str]) -> int:
        """
        Invalidate a tenant's entries that depend on any of the tables.

        Returns:
            Number of entries invalidated
        """
        wanted = {t.lower() for t in table_names}
        if not wanted:
            return 0

        async with self.session_factory() as session:
            result = await session.execute(
                select(ChartDataCache.id, ChartDataCache.source_tables).where(
                    ChartDataCache.tenant_id == tenant_id,
                    ChartDataCache.is_valid.is_(True),
                )
            )

            stale_ids = []
            for entry_id, source_tables in result.all():
                tables = source_tables or []
                if PERMANENT_SENTINEL in tables:
                    continue
                if wanted & {t.lower() for t in tables}:
                    stale_ids.append(entry_id)

            if stale_ids:
                await session.execute(
                    update(ChartDataCache)
                    .where(ChartDataCache.id.in_(stale_ids))
                    .values(is_valid=False, updated_at=utcnow())
                )
                await session.commit()

        logger.info(f"Invalidated {len(stale_ids)} cache entries for tenant {tenant_id}: {sorted(wanted)}")
        return len(stale_ids)

    async def invalidate_chart(self, chart_id: int, tenant_id: Optional[str] = None) -> int:
        """Explicit refresh: invalidates permanent entries too"""
        stmt = (
            update(ChartDataCache)
            .where(ChartDataCache.chart_id == chart_id, ChartDataCache.is_valid.is_(True))
            .values(is_valid=False, updated_at=utcnow())
        )
        if tenant_id is not None:
            stmt = stmt.where(ChartDataCache.tenant_id == tenant_id)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        logger.info(f"Invalidated {result.rowcount} cache entries for chart {chart_id}")
        return result.rowcount

    async def update_cache_status(
        self,
        chart_id: int,
        status: CacheStatus,
        has_dynamic_filter: Optional[bool] = None
    ) -> bool:
        values: Dict[str, Any] = {"cache_status": status}
        if has_dynamic_filter is not None:
            values["has_dynamic_filter"] = has_dynamic_filter

        async with self.session_factory() as session:
            result = await session.execute(
                update(Chart).where(Chart.id == chart_id).values(**values)
            )
            await session.commit()
        return result.rowcount > 0

    async def upsert_dependencies(self, chart_id: int, tables: List[Dict[str, Any]]) -> None:
        """
        Replace a chart's declared table dependencies.

        Each item is ``{"name": ..., "schema": ..., "type": ...}``; schema and
        type are optional.
        """
        async with self.session_factory() as session:
            await session.execute(
                delete(ChartTableDependency).where(ChartTableDependency.chart_id == chart_id)
            )
            seen = set()
            for t in tables:
                key = (t["name"], t.get("schema"))
                if key in seen:
                    continue
                seen.add(key)
                session.add(ChartTableDependency(
                    chart_id=chart_id,
                    table_name=t["name"],
                    schema_name=t.get("schema"),
                    dependency_type=t.get("type") or "query",
                ))
            await session.commit()

    async def apply_chart_state(self, chart_id: int, state_json: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Recompute a chart's cache policy from its saved state.

        Replaces the declared dependencies with the tables the state
        references, and marks the chart DYNAMIC when it carries a relative
        date filter (UNKNOWN otherwise).

        Returns:
            Dict with ``tables``, ``has_dynamic_filter`` and ``cache_status``
        """
        tables = extract_tables_from_state_json(state_json)
        dynamic = has_relative_date_filters(state_json)
        status = CacheStatus.DYNAMIC if dynamic else CacheStatus.UNKNOWN

        await self.upsert_dependencies(chart_id, [{"name": t} for t in tables])
        await self.update_cache_status(chart_id, status, has_dynamic_filter=dynamic)

        logger.info(f"Chart {chart_id} cache policy: {status.value}, tables={tables}")
        return {"tables": tables, "has_dynamic_filter": dynamic, "cache_status": status.value}

    async def get_dependencies(self, chart_id: int) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ChartTableDependency.table_name)
                .where(ChartTableDependency.chart_id == chart_id)
                .order_by(ChartTableDependency.table_name)
            )
            return [row[0] for row in result.all()]
