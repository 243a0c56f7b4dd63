"""
Chart data: the result cache in front of the query router
"""

from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import settings
from core.exceptions import CacheError
from models.base import StorageLocation
from models.chart import Chart
from models.connection import DataConnection
from query.cache import (
    ChartCache,
    NIL_TENANT,
    PERMANENT_SENTINEL,
    extract_tables_from_state_json,
    generate_cache_key,
    should_use_cache,
    uses_permanent_cache,
)
from query.dialect import ensure_limit
from query.router import QueryRouter
from schemas.api import ChartDataMeta, ChartDataResult, ChartStateResponse
import json
import logging
import time

logger = logging.getLogger(__name__)


def _json_safe(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Dates, decimals and bytes become strings so rows can be stored as JSON."""
    return json.loads(json.dumps(rows, default=str))


class ChartDataService:
    """
    Serve chart rows from the cache when policy allows, else route the query
    and store the result.

    Failures are reported in ``meta.error`` / ``meta.error_kind`` with no rows.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        router: Optional[QueryRouter] = None,
        cache: Optional[ChartCache] = None
    ):
        self.session_factory = session_factory
        self.router = router or QueryRouter(session_factory)
        self.cache = cache or ChartCache(session_factory)

    async def save_chart_state(self, chart_id: int, state_json: Dict[str, Any]) -> Optional[ChartStateResponse]:
        """
        Store a chart's new state, recompute its cache policy and drop its
        cached results.

        Returns:
            The new policy, or None if the chart does not exist
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(Chart).where(Chart.id == chart_id).values(state_json=state_json)
            )
            await session.commit()
        if result.rowcount == 0:
            return None

        policy = await self.cache.apply_chart_state(chart_id, state_json)
        invalidated = await self.cache.invalidate_chart(chart_id)
        return ChartStateResponse(chart_id=chart_id, entries_invalidated=invalidated, **policy)

    async def _load(self, chart_id: int, connection_id: int):
        async with self.session_factory() as session:
            chart = (await session.execute(
                select(Chart).where(Chart.id == chart_id)
            )).scalar_one_or_none()
            location = (await session.execute(
                select(DataConnection.storage_location).where(DataConnection.id == connection_id)
            )).scalar_one_or_none()
        return chart, location

    async def fetch(
        self,
        chart_id: int,
        connection_id: int,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        tenant_id: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None
    ) -> ChartDataResult:
        start_time = time.perf_counter()
        params = list(params or [])
        safe_sql = ensure_limit(sql, settings.CHART_ROW_LIMIT)

        chart, location = await self._load(chart_id, connection_id)
        data_source = location.value if isinstance(location, StorageLocation) else location
        cache_tenant = tenant_id or NIL_TENANT

        use_cache = location is not None and should_use_cache(location, chart)
        permanent = location is not None and uses_permanent_cache(location)
        cache_key = generate_cache_key(chart_id, {
            "sql": safe_sql,
            "params": params,
            "filters": filters or {},
            "data_source": data_source,
        })

        def elapsed_ms() -> int:
            return int((time.perf_counter() - start_time) * 1000)

        # ----------------------------------------------------------------
        # Cache lookup
        # ----------------------------------------------------------------
        if use_cache:
            try:
                entry = await self.cache.get(chart_id, cache_tenant, cache_key)
            except SQLAlchemyError as e:
                logger.warning(f"Cache lookup failed for chart {chart_id}: {e}")
                entry = None

            if entry is not None:
                rows = entry.cached_data or []
                logger.info(f"Cache hit for chart {chart_id} (tenant {cache_tenant})")
                return ChartDataResult(
                    rows=rows,
                    columns=list(rows[0].keys()) if rows else [],
                    meta=ChartDataMeta(
                        cached=True,
                        data_source=data_source,
                        permanent=permanent,
                        duration_ms=elapsed_ms()
                    )
                )

        # ----------------------------------------------------------------
        # Route
        # ----------------------------------------------------------------
        result = await self.router.route(connection_id, safe_sql, params, tenant_id)
        if result.error:
            return ChartDataResult(
                meta=ChartDataMeta(
                    data_source=result.storage_location or data_source,
                    error=result.error,
                    error_kind=result.error_kind,
                    duration_ms=elapsed_ms()
                )
            )

        rows = _json_safe(result.rows)
        duration_ms = elapsed_ms()

        # ----------------------------------------------------------------
        # Store
        # ----------------------------------------------------------------
        if use_cache:
            if permanent:
                source_tables = [PERMANENT_SENTINEL]
            else:
                source_tables = await self.cache.get_dependencies(chart_id)
                if not source_tables and chart is not None:
                    source_tables = extract_tables_from_state_json(chart.state_json)

            try:
                await self.cache.set(chart_id, cache_tenant, cache_key, rows, source_tables, duration_ms)
            except CacheError as e:
                logger.error(f"Cache storage error for chart {chart_id}: {e}")

        return ChartDataResult(
            rows=rows,
            columns=list(rows[0].keys()) if rows else [],
            meta=ChartDataMeta(
                cached=False,
                data_source=result.storage_location,
                permanent=use_cache and permanent,
                duration_ms=duration_ms
            )
        )
