"""
Chart data and cache endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from api.dependencies import get_chart_cache, get_chart_data_service
from query.cache import ChartCache
from query.chart_data import ChartDataService
from schemas.api import (
    CacheInvalidationRequest,
    CacheInvalidationResponse,
    ChartDataRequest,
    ChartDataResult,
    ChartRefreshRequest,
    ChartRefreshResponse,
    ChartStateRequest,
    ChartStateResponse,
)
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/charts", tags=["Charts"])


@router.post("/{chart_id}/data", response_model=ChartDataResult)
async def chart_data(
    chart_id: int,
    body: ChartDataRequest,
    request: Request,
    service: ChartDataService = Depends(get_chart_data_service)
):
    """
    Rows for one chart query.

    Always answers 200: routing and query failures are reported in
    ``meta.error`` and ``meta.error_kind`` so dashboards can render the
    charts that did work.
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] POST /charts/{chart_id}/data - connection_id={body.connection_id}")

    result = await service.fetch(
        chart_id=chart_id,
        connection_id=body.connection_id,
        sql=body.sql,
        params=body.params,
        tenant_id=body.tenant_id,
        filters=body.filters,
    )

    logger.info(
        f"[{request_id}] chart {chart_id}: {len(result.rows)} rows, "
        f"cached={result.meta.cached}, {result.meta.duration_ms}ms"
    )
    return result


@router.post("/{chart_id}/refresh", response_model=ChartRefreshResponse)
async def refresh_chart(
    chart_id: int,
    body: ChartRefreshRequest = ChartRefreshRequest(),
    cache: ChartCache = Depends(get_chart_cache)
):
    """Invalidate a chart's cached results, permanent entries included."""
    invalidated = await cache.invalidate_chart(chart_id, body.tenant_id)
    return ChartRefreshResponse(chart_id=chart_id, entries_invalidated=invalidated)


@router.post("/cache/invalidate", response_model=CacheInvalidationResponse)
async def invalidate_tables(
    body: CacheInvalidationRequest,
    cache: ChartCache = Depends(get_chart_cache)
):
    """Invalidate a tenant's dependency-tracked entries after its tables changed."""
    invalidated = await cache.invalidate_for_tables(body.tenant_id, body.tables)
    return CacheInvalidationResponse(tenant_id=body.tenant_id, entries_invalidated=invalidated)


@router.put("/{chart_id}/state", response_model=ChartStateResponse)
async def save_chart_state(
    chart_id: int,
    body: ChartStateRequest,
    service: ChartDataService = Depends(get_chart_data_service)
):
    """
    Save a chart's state.

    Re-derives the chart's table dependencies and marks it dynamic when a
    relative date filter is present. Its cached results are dropped.
    """
    result = await service.save_chart_state(chart_id, body.state)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Chart {chart_id} not found")

    logger.info(f"Saved state for chart {chart_id}: {result.cache_status}, tables={result.tables}")
    return result
