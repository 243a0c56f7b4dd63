"""
Data transfer endpoints: start, drain, inspect and repair synced connections
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_transfer_service
from core.config import settings
from ingestion.connections import get_connection
from ingestion.transfer import DataTransferService
from models.base import StorageLocation
from schemas.api import (
    ProcessRequest,
    ResetRequest,
    ResetResponse,
    ScheduleRequest,
    SyncQueueResult,
    SyncStatusResponse,
    TransferInitResult,
    TransferStartRequest,
)
from typing import Any, Dict
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/data-transfer", tags=["Data Transfer"])


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")


async def _require_synced_connection(db: AsyncSession, connection_id: int):
    connection = await get_connection(db, connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail=f"Connection {connection_id} not found")
    if connection.storage_location != StorageLocation.SYNCED:
        raise HTTPException(
            status_code=400,
            detail=f"Connection {connection_id} does not use synced storage"
        )
    return connection


@router.post("/start")
async def start_transfer(
    body: TransferStartRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: DataTransferService = Depends(get_transfer_service)
) -> Dict[str, Any]:
    """
    Introspect the source, provision the target schema and queue its tables.

    With ``process_now`` the queue is drained once under the default time
    budget before responding.
    """
    request_id = _request_id(request)
    logger.info(f"[{request_id}] POST /data-transfer/start - connection_id={body.connection_id}")

    await _require_synced_connection(db, body.connection_id)

    init_result: TransferInitResult = await service.initialize_data_transfer(body.connection_id)
    response: Dict[str, Any] = {"initialization": init_result.model_dump()}

    if init_result.error:
        raise HTTPException(status_code=502, detail=response["initialization"])

    if body.process_now and init_result.tables_queued:
        queue_result = await service.process_sync_queue(settings.SYNC_MAX_PROCESSING_MS)
        response["processing"] = queue_result.model_dump()

    return response


@router.get("/status", response_model=SyncStatusResponse)
async def transfer_status(
    connection_id: int = Query(..., description="Connection to report on"),
    service: DataTransferService = Depends(get_transfer_service)
):
    status = await service.get_sync_status(connection_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"No sync configured for connection {connection_id}")
    return status


@router.post("/schedule", response_model=SyncStatusResponse)
async def set_schedule(
    body: ScheduleRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: DataTransferService = Depends(get_transfer_service)
):
    """Set or clear (``schedule: null``) the recurring sync schedule."""
    logger.info(f"[{_request_id(request)}] POST /data-transfer/schedule - connection_id={body.connection_id}")
    await _require_synced_connection(db, body.connection_id)
    await service.set_schedule(body.connection_id, body.schedule)
    return await service.get_sync_status(body.connection_id)


@router.post("/process", response_model=SyncQueueResult)
async def process_queue(
    request: Request,
    body: ProcessRequest = ProcessRequest(),
    service: DataTransferService = Depends(get_transfer_service)
):
    """Drain the transfer queue until it is empty or the time budget runs out."""
    logger.info(f"[{_request_id(request)}] POST /data-transfer/process")
    return await service.process_sync_queue(
        max_time_ms=body.max_time_ms,
        chunk_size=body.chunk_size
    )


@router.post("/reset", response_model=ResetResponse)
async def reset_failed(
    body: ResetRequest,
    request: Request,
    service: DataTransferService = Depends(get_transfer_service)
):
    """Put errored queue items back to pending; they resume at their stored offset."""
    logger.info(f"[{_request_id(request)}] POST /data-transfer/reset - connection_id={body.connection_id}")
    items_reset = await service.reset_failed_items(body.connection_id)
    return ResetResponse(connection_id=body.connection_id, items_reset=items_reset)


@router.delete("/{connection_id}")
async def drop_synced_data(
    connection_id: int,
    service: DataTransferService = Depends(get_transfer_service)
) -> Dict[str, Any]:
    """Drop the synced schema and queue; the schema name is kept for the next sync."""
    dropped = await service.drop_synced_data(connection_id)
    if not dropped:
        raise HTTPException(status_code=404, detail=f"No sync configured for connection {connection_id}")
    return {"connection_id": connection_id, "dropped": True}
