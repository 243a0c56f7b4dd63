"""
Health check endpoint with database, scheduler and sync status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse
from models.base import QueueStatus, SyncStatus
from models.sync import DatasourceSync, SyncQueueItem
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Whether the sync scheduler is running
    - Sync records per status and the number of failed queue items
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    syncs_by_status = {}
    failed_queue_items = 0

    if db_connected:
        try:
            result = await db.execute(
                select(DatasourceSync.sync_status, func.count()).group_by(DatasourceSync.sync_status)
            )
            for status, count in result.all():
                key = status.value if isinstance(status, SyncStatus) else str(status)
                syncs_by_status[key] = count

            failed_result = await db.execute(
                select(func.count()).select_from(SyncQueueItem).where(SyncQueueItem.status == QueueStatus.ERROR)
            )
            failed_queue_items = failed_result.scalar() or 0
        except Exception as e:
            logger.error(f"Failed to fetch sync status: {str(e)}")

    scheduler = getattr(request.app.state, "scheduler", None)

    # Overall status is derived by the validator in HealthCheckResponse
    return HealthCheckResponse(
        database_connected=db_connected,
        scheduler_running=bool(scheduler and scheduler.running),
        syncs_by_status=syncs_by_status,
        failed_queue_items=failed_queue_items
    )
