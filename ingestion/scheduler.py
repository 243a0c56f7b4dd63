import logging
from datetime import datetime, timezone
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import settings
from core.database import async_session_maker
from ingestion.schedule import calculate_next_sync_time
from ingestion.transfer import DataTransferService
from models.base import StorageLocation, SyncStatus, utcnow
from models.connection import DataConnection
from models.sync import DatasourceSync

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Periodic trigger for the transfer queue.

    Each run initializes due syncs, drains the queue under the time budget,
    then parks completed syncs as idle with their next run time. The job is
    registered with max_instances=1 so two runs never overlap.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        transfer_service: Optional[DataTransferService] = None
    ):
        self.scheduler = AsyncIOScheduler()
        self.SessionLocal = session_factory or async_session_maker
        self.transfer = transfer_service or DataTransferService(self.SessionLocal)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def find_due_syncs(self, now: datetime, limit: int):
        async with self.SessionLocal() as session:
            result = await session.execute(
                select(DatasourceSync.id, DatasourceSync.connection_id)
                .join(DataConnection, DatasourceSync.connection_id == DataConnection.id)
                .where(
                    DatasourceSync.next_sync_at <= now,
                    DatasourceSync.sync_status.in_([SyncStatus.IDLE, SyncStatus.COMPLETED]),
                    DataConnection.storage_location == StorageLocation.SYNCED,
                )
                .order_by(DatasourceSync.next_sync_at.asc())
                .limit(limit)
            )
            return result.all()

    async def park_completed_syncs(self, now: datetime) -> int:
        """Move completed syncs to idle and compute their next run."""
        async with self.SessionLocal() as session:
            result = await session.execute(
                select(DatasourceSync).where(DatasourceSync.sync_status == SyncStatus.COMPLETED)
            )
            completed = result.scalars().all()

            for sync in completed:
                next_sync_at = None
                if sync.sync_schedule:
                    try:
                        next_sync_at = calculate_next_sync_time(sync.sync_schedule, now)
                    except ValueError as e:
                        logger.warning(f"Scheduler: invalid schedule on sync {sync.id} - {e}")

                await session.execute(
                    update(DatasourceSync)
                    .where(DatasourceSync.id == sync.id)
                    .values(sync_status=SyncStatus.IDLE, next_sync_at=next_sync_at, updated_at=utcnow())
                )
            await session.commit()
            return len(completed)

    async def run_sync_job(self, now: Optional[datetime] = None):
        """Job to initialize due syncs and drain the transfer queue"""
        now = now or datetime.now(timezone.utc)
        logger.info("Scheduler: Starting sync job")

        initialized = 0
        try:
            due = await self.find_due_syncs(now, settings.SYNC_DUE_BATCH_LIMIT)
            logger.info(f"Scheduler: {len(due)} syncs due for initialization")

            for sync_id, connection_id in due:
                result = await self.transfer.initialize_data_transfer(connection_id)
                if result.error:
                    logger.error(f"Scheduler: initialization failed for connection {connection_id} - {result.error}")
                else:
                    initialized += 1

            queue_result = await self.transfer.process_sync_queue(settings.SYNC_MAX_PROCESSING_MS)
            parked = await self.park_completed_syncs(now)

            logger.info(
                f"Scheduler: sync job finished - initialized={initialized}, "
                f"items={queue_result.items_processed}, rows={queue_result.rows_transferred}, "
                f"errors={len(queue_result.errors)}, queue_complete={queue_result.complete}, "
                f"parked={parked}"
            )
            return queue_result

        except Exception as e:
            logger.error(f"Scheduler: sync job failed - {e}")
            return None

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_sync_job,
            trigger=IntervalTrigger(minutes=settings.SYNC_INTERVAL_MINUTES),
            id="sync_job",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Sync Scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Sync Scheduler stopped")
