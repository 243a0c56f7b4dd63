# ============================================================================
# File: ingestion/transfer.py
# Description: Queue-driven, resumable MySQL → PostgreSQL data transfer
# ============================================================================
"""
Data transfer service - introspect, provision, queue and load.

This module drives a synced connection through its lifecycle:
- Initialization: introspect the source, provision the target schema, and
  queue one item per table that is not already in sync
- Chunk processing: claim one pending item, copy one window of rows, persist
  the new offset
- Batch driving: repeat chunk processing until the queue is empty or the
  time budget runs out

Every step persists its state before returning, so a later invocation (or a
restarted process) continues from the stored offsets. Invocations must not
overlap; the scheduler runs its job with max_instances=1.
"""

from typing import Any, Callable, Dict, List, Optional
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
import logging
import time

from core.config import settings
from core.exceptions import ConnectionNotFoundError, TransferError, error_kind_of, error_message_of
from ingestion.connections import build_source_config, get_connection
from ingestion.extractors.mysql_source import MySqlSource
from ingestion.loaders.postgres_loader import PostgresLoader, generate_schema_name
from ingestion.schedule import calculate_next_sync_time
from ingestion.transformers.type_mapping import convert_column, normalize_name
from ingestion.transformers.values import convert_row
from models.base import QueueStatus, SyncStatus, utcnow
from models.sync import DatasourceSync, SyncQueueItem
from schemas.api import (
    QueueItemInfo,
    QueueItemResult,
    SyncQueueResult,
    SyncSchedule,
    SyncStatusResponse,
    TransferInitResult,
)
from schemas.normalized import TableDefinition

logger = logging.getLogger(__name__)

# Another invocation may claim the selected item between select and update
CLAIM_ATTEMPTS = 5


def _status_value(status) -> str:
    return status.value if isinstance(status, QueueStatus) else str(status)


class DataTransferService:
    """
    Transfer queue and chunked loader for synced connections.

    Args:
        session_factory: Async session factory for the state tables
        loader: Target-side provisioner/loader (defaults to PostgresLoader)
        source_factory: Builds a source from a SourceConnectionConfig
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        loader: Optional[PostgresLoader] = None,
        source_factory: Callable = MySqlSource
    ):
        self.session_factory = session_factory
        self.loader = loader or PostgresLoader(session_factory)
        self.source_factory = source_factory

    # ------------------------------------------------------------------
    # Sync record helpers
    # ------------------------------------------------------------------

    async def _get_sync(self, connection_id: int) -> Optional[DatasourceSync]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DatasourceSync).where(DatasourceSync.connection_id == connection_id)
            )
            return result.scalar_one_or_none()

    async def _get_or_create_sync(self, connection_id: int, **values) -> DatasourceSync:
        """Load the sync record for a connection, creating it on first use."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(DatasourceSync).where(DatasourceSync.connection_id == connection_id)
            )
            sync = result.scalar_one_or_none()
            if sync is None:
                sync = DatasourceSync(connection_id=connection_id, **values)
                session.add(sync)
            else:
                for key, value in values.items():
                    setattr(sync, key, value)
            await session.commit()
            await session.refresh(sync)
            return sync

    async def _update_sync(self, sync_id, **values) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(DatasourceSync)
                .where(DatasourceSync.id == sync_id)
                .values(updated_at=utcnow(), **values)
            )
            await session.commit()

    async def _update_item(self, item_id, **values) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.id == item_id)
                .values(updated_at=utcnow(), **values)
            )
            await session.commit()

    async def _has_pending_items(self) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncQueueItem.id).where(SyncQueueItem.status == QueueStatus.PENDING).limit(1)
            )
            return result.first() is not None

    async def _queue_counts(self, sync_id) -> Dict[str, int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncQueueItem.status, func.count())
                .where(SyncQueueItem.sync_id == sync_id)
                .group_by(SyncQueueItem.status)
            )
            return {
                _status_value(status): count
                for status, count in result.all()
            }

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize_data_transfer(self, connection_id: int) -> TransferInitResult:
        """
        Introspect the source, provision the target schema and queue tables.

        Tables whose target row count already equals the source row count are
        skipped. Row-count equality does not detect rows replaced in place.
        Target tables that no longer exist at the source are dropped, and the
        columns of every source foreign key are indexed.

        Returns:
            TransferInitResult; failures are reported in error/error_kind
        """
        async with self.session_factory() as session:
            connection = await get_connection(session, connection_id)

        if connection is None:
            error = ConnectionNotFoundError(f"Connection {connection_id} not found")
            return TransferInitResult(error=error.message, error_kind=error.error_kind)

        sync = await self._get_or_create_sync(
            connection_id,
            sync_status=SyncStatus.SYNCING,
            sync_progress={"stage": "introspecting", "message": "Analyzing source database..."},
            sync_error=None,
        )
        schema_name = sync.target_schema_name or ""

        try:
            # --------------------------------------------------
            # PHASE 1: INTROSPECTION
            # --------------------------------------------------
            source = self.source_factory(build_source_config(connection))
            db_schema = await source.introspect()

            # The schema name is generated once and reused by every re-sync
            schema_name = sync.target_schema_name or generate_schema_name(connection.database_name)

            await self._update_sync(
                sync.id,
                target_schema_name=schema_name,
                foreign_key_metadata=[fk.model_dump() for fk in db_schema.foreign_keys],
                sync_progress={"stage": "creating_tables", "message": "Creating database structure..."},
            )

            # --------------------------------------------------
            # PHASE 2: PROVISIONING
            # --------------------------------------------------
            await self.loader.create_namespace(schema_name)

            source_names = {normalize_name(t.table_name) for t in db_schema.tables}
            dropped_tables = []
            for existing in await self.loader.tables_in_schema(schema_name):
                if existing not in source_names:
                    logger.info(f"Dropping {schema_name}.{existing}: no longer in the source")
                    await self.loader.drop_table(schema_name, existing)
                    dropped_tables.append(existing)

            failed_tables = []
            for table_schema in db_schema.tables:
                result = await self.loader.create_table(
                    schema_name, TableDefinition.from_table_schema(table_schema)
                )
                if not result.success:
                    failed_tables.append(table_schema.table_name)
                    logger.error(f"Failed to create table {table_schema.table_name}: {result.error}")

            # Foreign keys are not recreated; their columns are indexed for joins
            for fk in db_schema.foreign_keys:
                columns = [pair.source_column for pair in fk.column_pairs]
                if not columns or fk.source_table in failed_tables or db_schema.get_table(fk.source_table) is None:
                    continue
                await self.loader.create_index(schema_name, fk.source_table, columns)

            # --------------------------------------------------
            # PHASE 3: QUEUE (with resume decision)
            # --------------------------------------------------
            async with self.session_factory() as session:
                await session.execute(delete(SyncQueueItem).where(SyncQueueItem.sync_id == sync.id))
                await session.commit()

            tables_to_sync = []
            skipped_tables: List[str] = []
            for table_schema in db_schema.tables:
                target_count = await self.loader.table_row_count(schema_name, table_schema.table_name)
                if target_count >= 0 and target_count == table_schema.row_count:
                    logger.info(
                        f"Skipping {table_schema.table_name}: target has {target_count} rows, "
                        f"source has {table_schema.row_count} rows (match)"
                    )
                    skipped_tables.append(table_schema.table_name)
                else:
                    logger.info(
                        f"Queuing {table_schema.table_name}: target has {target_count} rows, "
                        f"source has {table_schema.row_count} rows"
                    )
                    tables_to_sync.append(table_schema)

            # Small tables first so most of the schema becomes usable early
            tables_to_sync.sort(key=lambda t: (t.row_count, t.table_name))
            if tables_to_sync:
                async with self.session_factory() as session:
                    session.add_all([
                        SyncQueueItem(
                            sync_id=sync.id,
                            table_name=t.table_name,
                            status=QueueStatus.PENDING,
                            last_row_offset=0,
                            total_rows=t.row_count,
                            priority=len(tables_to_sync) - index,
                        )
                        for index, t in enumerate(tables_to_sync)
                    ])
                    await session.commit()

            logger.info(
                f"Resume summary for connection {connection_id}: "
                f"{len(tables_to_sync)} tables to sync, {len(skipped_tables)} skipped"
            )

            final_values: Dict[str, Any] = {
                "sync_status": SyncStatus.QUEUED if tables_to_sync else SyncStatus.COMPLETED,
                "sync_progress": {
                    "stage": "queued" if tables_to_sync else "completed",
                    "message": (
                        f"{len(tables_to_sync)} tables queued for transfer "
                        f"({len(skipped_tables)} already synced)"
                    ),
                    "tables_total": len(db_schema.tables),
                    "tables_queued": len(tables_to_sync),
                    "tables_skipped": len(skipped_tables),
                    "tables_done": len(skipped_tables),
                    "tables_failed_to_create": failed_tables,
                    "tables_dropped": dropped_tables,
                    "current_table": None,
                },
            }
            if not tables_to_sync:
                final_values["last_sync_at"] = utcnow()
            await self._update_sync(sync.id, **final_values)

            return TransferInitResult(
                schema_name=schema_name,
                tables_queued=len(tables_to_sync),
                tables_skipped=len(skipped_tables),
                skipped_tables=skipped_tables,
                dropped_tables=dropped_tables,
            )

        except Exception as e:
            message = error_message_of(e)
            logger.error(f"Sync initialization failed for connection {connection_id}: {e}")
            await self._update_sync(
                sync.id,
                sync_status=SyncStatus.ERROR,
                sync_error=message,
                sync_progress={"stage": "error", "message": message},
            )
            return TransferInitResult(
                schema_name=schema_name,
                error=message,
                error_kind=error_kind_of(e),
            )

    # ------------------------------------------------------------------
    # Chunk processing
    # ------------------------------------------------------------------

    async def _claim_next_item(self) -> Optional[SyncQueueItem]:
        """
        Select the highest-priority, oldest pending item and claim it.

        The claim is a conditional UPDATE (pending → processing); if another
        invocation got there first the selection is retried.
        """
        for _ in range(CLAIM_ATTEMPTS):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(SyncQueueItem)
                    .where(SyncQueueItem.status == QueueStatus.PENDING)
                    .order_by(SyncQueueItem.priority.desc(), SyncQueueItem.created_at.asc())
                    .limit(1)
                )
                item = result.scalar_one_or_none()
                if item is None:
                    return None

                claimed = await session.execute(
                    update(SyncQueueItem)
                    .where(
                        SyncQueueItem.id == item.id,
                        SyncQueueItem.status == QueueStatus.PENDING
                    )
                    .values(status=QueueStatus.PROCESSING, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

                if claimed.rowcount == 1:
                    item.status = QueueStatus.PROCESSING
                    return item

            logger.debug(f"Queue item {item.id} was claimed elsewhere, retrying")
        return None

    async def _refresh_sync_progress(self, sync_id, current_table: Optional[str]) -> None:
        """
        Recompute completed vs. total items and settle the sync status.

        All completed → completed (with last_sync_at). Nothing pending or
        processing but some errored → error. Otherwise still syncing.
        """
        counts = await self._queue_counts(sync_id)
        total = sum(counts.values())
        done = counts.get(QueueStatus.COMPLETED.value, 0)
        failed = counts.get(QueueStatus.ERROR.value, 0)
        remaining = counts.get(QueueStatus.PENDING.value, 0) + counts.get(QueueStatus.PROCESSING.value, 0)

        async with self.session_factory() as session:
            sync = await session.get(DatasourceSync, sync_id)
            if sync is None:
                return
            progress = dict(sync.sync_progress or {})

        skipped = int(progress.get("tables_skipped", 0) or 0)
        values: Dict[str, Any] = {}

        if total and done == total:
            values.update(sync_status=SyncStatus.COMPLETED, last_sync_at=utcnow(), sync_error=None)
            progress.update(stage="completed", message="All tables transferred", current_table=None)
        elif remaining == 0 and failed:
            message = f"{failed} of {total} tables failed to transfer"
            values.update(sync_status=SyncStatus.ERROR, sync_error=message)
            progress.update(stage="error", message=message, current_table=None)
        else:
            values.update(sync_status=SyncStatus.SYNCING)
            progress.update(stage="transferring", current_table=current_table)

        progress.update(tables_done=done + skipped, tables_failed=failed)
        values["sync_progress"] = progress
        await self._update_sync(sync_id, **values)

    async def _load_context(self, item: SyncQueueItem):
        async with self.session_factory() as session:
            sync = await session.get(DatasourceSync, item.sync_id)
            connection = await get_connection(session, sync.connection_id) if sync else None

        if sync is None:
            raise TransferError("Sync record not found", context={"sync_id": str(item.sync_id)})
        if connection is None:
            raise TransferError("Connection not found", context={"connection_id": sync.connection_id})
        if not sync.target_schema_name:
            raise TransferError("Sync has no target schema", context={"sync_id": str(sync.id)})
        return sync, connection

    async def process_next_queue_item(self, chunk_size: Optional[int] = None) -> QueueItemResult:
        """
        Copy one chunk of the next pending table.

        Offset 0 truncates the target table first, so a sync always replaces
        data from the start. A short or empty chunk completes the table.

        Returns:
            QueueItemResult with processed=False when the queue is empty
        """
        chunk_size = chunk_size or settings.SYNC_CHUNK_SIZE

        item = await self._claim_next_item()
        if item is None:
            return QueueItemResult(processed=False, complete=True)

        item_id = str(item.id)
        table_name = item.table_name
        offset = item.last_row_offset or 0

        try:
            sync, connection = await self._load_context(item)
            schema_name = sync.target_schema_name

            if sync.sync_status == SyncStatus.QUEUED:
                await self._update_sync(sync.id, sync_status=SyncStatus.SYNCING)

            if offset == 0:
                await self.loader.truncate_table(schema_name, table_name)

            source = self.source_factory(build_source_config(connection))
            chunk = await source.read_chunk(table_name, offset, chunk_size)
            rows_read = len(chunk.rows)

            if rows_read:
                target_columns = [convert_column(c) for c in chunk.columns]
                conversions = [
                    (source_col.name, source_col.column_type or source_col.type, target.name, target.type)
                    for source_col, target in zip(chunk.columns, target_columns)
                ]
                rows = [convert_row(row, conversions) for row in chunk.rows]
                await self.loader.bulk_insert(schema_name, table_name, target_columns, rows)

            is_complete = rows_read < chunk_size
            await self._update_item(
                item.id,
                status=QueueStatus.COMPLETED if is_complete else QueueStatus.PENDING,
                last_row_offset=offset + rows_read,
                error=None,
            )

        except Exception as e:
            message = error_message_of(e)
            logger.error(f"Transfer failed for {table_name} at offset {offset}: {e}")
            await self._update_item(item.id, status=QueueStatus.ERROR, error=message)
            await self._refresh_sync_progress(item.sync_id, current_table=None)
            return QueueItemResult(
                processed=True,
                item_id=item_id,
                table_name=table_name,
                error=message,
                error_kind=error_kind_of(e),
            )

        if is_complete:
            # Rows are committed; the item stays completed if bookkeeping fails
            try:
                await self._on_table_completed(sync, item, chunk.columns)
            except Exception as e:
                logger.error(f"{table_name}: transferred, but completion bookkeeping failed: {e}")

        if rows_read:
            logger.info(
                f"{table_name}: {rows_read} rows at offset {offset} "
                f"{'(DONE)' if is_complete else '(more chunks)'}"
            )
        else:
            logger.info(f"{table_name}: exhausted at offset {offset}")

        return QueueItemResult(
            processed=True,
            item_id=item_id,
            table_name=table_name,
            rows_transferred=rows_read,
            complete=is_complete,
        )

    async def _on_table_completed(self, sync: DatasourceSync, item: SyncQueueItem, columns) -> None:
        auto_increment = next((c.name for c in columns if c.auto_increment), None)
        if auto_increment:
            await self.loader.fix_sequence(sync.target_schema_name, item.table_name, auto_increment)
        await self._refresh_sync_progress(sync.id, current_table=item.table_name)

    async def process_sync_queue(
        self,
        max_time_ms: Optional[int] = None,
        chunk_size: Optional[int] = None
    ) -> SyncQueueResult:
        """
        Process queue items until the queue is empty or the time budget is spent.

        The budget is checked between chunks; a chunk in flight is never cut.
        When the budget runs out, ``complete`` reports whether any pending
        item is left.
        """
        max_time_ms = max_time_ms if max_time_ms is not None else settings.SYNC_MAX_PROCESSING_MS
        start = time.monotonic()
        result = SyncQueueResult()

        logger.info(f"Starting queue processing (max {max_time_ms}ms)")

        while (time.monotonic() - start) * 1000 < max_time_ms:
            item_result = await self.process_next_queue_item(chunk_size)

            if not item_result.processed:
                result.complete = True
                logger.info(
                    f"Queue complete: {result.items_processed} items, "
                    f"{result.rows_transferred} rows"
                )
                return result

            result.items_processed += 1
            result.rows_transferred += item_result.rows_transferred

            if item_result.error:
                result.errors.append(f"{item_result.table_name}: {item_result.error}")

        result.complete = not await self._has_pending_items()
        logger.info(
            f"Time limit reached: {result.items_processed} items, "
            f"{result.rows_transferred} rows"
        )
        return result

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def get_sync_status(self, connection_id: int) -> Optional[SyncStatusResponse]:
        """Sync record plus per-status queue counts, or None if never synced."""
        sync = await self._get_sync(connection_id)
        if sync is None:
            return None

        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncQueueItem)
                .where(SyncQueueItem.sync_id == sync.id)
                .order_by(SyncQueueItem.priority.desc(), SyncQueueItem.created_at.asc())
            )
            items = result.scalars().all()

        summary: Dict[str, int] = {}
        for item in items:
            key = _status_value(item.status)
            summary[key] = summary.get(key, 0) + 1

        return SyncStatusResponse(
            connection_id=connection_id,
            sync_status=sync.sync_status,
            target_schema_name=sync.target_schema_name,
            sync_progress=sync.sync_progress or {},
            sync_schedule=sync.sync_schedule,
            sync_error=sync.sync_error,
            last_sync_at=sync.last_sync_at,
            next_sync_at=sync.next_sync_at,
            queue_summary=summary,
            queue_items=[
                QueueItemInfo(
                    id=str(item.id),
                    table_name=item.table_name,
                    status=_status_value(item.status),
                    last_row_offset=item.last_row_offset,
                    total_rows=item.total_rows,
                    priority=item.priority,
                    error=item.error,
                )
                for item in items
            ],
        )

    async def reset_failed_items(self, connection_id: int) -> int:
        """
        Put errored items back to pending. Offsets are kept, so each table
        resumes at the chunk that failed.

        Returns:
            Number of items reset
        """
        sync = await self._get_sync(connection_id)
        if sync is None:
            return 0

        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncQueueItem)
                .where(
                    SyncQueueItem.sync_id == sync.id,
                    SyncQueueItem.status == QueueStatus.ERROR
                )
                .values(status=QueueStatus.PENDING, error=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            reset_count = result.rowcount or 0

        if reset_count:
            await self._update_sync(sync.id, sync_status=SyncStatus.QUEUED, sync_error=None)
            logger.info(f"Reset {reset_count} failed items for connection {connection_id}")
        return reset_count

    async def set_schedule(self, connection_id: int, schedule: Optional[SyncSchedule]) -> DatasourceSync:
        """Store (or clear) a connection's schedule and compute its next run."""
        if schedule is None:
            return await self._get_or_create_sync(connection_id, sync_schedule=None, next_sync_at=None)

        next_sync_at = calculate_next_sync_time(schedule)
        logger.info(f"Connection {connection_id} scheduled {schedule.interval}, next sync at {next_sync_at.isoformat()}")
        return await self._get_or_create_sync(
            connection_id,
            sync_schedule=schedule.model_dump(),
            next_sync_at=next_sync_at,
        )

    async def drop_synced_data(self, connection_id: int) -> bool:
        """
        Drop a connection's synced schema and clear its queue.

        The schema name stays on the record so a later sync recreates the
        same namespace.
        """
        sync = await self._get_sync(connection_id)
        if sync is None:
            return False

        if sync.target_schema_name:
            await self.loader.drop_namespace(sync.target_schema_name)

        async with self.session_factory() as session:
            await session.execute(delete(SyncQueueItem).where(SyncQueueItem.sync_id == sync.id))
            await session.commit()

        await self._update_sync(
            sync.id,
            sync_status=SyncStatus.IDLE,
            sync_progress={},
            sync_error=None,
            last_sync_at=None,
        )
        return True
