"""
Integration tests for the queue-driven data transfer
"""

import pytest
from unittest.mock import AsyncMock
from sqlalchemy import select
from core.exceptions import TransferError
from ingestion.transfer import DataTransferService
from models.base import QueueStatus, StorageLocation, SyncStatus
from models.sync import DatasourceSync, SyncQueueItem
from schemas.api import SyncSchedule
from schemas.normalized import ColumnPair, ForeignKeyDef, SourceColumn

CHUNK = 5000


@pytest.fixture
def service(session_factory, target_loader, source_db):
    return DataTransferService(session_factory, loader=target_loader, source_factory=source_db.factory)


async def queue_items(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(SyncQueueItem).order_by(SyncQueueItem.priority.desc()))
        return result.scalars().all()


async def sync_record(session_factory, connection_id):
    async with session_factory() as session:
        result = await session.execute(
            select(DatasourceSync).where(DatasourceSync.connection_id == connection_id)
        )
        return result.scalar_one()


async def run_to_completion(service):
    return await service.process_sync_queue(max_time_ms=60_000, chunk_size=CHUNK)


class TestChunkedTransfer:
    """Test chunk windows and completion"""

    @pytest.mark.asyncio
    async def test_table_not_a_multiple_of_chunk_size(self, service, make_connection, source_db, target_loader, session_factory):
        source_db.add_simple_table("orders", 12_345)
        connection = await make_connection(StorageLocation.SYNCED)

        init = await service.initialize_data_transfer(connection.id)
        assert init.error is None
        assert init.tables_queued == 1

        offsets = []
        while True:
            result = await service.process_next_queue_item(chunk_size=CHUNK)
            if not result.processed:
                break
            offsets.append((await queue_items(session_factory))[0].last_row_offset)

        assert offsets == [5000, 10000, 12345]
        assert [offset for _, offset, _ in source_db.reads] == [0, 5000, 10000]
        assert len(target_loader.rows(init.schema_name, "orders")) == 12_345

        sync = await sync_record(session_factory, connection.id)
        assert sync.sync_status == SyncStatus.COMPLETED
        assert sync.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_exact_multiple_needs_one_empty_read(self, service, make_connection, source_db, target_loader):
        source_db.add_simple_table("events", 10_000)
        connection = await make_connection(StorageLocation.SYNCED)

        init = await service.initialize_data_transfer(connection.id)
        summary = await run_to_completion(service)

        assert summary.complete is True
        assert summary.rows_transferred == 10_000
        assert summary.items_processed == 3
        assert [offset for _, offset, _ in source_db.reads] == [0, 5000, 10000]
        assert len(target_loader.rows(init.schema_name, "events")) == 10_000

    @pytest.mark.asyncio
    async def test_offset_zero_truncates_once_and_sequence_is_fixed(self, service, make_connection, source_db, target_loader):
        source_db.add_simple_table("orders", 7_000)
        connection = await make_connection(StorageLocation.SYNCED)

        init = await service.initialize_data_transfer(connection.id)
        await run_to_completion(service)

        assert target_loader.truncated == [(init.schema_name, "orders")]
        assert target_loader.sequences_fixed == [(init.schema_name, "orders", "id")]

    @pytest.mark.asyncio
    async def test_smallest_tables_are_transferred_first(self, service, make_connection, source_db):
        source_db.add_simple_table("audit_log", 6_000)
        source_db.add_simple_table("orders", 300)
        source_db.add_simple_table("countries", 3)
        connection = await make_connection(StorageLocation.SYNCED)

        await service.initialize_data_transfer(connection.id)
        await run_to_completion(service)

        first_reads = []
        for table_name, _, _ in source_db.reads:
            if table_name not in first_reads:
                first_reads.append(table_name)
        assert first_reads == ["countries", "orders", "audit_log"]

    @pytest.mark.asyncio
    async def test_time_budget_leaves_work_for_next_run(self, service, make_connection, source_db, session_factory):
        source_db.add_simple_table("orders", 12_345)
        connection = await make_connection(StorageLocation.SYNCED)
        await service.initialize_data_transfer(connection.id)

        summary = await service.process_sync_queue(max_time_ms=0, chunk_size=CHUNK)

        assert summary.items_processed == 0
        assert summary.complete is False
        items = await queue_items(session_factory)
        assert items[0].status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_zero_budget_on_empty_queue_is_complete(self, service):
        summary = await service.process_sync_queue(max_time_ms=0, chunk_size=CHUNK)

        assert summary.items_processed == 0
        assert summary.complete is True

    @pytest.mark.asyncio
    async def test_completion_bookkeeping_failure_keeps_table_completed(
        self, service, make_connection, source_db, target_loader, session_factory
    ):
        source_db.add_simple_table("orders", 10)
        target_loader.fix_sequence = AsyncMock(side_effect=RuntimeError("server closed the connection unexpectedly"))
        connection = await make_connection(StorageLocation.SYNCED)
        init = await service.initialize_data_transfer(connection.id)

        result = await service.process_next_queue_item(chunk_size=CHUNK)

        assert result.error is None
        assert result.complete is True
        item = (await queue_items(session_factory))[0]
        assert item.status == QueueStatus.COMPLETED
        assert item.last_row_offset == 10
        assert len(target_loader.rows(init.schema_name, "orders")) == 10


class TestInitialization:

    @pytest.mark.asyncio
    async def test_resync_skips_tables_already_in_sync(self, service, make_connection, source_db, session_factory):
        source_db.add_simple_table("orders", 120)
        source_db.add_simple_table("customers", 40)
        connection = await make_connection(StorageLocation.SYNCED)

        first = await service.initialize_data_transfer(connection.id)
        await run_to_completion(service)

        source_db.tables["orders"]["rows"].extend(source_db.make_rows(5, start=121))
        second = await service.initialize_data_transfer(connection.id)

        assert second.schema_name == first.schema_name
        assert second.skipped_tables == ["customers"]
        assert second.tables_queued == 1
        assert [item.table_name for item in await queue_items(session_factory)] == ["orders"]

        source_db.reads.clear()
        await run_to_completion(service)
        assert source_db.reads == [("orders", 0, CHUNK)]

    @pytest.mark.asyncio
    async def test_nothing_to_queue_completes_immediately(self, service, make_connection, source_db, session_factory):
        source_db.add_simple_table("orders", 10)
        connection = await make_connection(StorageLocation.SYNCED)
        await service.initialize_data_transfer(connection.id)
        await run_to_completion(service)

        again = await service.initialize_data_transfer(connection.id)

        assert again.tables_queued == 0
        assert again.tables_skipped == 1
        sync = await sync_record(session_factory, connection.id)
        assert sync.sync_status == SyncStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_tables_removed_at_source_are_dropped(self, service, make_connection, source_db, target_loader):
        source_db.add_simple_table("orders", 10)
        source_db.add_simple_table("legacy_notes", 4)
        connection = await make_connection(StorageLocation.SYNCED)
        first = await service.initialize_data_transfer(connection.id)
        await run_to_completion(service)

        del source_db.tables["legacy_notes"]
        second = await service.initialize_data_transfer(connection.id)

        assert second.dropped_tables == ["legacy_notes"]
        assert target_loader.tables_dropped == [(first.schema_name, "legacy_notes")]
        assert second.skipped_tables == ["orders"]

    @pytest.mark.asyncio
    async def test_foreign_key_columns_are_indexed(self, service, make_connection, source_db, target_loader):
        source_db.add_simple_table("orders", 3)
        source_db.add_table("order_items", [
            SourceColumn(name="id", type="int", column_type="int(11)", primary_key=True),
            SourceColumn(name="order_id", type="int", column_type="int(11)"),
        ], [])
        source_db.foreign_keys = [
            ForeignKeyDef(
                constraint_name="fk_order_items_order",
                source_table="order_items",
                target_table="orders",
                column_pairs=[ColumnPair(source_column="order_id", target_column="id")],
            ),
            ForeignKeyDef(
                constraint_name="fk_archive_order",
                source_table="order_archive",
                target_table="orders",
                column_pairs=[ColumnPair(source_column="order_id", target_column="id")],
            ),
        ]
        connection = await make_connection(StorageLocation.SYNCED)

        init = await service.initialize_data_transfer(connection.id)

        assert target_loader.indexes == [(init.schema_name, "order_items", ("order_id",))]

    @pytest.mark.asyncio
    async def test_unreachable_source(self, service, make_connection, source_db, session_factory):
        source_db.unreachable = True
        connection = await make_connection(StorageLocation.SYNCED)

        result = await service.initialize_data_transfer(connection.id)

        assert result.error_kind == "source_unreachable"
        assert "mysql.internal" in result.error
        sync = await sync_record(session_factory, connection.id)
        assert sync.sync_status == SyncStatus.ERROR
        assert sync.sync_error == result.error

    @pytest.mark.asyncio
    async def test_unknown_connection(self, service):
        result = await service.initialize_data_transfer(404)
        assert result.error_kind == "connection_not_found"

    @pytest.mark.asyncio
    async def test_table_create_failure_does_not_stop_others(self, service, make_connection, source_db, target_loader):
        source_db.add_simple_table("orders", 10)
        source_db.add_table("geo_points", [SourceColumn(name="location", type="point", column_type="point")], [])
        target_loader.failing_creates.add("geo_points")
        connection = await make_connection(StorageLocation.SYNCED)

        init = await service.initialize_data_transfer(connection.id)
        await run_to_completion(service)

        assert init.error is None
        assert len(target_loader.rows(init.schema_name, "orders")) == 10


class TestFailureIsolation:
    """One failing table never blocks the rest of the queue"""

    @pytest.mark.asyncio
    async def test_failed_table_is_isolated_and_can_be_retried(
        self, service, make_connection, source_db, target_loader, session_factory, failing_insert_error
    ):
        source_db.add_simple_table("orders", 50)
        source_db.add_simple_table("customers", 20)
        target_loader.failing_inserts["orders"] = failing_insert_error
        connection = await make_connection(StorageLocation.SYNCED)

        init = await service.initialize_data_transfer(connection.id)
        summary = await run_to_completion(service)

        assert summary.complete is True
        assert len(summary.errors) == 1
        assert summary.errors[0].startswith("orders:")
        assert len(target_loader.rows(init.schema_name, "customers")) == 20

        status = await service.get_sync_status(connection.id)
        assert status.sync_status == SyncStatus.ERROR
        assert status.queue_summary == {"completed": 1, "error": 1}
        failed = next(i for i in status.queue_items if i.table_name == "orders")
        assert "value too long" in failed.error

        del target_loader.failing_inserts["orders"]
        assert await service.reset_failed_items(connection.id) == 1
        await run_to_completion(service)

        status = await service.get_sync_status(connection.id)
        assert status.sync_status == SyncStatus.COMPLETED
        assert len(target_loader.rows(init.schema_name, "orders")) == 50

    @pytest.mark.asyncio
    async def test_source_error_mid_table_keeps_offset(self, service, make_connection, source_db, session_factory):
        source_db.add_simple_table("orders", 12_345)
        connection = await make_connection(StorageLocation.SYNCED)
        await service.initialize_data_transfer(connection.id)

        await service.process_next_queue_item(chunk_size=CHUNK)
        source_db.failing_tables["orders"] = TransferError("Lost connection to MySQL server during query")
        result = await service.process_next_queue_item(chunk_size=CHUNK)

        assert result.error_kind == "transfer_failed"
        item = (await queue_items(session_factory))[0]
        assert item.status == QueueStatus.ERROR
        assert item.last_row_offset == 5000

        del source_db.failing_tables["orders"]
        await service.reset_failed_items(connection.id)
        source_db.reads.clear()
        await run_to_completion(service)
        assert source_db.reads[0] == ("orders", 5000, CHUNK)

    @pytest.mark.asyncio
    async def test_reset_without_sync_record(self, service):
        assert await service.reset_failed_items(404) == 0


class TestOperatorActions:

    @pytest.mark.asyncio
    async def test_status_of_unsynced_connection(self, service, make_connection):
        connection = await make_connection(StorageLocation.SYNCED)
        assert await service.get_sync_status(connection.id) is None

    @pytest.mark.asyncio
    async def test_drop_synced_data_keeps_schema_name(self, service, make_connection, source_db, target_loader, session_factory):
        source_db.add_simple_table("orders", 10)
        connection = await make_connection(StorageLocation.SYNCED)
        init = await service.initialize_data_transfer(connection.id)
        await run_to_completion(service)

        assert await service.drop_synced_data(connection.id) is True

        assert target_loader.dropped == [init.schema_name]
        assert await queue_items(session_factory) == []
        sync = await sync_record(session_factory, connection.id)
        assert sync.sync_status == SyncStatus.IDLE
        assert sync.target_schema_name == init.schema_name

        again = await service.initialize_data_transfer(connection.id)
        assert again.schema_name == init.schema_name
        assert again.tables_queued == 1

    @pytest.mark.asyncio
    async def test_drop_without_sync_record(self, service):
        assert await service.drop_synced_data(404) is False

    @pytest.mark.asyncio
    async def test_set_and_clear_schedule(self, service, make_connection):
        connection = await make_connection(StorageLocation.SYNCED)

        sync = await service.set_schedule(connection.id, SyncSchedule(interval="DAILY", time="02:00"))
        assert sync.sync_schedule["interval"] == "DAILY"
        assert sync.next_sync_at is not None

        cleared = await service.set_schedule(connection.id, None)
        assert cleared.sync_schedule is None
        assert cleared.next_sync_at is None
