"""
Data sync engine: MySQL sources into per-connection PostgreSQL schemas.

This package contains every component on the write side of the system:

Modules:
    connections: Connection record lookup and source connection settings
    transfer: Queue-driven, resumable transfer service
    schedule: Next-run calculation for recurring sync schedules
    scheduler: APScheduler integration that drives the transfer queue

Subpackages:
    extractors: Source access (SSH-tunnelled PyMySQL) and schema introspection
    transformers: MySQL -> PostgreSQL type mapping and tagged value conversion
    loaders: Namespace/table provisioning and batched bulk inserts

Architecture:
    A sync runs in two steps that persist all of their state:

    1. Initialize - introspect the source, create the target schema and
       tables, and queue one item per table that is not already in sync
    2. Process - claim one pending item at a time and copy one window of
       rows, advancing its stored offset, until the queue is empty or the
       time budget is spent

    A failure in one table marks that item as error and never stops the
    other tables.

Usage:
    from ingestion.transfer import DataTransferService
    from ingestion.scheduler import SyncScheduler

Example:
    service = DataTransferService(async_session_maker)

    init_result = await service.initialize_data_transfer(connection_id)
    if not init_result.error:
        result = await service.process_sync_queue(max_time_ms=240_000)
        print(f"Transferred {result.rows_transferred} rows")

Error Handling:
    Failures are reported as a message plus a stable error kind from
    core.exceptions; nothing is retried automatically.
"""

__all__ = [
    "DataTransferService",
    "SyncScheduler",
    "PostgresLoader",
    "MySqlSource",
    "SchemaIntrospector",
]
