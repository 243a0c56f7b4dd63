"""
Run one sync pass outside the API process.

Initializes a connection (or every due sync when none is given), then drains
the transfer queue under the time budget.

    python scripts/run_sync.py                  # due syncs, like the scheduler
    python scripts/run_sync.py --connection 42  # force one connection
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import async_session_maker, dispose_engine
from core.logging import setup_logging
from ingestion.scheduler import SyncScheduler
from ingestion.transfer import DataTransferService

logger = logging.getLogger(__name__)


async def run_sync(connection_id=None, max_time_ms=None):
    """Initialize and drain; returns a process exit code"""
    service = DataTransferService(async_session_maker)

    try:
        if connection_id is None:
            result = await SyncScheduler(async_session_maker, service).run_sync_job()
            if result is None:
                return 1
        else:
            init_result = await service.initialize_data_transfer(connection_id)
            if init_result.error:
                logger.error(f"Initialization failed ({init_result.error_kind}): {init_result.error}")
                return 1
            logger.info(
                f"Schema {init_result.schema_name}: {init_result.tables_queued} tables queued, "
                f"{init_result.tables_skipped} already in sync"
            )

            result = await service.process_sync_queue(max_time_ms or settings.SYNC_MAX_PROCESSING_MS)

        logger.info(
            f"Processed {result.items_processed} chunks, {result.rows_transferred} rows, "
            f"{len(result.errors)} errors, complete={result.complete}"
        )
        for error in result.errors:
            logger.warning(f"  {error}")
        return 0 if not result.errors else 2

    finally:
        await dispose_engine()


def main():
    parser = argparse.ArgumentParser(description="Run a data sync pass")
    parser.add_argument("--connection", type=int, default=None, help="Connection id to (re)initialize")
    parser.add_argument("--max-time-ms", type=int, default=None, help="Queue processing budget")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL for this run")
    args = parser.parse_args()

    setup_logging(args.log_level)

    sys.exit(asyncio.run(run_sync(args.connection, args.max_time_ms)))


if __name__ == "__main__":
    main()
