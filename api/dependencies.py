"""
FastAPI dependencies
"""

from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from core.database import async_session_maker
from ingestion.transfer import DataTransferService
from query.cache import ChartCache
from query.chart_data import ChartDataService


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped database session"""
    async with async_session_maker() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    return async_session_maker


def get_transfer_service() -> DataTransferService:
    return DataTransferService(async_session_maker)


def get_chart_cache() -> ChartCache:
    return ChartCache(async_session_maker)


def get_chart_data_service() -> ChartDataService:
    return ChartDataService(async_session_maker)
