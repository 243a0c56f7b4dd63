"""
Database engine and session factory for the internal PostgreSQL store.

One store holds the sync state tables, the chart cache, every synced
connection schema and the tenant schemas, so the query router and the
transfer service share this engine.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from core.config import settings
from models import Base
import logging

logger = logging.getLogger(__name__)


def build_engine(url: str = None) -> AsyncEngine:
    return create_async_engine(
        url or settings.DATABASE_URL,
        echo=False,
        pool_pre_ping=True,
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    # Rows are read after commit by the transfer service
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


engine = build_engine()
async_session_maker = build_session_maker(engine)


async def create_tables(bind: AsyncEngine = None) -> None:
    """Create the state and cache tables that do not exist yet"""
    target = bind or engine
    async with target.begin() as conn:
        logger.info(f"Creating tables: {', '.join(sorted(Base.metadata.tables))}")
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    await engine.dispose()
    logger.info("Database engine disposed")
