"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from typing import Any, AsyncGenerator, Dict, List, Optional
from core.exceptions import SourceUnreachableError, TransferError
from ingestion.extractors.mysql_source import SourceChunk
from ingestion.loaders.postgres_loader import TableCreateResult
from ingestion.transformers.type_mapping import normalize_name
from models.base import Base, StorageLocation
from models.connection import DataConnection
from schemas.normalized import DatabaseSchema, ForeignKeyDef, SourceColumn, TableSchema

# In-memory state store; one shared connection so every session sees the same data
TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_connection(session_factory):
    """Insert a DataConnection and return it"""

    async def _make(storage_location=StorageLocation.SYNCED, **overrides) -> DataConnection:
        values = dict(
            organization_id="org_1",
            internal_name="Shop DB",
            database_name="shop",
            host="mysql.internal",
            port=3306,
            username="reader",
            password="secret",
            storage_location=storage_location,
        )
        values.update(overrides)
        async with session_factory() as session:
            connection = DataConnection(**values)
            session.add(connection)
            await session.commit()
            await session.refresh(connection)
            return connection

    return _make


# ============================================================================
# Source / target fakes
# ============================================================================

def int_column(name: str, auto_increment: bool = False, primary_key: bool = False) -> SourceColumn:
    return SourceColumn(
        name=name,
        type="int",
        column_type="int(11)",
        nullable=not primary_key,
        primary_key=primary_key,
        auto_increment=auto_increment,
        extra="auto_increment" if auto_increment else None,
    )


def varchar_column(name: str, length: int = 100) -> SourceColumn:
    return SourceColumn(name=name, type="varchar", column_type=f"varchar({length})")


class FakeMySqlDatabase:
    """
    In-memory stand-in for an external MySQL database.

    ``factory`` is passed as ``source_factory`` and builds one FakeSource per
    connection config, the way MySqlSource is built from a config.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Any]] = {}
        self.failing_tables: Dict[str, Exception] = {}
        self.unreachable = False
        self.reads: List[tuple] = []
        self.queries: List[tuple] = []
        self.query_rows: List[Dict[str, Any]] = []
        self.foreign_keys: List[ForeignKeyDef] = []

    def add_table(self, name: str, columns: List[SourceColumn], rows: List[Dict[str, Any]]):
        self.tables[name] = {"columns": columns, "rows": list(rows)}

    def make_rows(self, count: int, start: int = 1) -> List[Dict[str, Any]]:
        return [{"id": i, "name": f"row {i}"} for i in range(start, start + count)]

    def add_simple_table(self, name: str, count: int):
        self.add_table(
            name,
            [int_column("id", auto_increment=True, primary_key=True), varchar_column("name")],
            self.make_rows(count),
        )

    def factory(self, config):
        return FakeSource(self, config)


class FakeSource:
    def __init__(self, database: FakeMySqlDatabase, config):
        self.database = database
        self.config = config

    def _check_reachable(self):
        if self.database.unreachable:
            raise SourceUnreachableError(
                f"Could not connect to {self.config.host}:{self.config.port}: timed out",
                context={"host": self.config.host}
            )

    async def introspect(self) -> DatabaseSchema:
        self._check_reachable()
        tables = []
        for name in sorted(self.database.tables):
            table = self.database.tables[name]
            columns = table["columns"]
            tables.append(TableSchema(
                table_name=name,
                columns=columns,
                primary_keys=[c.name for c in columns if c.primary_key],
                auto_increment_column=next((c.name for c in columns if c.auto_increment), None),
                row_count=len(table["rows"]),
            ))
        return DatabaseSchema(tables=tables, foreign_keys=list(self.database.foreign_keys))

    async def read_chunk(self, table_name: str, offset: int, limit: int) -> SourceChunk:
        self._check_reachable()
        self.database.reads.append((table_name, offset, limit))
        if table_name in self.database.failing_tables:
            raise self.database.failing_tables[table_name]
        table = self.database.tables[table_name]
        return SourceChunk(columns=table["columns"], rows=table["rows"][offset:offset + limit])

    async def execute(self, sql: str, params=None, timeout: Optional[int] = None):
        self._check_reachable()
        self.database.queries.append((sql, params, timeout))
        return list(self.database.query_rows)


class FakeTargetLoader:
    """In-memory PostgresLoader: schemas hold tables, tables hold rows"""

    def __init__(self):
        self.schemas: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        self.failing_creates = set()
        self.failing_inserts: Dict[str, Exception] = {}
        self.truncated: List[tuple] = []
        self.sequences_fixed: List[tuple] = []
        self.dropped: List[str] = []
        self.tables_dropped: List[tuple] = []
        self.indexes: List[tuple] = []

    def rows(self, schema_name: str, table_name: str) -> List[Dict[str, Any]]:
        return self.schemas[schema_name][normalize_name(table_name)]

    async def create_namespace(self, schema_name: str) -> None:
        self.schemas.setdefault(schema_name, {})

    async def create_table(self, schema_name: str, table_def) -> TableCreateResult:
        name = normalize_name(table_def.table_name)
        if table_def.table_name in self.failing_creates:
            return TableCreateResult(success=False, sql="CREATE TABLE ...", error="permission denied")
        if name in self.schemas[schema_name]:
            return TableCreateResult(success=True, sql="CREATE TABLE ...", existed=True)
        self.schemas[schema_name][name] = []
        return TableCreateResult(success=True, sql="CREATE TABLE ...")

    async def table_row_count(self, schema_name: str, table_name: str) -> int:
        tables = self.schemas.get(schema_name, {})
        name = normalize_name(table_name)
        return len(tables[name]) if name in tables else -1

    async def truncate_table(self, schema_name: str, table_name: str) -> None:
        self.truncated.append((schema_name, table_name))
        tables = self.schemas.get(schema_name, {})
        if normalize_name(table_name) in tables:
            tables[normalize_name(table_name)] = []

    async def bulk_insert(self, schema_name, table_name, columns, rows, batch_size=None) -> int:
        if table_name in self.failing_inserts:
            raise self.failing_inserts[table_name]
        self.schemas[schema_name][normalize_name(table_name)].extend(rows)
        return len(rows)

    async def fix_sequence(self, schema_name: str, table_name: str, column_name: str) -> bool:
        self.sequences_fixed.append((schema_name, table_name, column_name))
        return True

    async def tables_in_schema(self, schema_name: str) -> List[str]:
        return sorted(self.schemas.get(schema_name, {}))

    async def drop_table(self, schema_name: str, table_name: str) -> None:
        self.tables_dropped.append((schema_name, table_name))
        self.schemas.get(schema_name, {}).pop(normalize_name(table_name), None)

    async def create_index(self, schema_name: str, table_name: str, columns: List[str]) -> bool:
        self.indexes.append((schema_name, table_name, tuple(columns)))
        return True

    async def drop_namespace(self, schema_name: str) -> None:
        self.dropped.append(schema_name)
        self.schemas.pop(schema_name, None)


@pytest.fixture
def source_db():
    return FakeMySqlDatabase()


@pytest.fixture
def target_loader():
    return FakeTargetLoader()


@pytest.fixture
def failing_insert_error():
    return TransferError("Bulk insert into target failed: value too long", context={"table_name": "orders"})
