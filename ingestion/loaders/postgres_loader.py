"""
Provision per-connection schemas and tables in PostgreSQL and bulk load rows
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass
from sqlalchemy import text, insert, table, column
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.exceptions import ProvisioningError, TransferError
from core.sql import quote_ident
from ingestion.transformers.type_mapping import (
    bind_type_for,
    generate_create_table_sql,
    generate_fix_sequence_sql,
    generate_index_sql,
    normalize_name,
    qualified_name,
)
from schemas.normalized import TableDefinition, TargetColumn
import logging
import uuid

logger = logging.getLogger(__name__)


def generate_schema_name(database_name: str) -> str:
    """
    Generate a unique schema name for a connection.

    Format: conn_<8 hex>_<normalized database name, max 20 chars>
    """
    suffix = normalize_name(database_name)[:20]
    return f"conn_{uuid.uuid4().hex[:8]}_{suffix}"


@dataclass
class TableCreateResult:
    success: bool
    sql: str
    error: Optional[str] = None
    existed: bool = False


class PostgresLoader:
    """
    Create and load per-connection schemas in the target store.

    Ensures:
    - Namespace creation is idempotent
    - One failing table DDL never aborts the others
    - Each bulk insert runs in a single transaction
    - Drops always CASCADE
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def schema_exists(self, schema_name: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT 1 FROM information_schema.schemata WHERE schema_name = :name"),
                {"name": schema_name}
            )
            return result.scalar() is not None

    async def table_exists(self, schema_name: str, table_name: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                text(
                    "SELECT 1 FROM information_schema.tables "
                    "WHERE table_schema = :schema AND table_name = :table"
                ),
                {"schema": schema_name, "table": normalize_name(table_name)}
            )
            return result.scalar() is not None

    async def tables_in_schema(self, schema_name: str) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                text(
                    "SELECT table_name FROM information_schema.tables "
                    "WHERE table_schema = :schema AND table_type = 'BASE TABLE' "
                    "ORDER BY table_name"
                ),
                {"schema": schema_name}
            )
            return [row[0] for row in result.all()]

    async def create_namespace(self, schema_name: str) -> None:
        """
        Create the schema if absent, then verify it exists.

        Raises:
            ProvisioningError: Creation failed or the schema is not visible afterwards
        """
        logger.info(f"Creating schema: {schema_name}")
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(text(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema_name)}"))
        except SQLAlchemyError as e:
            raise ProvisioningError(
                f"Failed to create schema {schema_name}",
                context={"schema_name": schema_name},
                original_exception=e
            )

        if not await self.schema_exists(schema_name):
            raise ProvisioningError(
                f"Schema {schema_name} was not found after creation",
                context={"schema_name": schema_name}
            )

    async def create_table(self, schema_name: str, table_def: TableDefinition) -> TableCreateResult:
        """
        Create one table from its source definition. Never raises.

        An existing table is left as-is so its rows can be compared on resume.
        """
        ddl = generate_create_table_sql(
            schema_name,
            table_def.table_name,
            table_def.columns,
            table_def.primary_keys
        )

        try:
            if await self.table_exists(schema_name, table_def.table_name):
                logger.debug(f"Table {schema_name}.{table_def.table_name} already exists")
                return TableCreateResult(success=True, sql=ddl, existed=True)

            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(text(ddl))
        except Exception as e:
            logger.error(f"Failed to create table {schema_name}.{table_def.table_name}: {e}")
            return TableCreateResult(success=False, sql=ddl, error=str(e))

        logger.info(f"Created table: {schema_name}.{table_def.table_name}")
        return TableCreateResult(success=True, sql=ddl)

    async def fix_sequence(self, schema_name: str, table_name: str, column_name: str) -> bool:
        """Point the auto-increment column at a sequence positioned after max(column)."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for statement in generate_fix_sequence_sql(schema_name, table_name, column_name):
                        await session.execute(text(statement))
        except SQLAlchemyError as e:
            logger.warning(f"Failed to fix sequence for {schema_name}.{table_name}.{column_name}: {e}")
            return False
        return True

    async def create_index(self, schema_name: str, table_name: str, columns: List[str]) -> bool:
        """Index the given columns unless the index already exists. Never raises."""
        sql = generate_index_sql(schema_name, table_name, columns)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(text(sql))
        except SQLAlchemyError as e:
            logger.warning(f"Failed to index {schema_name}.{table_name} ({', '.join(columns)}): {e}")
            return False
        return True

    async def drop_namespace(self, schema_name: str) -> None:
        logger.info(f"Dropping schema: {schema_name}")
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(text(f"DROP SCHEMA IF EXISTS {quote_ident(schema_name)} CASCADE"))

    async def drop_table(self, schema_name: str, table_name: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    text(f"DROP TABLE IF EXISTS {qualified_name(schema_name, table_name)} CASCADE")
                )

    async def table_row_count(self, schema_name: str, table_name: str) -> int:
        """Row count of a target table, or -1 if it does not exist."""
        if not await self.table_exists(schema_name, table_name):
            return -1
        async with self.session_factory() as session:
            result = await session.execute(
                text(f"SELECT COUNT(*) FROM {qualified_name(schema_name, table_name)}")
            )
            return int(result.scalar() or 0)

    async def truncate_table(self, schema_name: str, table_name: str) -> None:
        if not await self.table_exists(schema_name, table_name):
            logger.info(f"Table {schema_name}.{table_name} does not exist, skipping truncate")
            return
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(text(f"TRUNCATE TABLE {qualified_name(schema_name, table_name)}"))
        logger.info(f"Truncated {schema_name}.{table_name}")

    async def bulk_insert(
        self,
        schema_name: str,
        table_name: str,
        columns: List[TargetColumn],
        rows: List[Dict[str, Any]],
        batch_size: Optional[int] = None
    ) -> int:
        """
        Insert rows in batches inside one transaction.

        Args:
            schema_name: Target schema
            table_name: Source table name (normalized here)
            columns: Target columns; rows are keyed by their names
            rows: Values already converted for binding
            batch_size: Rows per INSERT statement

        Returns:
            Number of rows inserted

        Raises:
            TransferError: Any batch failed; nothing from this call is kept
        """
        if not rows:
            return 0

        batch_size = batch_size or settings.SYNC_INSERT_BATCH_SIZE
        target = table(
            normalize_name(table_name),
            *[column(c.name, bind_type_for(c.type)) for c in columns],
            schema=schema_name
        )
        stmt = insert(target)

        inserted = 0
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for i in range(0, len(rows), batch_size):
                        batch = rows[i:i + batch_size]
                        await session.execute(stmt, batch)
                        inserted += len(batch)
                        logger.debug(f"Batch {i // batch_size + 1}: inserted {len(batch)} rows into {table_name}")
        except SQLAlchemyError as e:
            # Driver error only; the statement error text embeds every bound row
            cause = getattr(e, "orig", None) or e
            raise TransferError(
                f"Bulk insert into {schema_name}.{table_name} failed: {cause}",
                context={"schema_name": schema_name, "table_name": table_name, "rows": len(rows)},
                original_exception=e
            )

        logger.info(f"Inserted {inserted} rows into {schema_name}.{normalize_name(table_name)}")
        return inserted
