"""
MySQL catalog introspection into a normalized schema model.

Runs against a DB-API cursor that returns rows as dicts (PyMySQL DictCursor).
All queries alias their columns in lower case because information_schema
column casing differs between MySQL versions.
"""

import logging
from typing import Any, Dict, List, Optional

from core.exceptions import IntrospectionError
from schemas.normalized import (
    ColumnPair, DatabaseSchema, ForeignKeyDef, SourceColumn, TableSchema,
)

logger = logging.getLogger(__name__)

TABLES_SQL = """
    select table_name as table_name
    from information_schema.tables
    where table_schema = database()
      and table_type = 'BASE TABLE'
    order by table_name
"""

COLUMNS_SQL = """
    select column_name as column_name,
           data_type as data_type,
           column_type as column_type,
           is_nullable as is_nullable,
           column_key as column_key,
           column_default as column_default,
           extra as extra
    from information_schema.columns
    where table_schema = database()
      and table_name = %s
    order by ordinal_position
"""

PRIMARY_KEY_SQL = """
    select kcu.column_name as column_name
    from information_schema.table_constraints tc
    join information_schema.key_column_usage kcu
      on tc.constraint_name = kcu.constraint_name
     and tc.table_schema = kcu.table_schema
     and tc.table_name = kcu.table_name
    where tc.table_schema = database()
      and tc.table_name = %s
      and tc.constraint_type = 'PRIMARY KEY'
    order by kcu.ordinal_position
"""

FOREIGN_KEYS_SQL = """
    select rc.constraint_name as constraint_name,
           kcu.table_name as source_table,
           kcu.referenced_table_name as target_table,
           kcu.ordinal_position as position,
           kcu.column_name as source_column,
           kcu.referenced_column_name as target_column,
           rc.update_rule as update_rule,
           rc.delete_rule as delete_rule
    from information_schema.referential_constraints rc
    join information_schema.key_column_usage kcu
      on rc.constraint_name = kcu.constraint_name
     and rc.constraint_schema = kcu.constraint_schema
    where kcu.table_schema = database()
    order by rc.constraint_name, kcu.ordinal_position
"""


def quote_mysql_ident(identifier: str) -> str:
    return "`" + identifier.replace("`", "``") + "`"


def _text(value: Any) -> Optional[str]:
    """information_schema values may arrive as bytes on some server versions."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


class SchemaIntrospector:
    """
    Build a DatabaseSchema from the source catalog.

    One query for the table list, three per table (columns, primary key,
    row count) and one global query for foreign keys.
    """

    def __init__(self, cursor):
        self.cursor = cursor

    def _fetch(self, sql: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        self.cursor.execute(sql, params)
        return list(self.cursor.fetchall())

    def list_tables(self) -> List[str]:
        return [_text(row["table_name"]) for row in self._fetch(TABLES_SQL)]

    def get_columns(self, table_name: str, primary_keys: List[str]) -> List[SourceColumn]:
        columns = []
        for row in self._fetch(COLUMNS_SQL, (table_name,)):
            name = _text(row["column_name"])
            extra = _text(row.get("extra")) or ""
            columns.append(SourceColumn(
                name=name,
                type=_text(row["data_type"]),
                column_type=_text(row.get("column_type")),
                nullable=_text(row.get("is_nullable")) == "YES",
                primary_key=name in primary_keys or _text(row.get("column_key")) == "PRI",
                auto_increment="auto_increment" in extra.lower(),
                default_value=_text(row.get("column_default")),
                extra=extra or None,
            ))
        return columns

    def get_primary_keys(self, table_name: str) -> List[str]:
        return [_text(row["column_name"]) for row in self._fetch(PRIMARY_KEY_SQL, (table_name,))]

    def get_row_count(self, table_name: str) -> int:
        rows = self._fetch(f"select count(*) as row_count from {quote_mysql_ident(table_name)}")
        return int(rows[0]["row_count"]) if rows else 0

    def get_foreign_keys(self) -> List[ForeignKeyDef]:
        grouped: Dict[tuple, ForeignKeyDef] = {}
        for row in self._fetch(FOREIGN_KEYS_SQL):
            key = (_text(row["constraint_name"]), _text(row["source_table"]))
            fk = grouped.get(key)
            if fk is None:
                fk = ForeignKeyDef(
                    constraint_name=key[0],
                    source_table=key[1],
                    target_table=_text(row["target_table"]),
                    update_rule=_text(row.get("update_rule")),
                    delete_rule=_text(row.get("delete_rule")),
                )
                grouped[key] = fk
            fk.column_pairs.append(ColumnPair(
                source_column=_text(row["source_column"]),
                target_column=_text(row["target_column"]),
            ))
        return list(grouped.values())

    def introspect_table(self, table_name: str) -> TableSchema:
        primary_keys = self.get_primary_keys(table_name)
        columns = self.get_columns(table_name, primary_keys)
        if not columns:
            raise IntrospectionError(
                f"Table {table_name} has no columns",
                context={"table_name": table_name}
            )

        auto_increment = next((c.name for c in columns if c.auto_increment), None)

        return TableSchema(
            table_name=table_name,
            columns=columns,
            primary_keys=primary_keys,
            auto_increment_column=auto_increment,
            row_count=self.get_row_count(table_name),
        )

    def introspect(self) -> DatabaseSchema:
        tables = []
        for table_name in self.list_tables():
            tables.append(self.introspect_table(table_name))
            logger.debug(f"Introspected {table_name}: {tables[-1].row_count} rows")

        foreign_keys = self.get_foreign_keys()
        logger.info(f"Introspected {len(tables)} tables, {len(foreign_keys)} foreign keys")

        return DatabaseSchema(tables=tables, foreign_keys=foreign_keys)
