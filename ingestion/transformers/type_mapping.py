"""
MySQL to PostgreSQL type mapping and DDL generation.

Tables are created loosely for import: every column is nullable and there are
no foreign key constraints, only the primary key. Unknown source types fall
back to text so a sync is never blocked by a mapping gap.
"""

import logging
import re
from typing import List, Optional

from sqlalchemy import (
    BigInteger, Boolean, Date, DateTime, Integer, LargeBinary,
    Numeric, SmallInteger, Text, Time,
)
from sqlalchemy.dialects.postgresql import ARRAY, DOUBLE_PRECISION, JSONB, REAL
from sqlalchemy.types import TypeEngine

from core.sql import quote_ident, quote_literal
from schemas.normalized import SourceColumn, TargetColumn

logger = logging.getLogger(__name__)

# Base type → target type. Parameters are re-applied below where they matter.
TYPE_MAPPING = {
    # Integer types
    "tinyint": "smallint",
    "smallint": "smallint",
    "mediumint": "integer",
    "int": "integer",
    "integer": "integer",
    "bigint": "bigint",
    "serial": "bigint",

    # Floating point
    "float": "real",
    "double": "double precision",
    "double precision": "double precision",
    "real": "double precision",

    # Fixed point
    "decimal": "numeric",
    "numeric": "numeric",
    "dec": "numeric",
    "fixed": "numeric",

    # Strings
    "char": "char",
    "varchar": "varchar",
    "tinytext": "text",
    "text": "text",
    "mediumtext": "text",
    "longtext": "text",

    # Binary
    "bit": "bytea",
    "binary": "bytea",
    "varbinary": "bytea",
    "tinyblob": "bytea",
    "blob": "bytea",
    "mediumblob": "bytea",
    "longblob": "bytea",

    # Date/time
    "date": "date",
    "datetime": "timestamp",
    "timestamp": "timestamp with time zone",
    "time": "time",
    "year": "smallint",

    # JSON
    "json": "jsonb",

    # Spatial, imported as text
    "geometry": "text",
    "point": "text",
    "linestring": "text",
    "polygon": "text",
    "multipoint": "text",
    "multilinestring": "text",
    "multipolygon": "text",
    "geometrycollection": "text",

    # Set/Enum
    "set": "text[]",
    "enum": "text",
}

# Unsigned integers need the next wider type to hold their full range
UNSIGNED_WIDENING = {
    "smallint": "integer",
    "int": "bigint",
    "integer": "bigint",
    "bigint": "numeric(20,0)",
}

STRING_TARGET_TYPES = ("varchar", "char", "text")

_TYPE_PATTERN = re.compile(r"^\s*([a-z][a-z ]*?)\s*(\([^)]*\))?\s*(unsigned)?(?:\s+zerofill)?\s*$")
_NAME_PATTERN = re.compile(r"[^a-z0-9_]")
_ZERO_DATE = "0000-00-00"


def normalize_name(name: str) -> str:
    """Lower-case a table/column name and replace anything outside [a-z0-9_] with '_'."""
    return _NAME_PATTERN.sub("_", name.lower())


def _parse_column_type(full_type: str):
    """Split 'decimal(10,2) unsigned' into ('decimal', '(10,2)', True)."""
    match = _TYPE_PATTERN.match(full_type)
    if not match:
        head = re.split(r"[\s(]", full_type.strip(), maxsplit=1)[0]
        return head, "", "unsigned" in full_type
    return match.group(1).strip(), (match.group(2) or "").replace(" ", ""), bool(match.group(3))


def map_mysql_type_to_postgres(source_type: str, column_type: Optional[str] = None) -> str:
    """
    Map a MySQL column type to a PostgreSQL type expression.

    Args:
        source_type: Bare data type (information_schema DATA_TYPE)
        column_type: Full type with params (information_schema COLUMN_TYPE)

    Returns:
        Non-empty PostgreSQL type. Never raises.
    """
    full_type = str(column_type or source_type or "").lower().strip()
    if not full_type:
        logger.warning("Empty MySQL type, defaulting to text")
        return "text"

    base_type, params, unsigned = _parse_column_type(full_type)

    if base_type in ("tinyint", "bit") and params == "(1)":
        return "boolean"
    if base_type in ("bool", "boolean"):
        return "boolean"

    pg_type = TYPE_MAPPING.get(base_type) or TYPE_MAPPING.get(full_type)
    if not pg_type:
        logger.warning(f"Unknown MySQL type: {source_type} ({column_type}), defaulting to text")
        return "text"

    if unsigned and base_type in UNSIGNED_WIDENING:
        return UNSIGNED_WIDENING[base_type]

    if params:
        if base_type in ("varchar", "char"):
            return f"{pg_type}{params}"
        if pg_type == "numeric":
            return f"numeric{params}"

    return pg_type


def _is_zero_date(value: str) -> bool:
    return _ZERO_DATE in value


def _convert_default(column: SourceColumn, pg_type: str) -> Optional[str]:
    default = column.default_value
    if column.auto_increment or default is None:
        return None

    if _is_zero_date(default):
        return "NULL" if column.nullable else None
    if default.upper() in ("CURRENT_TIMESTAMP", "CURRENT_TIMESTAMP()", "NOW()") \
            or default.upper().startswith("CURRENT_TIMESTAMP("):
        return "now()"
    if pg_type == "boolean":
        return "true" if default.strip().lower() in ("1", "true", "b'1'") else "false"
    if default.upper() == "NULL":
        return "NULL"
    if pg_type.startswith(STRING_TARGET_TYPES):
        return quote_literal(default)
    if pg_type in ("date", "time", "timestamp", "timestamp with time zone", "text[]"):
        return quote_literal(default)
    if pg_type == "jsonb":
        return f"{quote_literal(default)}::jsonb"
    return default


def convert_column(column: SourceColumn) -> TargetColumn:
    """Convert a source column to its target definition, including the default expression."""
    pg_type = map_mysql_type_to_postgres(column.type, column.column_type)
    return TargetColumn(
        name=normalize_name(column.name),
        type=pg_type,
        nullable=column.nullable,
        primary_key=column.primary_key,
        default_expression=_convert_default(column, pg_type),
    )


def qualified_name(schema_name: str, table_name: str) -> str:
    return f"{quote_ident(schema_name)}.{quote_ident(normalize_name(table_name))}"


def generate_create_table_sql(
    schema_name: str,
    table_name: str,
    columns: List[SourceColumn],
    primary_keys: List[str]
) -> str:
    """Build CREATE TABLE for a source table. NOT NULL is never emitted."""
    column_defs = []
    for target in (convert_column(c) for c in columns):
        definition = f"    {quote_ident(target.name)} {target.type}"
        if target.default_expression:
            definition += f" DEFAULT {target.default_expression}"
        column_defs.append(definition)

    if primary_keys:
        pk_cols = ", ".join(quote_ident(normalize_name(pk)) for pk in primary_keys)
        column_defs.append(f"    PRIMARY KEY ({pk_cols})")

    body = ",\n".join(column_defs)
    return f"CREATE TABLE {qualified_name(schema_name, table_name)} (\n{body}\n)"


def sequence_name(table_name: str, column_name: str) -> str:
    return f"{normalize_name(table_name)}_{normalize_name(column_name)}_seq"


def generate_fix_sequence_sql(schema_name: str, table_name: str, column_name: str) -> List[str]:
    """
    Statements that (re)position an auto-increment sequence after a bulk load.

    The sequence is positioned so the next nextval() yields max(column) + 1,
    or 1 for an empty table.
    Returned as separate statements; prepared-statement drivers reject batches.
    """
    table = qualified_name(schema_name, table_name)
    column = quote_ident(normalize_name(column_name))
    seq = f"{quote_ident(schema_name)}.{quote_ident(sequence_name(table_name, column_name))}"
    seq_literal = quote_literal(seq)

    return [
        f"CREATE SEQUENCE IF NOT EXISTS {seq}",
        (
            f"SELECT setval({seq_literal}, "
            f"COALESCE((SELECT MAX({column}) FROM {table}), 0) + 1, false)"
        ),
        f"ALTER TABLE {table} ALTER COLUMN {column} SET DEFAULT nextval({seq_literal})",
    ]


def generate_index_sql(
    schema_name: str,
    table_name: str,
    columns: List[str],
    index_name: Optional[str] = None
) -> str:
    normalized_cols = [normalize_name(c) for c in columns]
    name = index_name or f"idx_{normalize_name(table_name)}_{'_'.join(normalized_cols)}"
    cols = ", ".join(quote_ident(c) for c in normalized_cols)
    return (
        f"CREATE INDEX IF NOT EXISTS {quote_ident(name)} "
        f"ON {qualified_name(schema_name, table_name)} ({cols})"
    )


def target_family(target_type: str) -> str:
    """Coarse family of a target type, used to pick bind types and value conversions."""
    t = target_type.lower()
    if t == "boolean":
        return "boolean"
    if t in ("smallint", "integer", "bigint"):
        return "integer"
    if t.startswith("numeric"):
        return "numeric"
    if t in ("real", "double precision"):
        return "float"
    if t == "timestamp with time zone":
        return "timestamptz"
    if t == "timestamp":
        return "timestamp"
    if t == "date":
        return "date"
    if t == "time":
        return "time"
    if t == "bytea":
        return "bytes"
    if t == "jsonb":
        return "json"
    if t.endswith("[]"):
        return "array"
    return "text"


def bind_type_for(target_type: str) -> TypeEngine:
    """SQLAlchemy type used to bind values for a target column during bulk insert."""
    t = target_type.lower()
    family = target_family(t)
    if family == "boolean":
        return Boolean()
    if family == "integer":
        return {"smallint": SmallInteger(), "integer": Integer()}.get(t, BigInteger())
    if family == "numeric":
        return Numeric(asdecimal=True)
    if family == "float":
        return REAL() if t == "real" else DOUBLE_PRECISION()
    if family == "timestamptz":
        return DateTime(timezone=True)
    if family == "timestamp":
        return DateTime()
    if family == "date":
        return Date()
    if family == "time":
        return Time()
    if family == "bytes":
        return LargeBinary()
    if family == "json":
        return JSONB()
    if family == "array":
        return ARRAY(Text())
    return Text()
