"""
Tagged values for rows moving from MySQL to PostgreSQL.

Raw driver values are first classified into a small tagged union, then
rendered for the target column by switching on the tag.
"""

import enum
import json
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ingestion.transformers.type_mapping import target_family

_DATE_SOURCE_TYPES = ("date", "datetime", "timestamp")
_TRUE_STRINGS = ("1", "true", "t", "yes", "y")


class ValueTag(str, enum.Enum):
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    DATE = "date"
    BYTES = "bytes"
    STRING = "string"
    JSON = "json"


@dataclass(frozen=True)
class TaggedValue:
    tag: ValueTag
    value: Any = None


NULL = TaggedValue(ValueTag.NULL)


def _base_type(source_type: Optional[str]) -> str:
    if not source_type:
        return ""
    return source_type.lower().split("(", 1)[0].split(" ", 1)[0].strip()


def tag_value(raw: Any, source_type: Optional[str] = None) -> TaggedValue:
    """
    Classify a raw driver value.

    Args:
        raw: Value as returned by the source driver
        source_type: Source column type (full or bare), used for SET, JSON,
            bit(1) and zero-date handling
    """
    if raw is None:
        return NULL

    base = _base_type(source_type)

    if isinstance(raw, bool):
        return TaggedValue(ValueTag.BOOL, raw)

    if isinstance(raw, (bytes, bytearray)):
        if base == "bit" and (source_type or "").replace(" ", "").startswith("bit(1)"):
            return TaggedValue(ValueTag.BOOL, any(raw))
        return TaggedValue(ValueTag.BYTES, bytes(raw))

    if isinstance(raw, (int, float, Decimal)):
        return TaggedValue(ValueTag.NUMBER, raw)

    if isinstance(raw, (datetime, date, time, timedelta)):
        return TaggedValue(ValueTag.DATE, raw)

    if isinstance(raw, (set, frozenset)):
        return TaggedValue(ValueTag.JSON, sorted(str(v) for v in raw))

    if isinstance(raw, (dict, list)):
        return TaggedValue(ValueTag.JSON, raw)

    if isinstance(raw, str):
        # Invalid MySQL dates come back as their literal text
        if base in _DATE_SOURCE_TYPES and raw.startswith("0000-00-00"):
            return NULL
        if base == "set":
            return TaggedValue(ValueTag.JSON, [v for v in raw.split(",") if v])
        if base == "json":
            try:
                return TaggedValue(ValueTag.JSON, json.loads(raw))
            except ValueError:
                return TaggedValue(ValueTag.STRING, raw)
        return TaggedValue(ValueTag.STRING, raw)

    return TaggedValue(ValueTag.STRING, str(raw))


def _timedelta_to_time(value: timedelta) -> time:
    seconds = int(value.total_seconds()) % 86400
    return time(seconds // 3600, (seconds % 3600) // 60, seconds % 60, value.microseconds)


def _number_to_bind(value, family: str):
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    if family == "boolean":
        return bool(value)
    if family == "integer":
        return int(value)
    if family == "numeric":
        return value if isinstance(value, Decimal) else Decimal(str(value))
    if family == "float":
        return float(value)
    if family in ("text", "array"):
        text = str(value)
        return [text] if family == "array" else text
    return value


def _date_to_bind(value, family: str):
    if family in ("text", "array"):
        text = value.isoformat() if hasattr(value, "isoformat") else str(value)
        return [text] if family == "array" else text
    if isinstance(value, timedelta):
        return _timedelta_to_time(value) if family == "time" else str(value)
    if family == "timestamptz" and isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    if family in ("timestamp", "timestamptz") and not isinstance(value, datetime) \
            and isinstance(value, date):
        dt = datetime.combine(value, time())
        return dt.replace(tzinfo=timezone.utc) if family == "timestamptz" else dt
    if family == "date" and isinstance(value, datetime):
        return value.date()
    return value


def _string_to_bind(value: str, family: str):
    if family == "boolean":
        return value.strip().lower() in _TRUE_STRINGS
    if family == "integer":
        return int(value)
    if family == "numeric":
        return Decimal(value)
    if family == "float":
        return float(value)
    if family == "json":
        try:
            return json.loads(value)
        except ValueError:
            return value
    if family == "array":
        return [value]
    if family == "bytes":
        return value.encode("utf-8")
    return value


def to_bind_value(tagged: TaggedValue, target_type: str) -> Any:
    """Render a tagged value as the Python object bound for a target column."""
    family = target_family(target_type)
    tag = tagged.tag
    value = tagged.value

    if tag == ValueTag.NULL:
        return None
    if tag == ValueTag.BOOL:
        if family == "boolean":
            return bool(value)
        if family in ("integer", "numeric", "float"):
            return int(value)
        text = "true" if value else "false"
        return [text] if family == "array" else text
    if tag == ValueTag.NUMBER:
        return _number_to_bind(value, family)
    if tag == ValueTag.DATE:
        return _date_to_bind(value, family)
    if tag == ValueTag.BYTES:
        if family == "bytes":
            return value
        if family == "boolean":
            return any(value)
        text = value.decode("utf-8", errors="replace")
        return [text] if family == "array" else text
    if tag == ValueTag.JSON:
        if family == "json":
            return value
        if family == "array":
            items = value if isinstance(value, list) else [value]
            return [str(v) for v in items]
        return json.dumps(value, default=str)
    return _string_to_bind(value, family)


def convert_row(row: Dict[str, Any], columns: List[tuple]) -> Dict[str, Any]:
    """
    Convert one source row for insertion.

    Args:
        row: Source row keyed by source column name
        columns: (source_name, source_type, target_name, target_type) tuples
    """
    return {
        target_name: to_bind_value(tag_value(row.get(source_name), source_type), target_type)
        for source_name, source_type, target_name, target_type in columns
    }
