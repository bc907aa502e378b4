"""Row value conversion between dialects.

Converters are chosen by the *target* column's canonical type and inspect
each value's Python type, so the same converter works whichever engine the
row came from.

- booleans: ``0``/``1`` on SQLite, ``bool`` on PostgreSQL
- json and arrays: JSON text where the target has no native type,
  lists/JSON strings where it does
- dates and times: ISO strings on SQLite, ``datetime`` objects on
  PostgreSQL (asyncpg does not parse strings for temporal parameters)
- numeric: ``Decimal`` on PostgreSQL, decimal text on SQLite

Usage:
    from db_bridge.migration.convert import build_row_converter

    convert = build_row_converter(target_columns, Dialect.POSTGRESQL)
    params = [convert(row) for row in rows]
"""

import json
import re
from collections.abc import Callable, Sequence
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from db_bridge.schema.capabilities import Dialect
from db_bridge.schema.models import Column
from db_bridge.schema.types import INTEGER_TYPES, CanonicalType

T = CanonicalType

Converter = Callable[[Any], Any]

_TRUE_STRINGS = {"1", "t", "true", "y", "yes", "on"}
_SECONDS_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(?:s|sec|secs|second|seconds)?\s*$")


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _to_json_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8")
    return json.dumps(value, default=_json_default)


def _to_list(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            return json.loads(stripped)
        if stripped.startswith("{") and stripped.endswith("}"):
            # PostgreSQL array literal text: {a,b,c}
            inner = stripped[1:-1]
            return [item.strip().strip('"') for item in inner.split(",")] if inner else []
        return [stripped]
    return list(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return value != 0
    if isinstance(value, (bytes, bytearray)):
        value = value.decode()
    return str(value).strip().lower() in _TRUE_STRINGS


def _to_int_flag(value: Any) -> int:
    return 1 if _to_bool(value) else 0


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip().replace("Z", "+00:00")
    return datetime.fromisoformat(text)


def _to_timestamp(value: Any) -> datetime:
    parsed = _parse_datetime(value)
    return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed


def _to_timestamptz(value: Any) -> datetime:
    parsed = _parse_datetime(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if isinstance(value, str) and len(text) == 10:
        return date.fromisoformat(text)
    return _parse_datetime(value).date()


def _to_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, datetime):
        return value.time()
    return time.fromisoformat(str(value).strip())


def _to_interval(value: Any) -> Any:
    if isinstance(value, timedelta):
        return value
    match = _SECONDS_RE.match(str(value))
    if match:
        return timedelta(seconds=float(match.group(1)))
    return value


def _to_iso_text(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return f"{value.total_seconds():g} seconds"
    return value


def _to_decimal(value: Any) -> Any:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return value


def _to_integer(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return int(value)
    return value


def _to_float(value: Any) -> Any:
    if isinstance(value, (str, Decimal)):
        try:
            return float(value)
        except ValueError:
            return value
    return value


def _to_text(value: Any) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return _to_json_text(value)
    if isinstance(value, (datetime, date, time, timedelta)):
        return _to_iso_text(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _to_uuid(value: Any) -> Any:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


def _to_bytes(value: Any) -> Any:
    if isinstance(value, memoryview):
        return value.tobytes()
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


def _nullable(convert: Converter) -> Converter:
    def wrapper(value: Any) -> Any:
        return None if value is None else convert(value)

    return wrapper


def converter_for(column: Column, dialect: Dialect) -> Converter:
    """Value converter for one target column."""
    postgres = dialect == Dialect.POSTGRESQL
    type_ = column.type

    if type_ == T.BOOLEAN:
        return _nullable(_to_bool if postgres else _to_int_flag)
    if type_ in INTEGER_TYPES:
        return _nullable(_to_integer)
    if type_ in (T.REAL, T.DOUBLE):
        return _nullable(_to_float)
    if type_ == T.NUMERIC:
        return _nullable(_to_decimal if postgres else lambda v: str(v) if isinstance(v, Decimal) else v)
    if type_ == T.JSON:
        return _nullable(_to_json_text)
    if type_ == T.ARRAY:
        return _nullable(_to_list if postgres else _to_json_text)
    if type_ == T.UUID:
        return _nullable(_to_uuid if postgres else str)
    if type_ == T.BLOB:
        return _nullable(_to_bytes)
    if not postgres:
        if type_ in (T.TEXT, T.VARCHAR, T.CHAR):
            return _nullable(_to_text)
        return _nullable(_to_iso_text)
    if type_ == T.TIMESTAMP:
        return _nullable(_to_timestamp)
    if type_ == T.TIMESTAMPTZ:
        return _nullable(_to_timestamptz)
    if type_ == T.DATE:
        return _nullable(_to_date)
    if type_ == T.TIME:
        return _nullable(_to_time)
    if type_ == T.INTERVAL:
        return _nullable(_to_interval)
    return _nullable(_to_text)


def build_row_converter(
    columns: Sequence[Column], dialect: Dialect
) -> Callable[[dict], dict[str, Any]]:
    """Build a function turning a source row into ``:p0, :p1, ...`` params.

    Args:
        columns: Target columns in INSERT order.
        dialect: Target dialect.

    Returns:
        Callable mapping a row dict (keyed by column name) to a params dict.
    """
    converters = [(f"p{i}", column.name, converter_for(column, dialect)) for i, column in enumerate(columns)]

    def convert(row: dict) -> dict[str, Any]:
        return {param: fn(row.get(name)) for param, name, fn in converters}

    return convert
