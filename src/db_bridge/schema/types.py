"""Canonical column type vocabulary.

The closed set of types every dialect's native type names are reconciled
into, plus the compatibility families used to classify type changes.

Usage:
    from db_bridge.schema.types import CanonicalType, is_compatible

    is_compatible(CanonicalType.INTEGER, CanonicalType.BIGINT)  # True
    is_compatible(CanonicalType.TEXT, CanonicalType.INTEGER)    # False
"""

import re
from enum import Enum


class CanonicalType(str, Enum):
    """Dialect-neutral column types."""

    SMALLINT = "smallint"
    INTEGER = "integer"
    BIGINT = "bigint"
    REAL = "real"
    DOUBLE = "double"
    NUMERIC = "numeric"
    TEXT = "text"
    VARCHAR = "varchar"
    CHAR = "char"
    BOOLEAN = "boolean"
    DATE = "date"
    TIME = "time"
    TIMESTAMP = "timestamp"
    TIMESTAMPTZ = "timestamptz"
    INTERVAL = "interval"
    JSON = "json"
    BLOB = "blob"
    UUID = "uuid"
    ARRAY = "array"


INTEGER_TYPES = frozenset(
    {CanonicalType.SMALLINT, CanonicalType.INTEGER, CanonicalType.BIGINT}
)

# Types whose values survive a change inside the family without data loss
# beyond precision/length. Array and json values travel as JSON text.
_FAMILIES: dict[CanonicalType, str] = {
    CanonicalType.SMALLINT: "number",
    CanonicalType.INTEGER: "number",
    CanonicalType.BIGINT: "number",
    CanonicalType.REAL: "number",
    CanonicalType.DOUBLE: "number",
    CanonicalType.NUMERIC: "number",
    CanonicalType.TEXT: "string",
    CanonicalType.VARCHAR: "string",
    CanonicalType.CHAR: "string",
    CanonicalType.UUID: "string",
    CanonicalType.JSON: "string",
    CanonicalType.ARRAY: "string",
    CanonicalType.BOOLEAN: "boolean",
    CanonicalType.DATE: "datetime",
    CanonicalType.TIMESTAMP: "datetime",
    CanonicalType.TIMESTAMPTZ: "datetime",
    CanonicalType.TIME: "time",
    CanonicalType.INTERVAL: "interval",
    CanonicalType.BLOB: "binary",
}


def type_family(type_: CanonicalType) -> str:
    """Return the compatibility family name of a canonical type."""
    return _FAMILIES[type_]


def is_compatible(before: CanonicalType, after: CanonicalType) -> bool:
    """True if values of ``before`` can be stored as ``after`` without reshaping."""
    return before == after or _FAMILIES[before] == _FAMILIES[after]


_PARAMS_RE = re.compile(r"^\s*(?P<base>[^(]+?)\s*(?:\((?P<params>[^)]*)\)\s*(?P<rest>.*?))?\s*$", re.DOTALL)


def split_type_params(native: str) -> tuple[str, list[int]]:
    """Split ``VARCHAR(255)`` style declarations into a base name and parameters.

    Args:
        native: Declared type text as reported by the engine.

    Returns:
        Tuple of (lower-cased base name, list of integer parameters). Any text
        after the closing parenthesis (``unsigned``, ``[]``) is appended to the
        base name.

    Example:
        >>> split_type_params("NUMERIC(10, 2)")
        ('numeric', [10, 2])
    """
    match = _PARAMS_RE.match(native or "")
    if not match:
        return (native or "").strip().lower(), []
    base = match.group("base").strip().lower()
    rest = (match.group("rest") or "").strip().lower()
    if rest:
        base = f"{base} {rest}".replace(" []", "[]")
    params: list[int] = []
    for part in (match.group("params") or "").split(","):
        part = part.strip()
        if part.lstrip("-").isdigit():
            params.append(int(part))
    return base, params
