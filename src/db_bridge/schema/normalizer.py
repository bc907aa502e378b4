"""Map raw introspection rows into the canonical schema model.

The central job is type reconciliation: every native type name, including
array-of-T and full-text pseudo-types, lands in ``CanonicalType``. Unknown
native types never fail discovery; they map to ``text`` with
``unmapped=True``, keep their native spelling in ``Column.native_type`` and
produce a warning for operators.

Usage:
    from db_bridge.schema.normalizer import PostgresNormalizer

    normalizer = PostgresNormalizer()
    column, warnings = normalizer.normalize_column("users", row, primary_key=["id"])
"""

import re
from dataclasses import dataclass

from db_bridge.schema.capabilities import Dialect
from db_bridge.schema.models import (
    Column,
    ColumnDefault,
    ForeignKey,
    Index,
    ReferentialAction,
)
from db_bridge.schema.types import CanonicalType, split_type_params

T = CanonicalType


@dataclass
class TypeMapping:
    """Outcome of resolving one native type name."""

    type: CanonicalType
    element_type: CanonicalType | None = None
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    unmapped: bool = False
    warning: str | None = None


# Spellings shared by both engines' catalogs and common DDL
_COMMON_TYPES: dict[str, CanonicalType] = {
    "smallint": T.SMALLINT,
    "int2": T.SMALLINT,
    "integer": T.INTEGER,
    "int": T.INTEGER,
    "int4": T.INTEGER,
    "bigint": T.BIGINT,
    "int8": T.BIGINT,
    "real": T.REAL,
    "float4": T.REAL,
    "double precision": T.DOUBLE,
    "double": T.DOUBLE,
    "float": T.DOUBLE,
    "float8": T.DOUBLE,
    "numeric": T.NUMERIC,
    "decimal": T.NUMERIC,
    "text": T.TEXT,
    "varchar": T.VARCHAR,
    "character varying": T.VARCHAR,
    "char": T.CHAR,
    "character": T.CHAR,
    "bpchar": T.CHAR,
    "boolean": T.BOOLEAN,
    "bool": T.BOOLEAN,
    "date": T.DATE,
    "time": T.TIME,
    "time without time zone": T.TIME,
    "time with time zone": T.TIME,
    "timetz": T.TIME,
    "timestamp": T.TIMESTAMP,
    "timestamp without time zone": T.TIMESTAMP,
    "timestamptz": T.TIMESTAMPTZ,
    "timestamp with time zone": T.TIMESTAMPTZ,
    "interval": T.INTERVAL,
    "json": T.JSON,
    "jsonb": T.JSON,
    "blob": T.BLOB,
    "bytea": T.BLOB,
    "uuid": T.UUID,
}

_SQLITE_EXTRA_TYPES: dict[str, CanonicalType] = {
    "tinyint": T.SMALLINT,
    "mediumint": T.INTEGER,
    "unsigned big int": T.BIGINT,
    "clob": T.TEXT,
    "nvarchar": T.VARCHAR,
    "varying character": T.VARCHAR,
    "nchar": T.CHAR,
    "native character": T.CHAR,
    "datetime": T.TIMESTAMP,
}

_POSTGRES_EXTRA_TYPES: dict[str, CanonicalType] = {
    "citext": T.TEXT,
    "name": T.TEXT,
}

# Full-text pseudo-types: no canonical equivalent, carried as their text form
_FULL_TEXT_TYPES = {"tsvector", "tsquery"}

_ACTIONS_BY_NAME = {action.value: action for action in ReferentialAction}
_POSTGRES_ACTION_CODES = {
    "a": ReferentialAction.NO_ACTION,
    "r": ReferentialAction.RESTRICT,
    "c": ReferentialAction.CASCADE,
    "n": ReferentialAction.SET_NULL,
    "d": ReferentialAction.SET_DEFAULT,
}

_NUMBER_RE = re.compile(r"^[-+]?\d+(\.\d+)?([eE][-+]?\d+)?$")
_STRING_RE = re.compile(r"^'(?:[^']|'')*'$")
_CAST_RE = re.compile(
    r"::(?:character varying|timestamp with(?:out)? time zone|time with(?:out)? time zone"
    r"|double precision|\"?[A-Za-z_][\w.]*\"?)(?:\(\d+(?:,\s*\d+)?\))?(?:\[\])?",
)
_CURRENT_TIME_DEFAULTS = {
    "NOW()": "CURRENT_TIMESTAMP",
    "CURRENT_TIMESTAMP": "CURRENT_TIMESTAMP",
    "CURRENT_TIMESTAMP()": "CURRENT_TIMESTAMP",
    "TRANSACTION_TIMESTAMP()": "CURRENT_TIMESTAMP",
    "LOCALTIMESTAMP": "CURRENT_TIMESTAMP",
    "DATETIME('NOW')": "CURRENT_TIMESTAMP",
    "CURRENT_DATE": "CURRENT_DATE",
    "DATE('NOW')": "CURRENT_DATE",
    "CURRENT_TIME": "CURRENT_TIME",
    "TIME('NOW')": "CURRENT_TIME",
}
_BOOLEAN_LITERALS = {
    "TRUE": "TRUE",
    "FALSE": "FALSE",
    "'T'": "TRUE",
    "'F'": "FALSE",
    "'TRUE'": "TRUE",
    "'FALSE'": "FALSE",
}


def _strip_parens(expr: str) -> str:
    """Remove parentheses wrapping the whole expression: ``((-1))`` -> ``-1``."""
    while expr.startswith("(") and expr.endswith(")"):
        depth = 0
        for i, ch in enumerate(expr):
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
            if depth == 0 and i < len(expr) - 1:
                return expr
        expr = expr[1:-1].strip()
    return expr


def strip_casts(expr: str) -> str:
    """Remove PostgreSQL ``::type`` casts outside string literals."""
    parts = re.split(r"('(?:[^']|'')*')", expr)
    return "".join(p if p.startswith("'") else _CAST_RE.sub("", p) for p in parts)


def _unquote(entry: str) -> str:
    match = re.match(r'^"((?:[^"]|"")+)"$', entry.strip())
    return match.group(1).replace('""', '"') if match else entry.strip()


def normalize_predicate(predicate: str | None) -> str | None:
    """Bring a partial-index predicate to a dialect-neutral spelling."""
    if not predicate:
        return None
    text = re.sub(r"\s+", " ", strip_casts(predicate)).strip()
    return _strip_parens(text) or None


class Normalizer:
    """Dialect-independent normalization steps.

    Subclasses provide ``map_type`` and ``normalize_column``.
    """

    dialect: Dialect

    def __init__(self, custom_type_mappings: dict[str, CanonicalType] | None = None):
        self._custom = {k.strip().lower(): CanonicalType(v) for k, v in (custom_type_mappings or {}).items()}

    # ------------------------------------------------------------------
    # Types
    # ------------------------------------------------------------------

    def _custom_mapping(self, native: str) -> TypeMapping | None:
        """Apply an operator override, matching the full spelling first, then the base name."""
        full = native.strip().lower()
        base, params = split_type_params(full)
        target = self._custom.get(full) or self._custom.get(base)
        if target is None:
            return None
        mapping = TypeMapping(type=target)
        self._apply_params(mapping, params)
        return mapping

    @staticmethod
    def _apply_params(mapping: TypeMapping, params: list[int]) -> None:
        if not params:
            return
        if mapping.type in (T.VARCHAR, T.CHAR):
            mapping.max_length = params[0]
        elif mapping.type == T.NUMERIC:
            mapping.precision = params[0]
            mapping.scale = params[1] if len(params) > 1 else 0

    def _lookup(self, base: str, extra: dict[str, CanonicalType]) -> CanonicalType | None:
        return _COMMON_TYPES.get(base) or extra.get(base)

    # ------------------------------------------------------------------
    # Defaults
    # ------------------------------------------------------------------

    def normalize_default(
        self, raw: str | None, column_type: CanonicalType
    ) -> tuple[ColumnDefault | None, bool]:
        """Normalize a default expression.

        Args:
            raw: Default text exactly as the catalog reports it.
            column_type: Canonical type of the owning column.

        Returns:
            Tuple of (default or None, auto_increment). A sequence default
            (``nextval(...)``) is not kept as a default; it flips
            ``auto_increment`` instead.

        Example:
            >>> PostgresNormalizer().normalize_default("'active'::character varying", T.VARCHAR)
            (ColumnDefault(expression="'active'", kind='literal', ...), False)
        """
        if raw is None:
            return None, False
        expr = str(raw).strip()
        if not expr:
            return None, False
        if expr.lower().startswith("nextval("):
            return None, True

        expr = _strip_parens(strip_casts(expr).strip())
        upper = expr.upper()

        if upper == "NULL":
            return ColumnDefault(expression="NULL", kind="null"), False
        if column_type == T.BOOLEAN:
            literal = _BOOLEAN_LITERALS.get(upper)
            if literal is None and upper in ("0", "1", "'0'", "'1'"):
                literal = "TRUE" if "1" in upper else "FALSE"
            if literal:
                return ColumnDefault(expression=literal, kind="literal"), False
        if upper in ("TRUE", "FALSE"):
            return ColumnDefault(expression=upper, kind="literal"), False
        if _NUMBER_RE.match(expr) or _STRING_RE.match(expr):
            return ColumnDefault(expression=expr, kind="literal"), False
        if upper in _CURRENT_TIME_DEFAULTS:
            return ColumnDefault(expression=_CURRENT_TIME_DEFAULTS[upper], kind="expression"), False

        return (
            ColumnDefault(expression=expr, kind="expression", portable=False, dialect=self.dialect),
            False,
        )

    # ------------------------------------------------------------------
    # Indexes and foreign keys
    # ------------------------------------------------------------------

    def normalize_index(self, table: str, raw: dict) -> Index:
        """Convert a raw index row group into an ``Index``."""
        columns = tuple(_unquote(c) for c in raw["columns"])
        name = raw["name"]
        if name.startswith("sqlite_autoindex_"):
            # Same name PostgreSQL gives a UNIQUE constraint's index
            name = f"{table}_{'_'.join(columns)}_key"
        method = raw.get("method")
        return Index(
            name=name,
            columns=columns,
            unique=bool(raw["unique"]),
            expressions=bool(raw.get("expressions")),
            predicate=normalize_predicate(raw.get("predicate")),
            method=None if method == "btree" else method,
        )

    def _action(self, value: str | None) -> ReferentialAction | None:
        if value is None:
            return None
        value = value.strip()
        if value in _POSTGRES_ACTION_CODES:
            return _POSTGRES_ACTION_CODES[value]
        return _ACTIONS_BY_NAME.get(value.upper())

    def normalize_foreign_key(self, table: str, raw: dict) -> ForeignKey:
        """Convert a raw foreign-key row group into a ``ForeignKey``.

        Missing referenced columns are kept as an empty tuple for the
        coordinator to resolve against the referenced primary key.
        """
        columns = tuple(raw["columns"])
        referenced = tuple(c for c in raw["referenced_columns"] if c)
        if len(referenced) != len(columns):
            referenced = ()
        return ForeignKey(
            name=raw.get("name") or f"{table}_{'_'.join(columns)}_fkey",
            columns=columns,
            referenced_table=raw["referenced_table"],
            referenced_columns=referenced,
            on_delete=self._action(raw.get("on_delete")),
            on_update=self._action(raw.get("on_update")),
            deferrable=bool(raw.get("deferrable")),
        )


class SqliteNormalizer(Normalizer):
    """Normalizer for SQLite's declared types and affinity rules.

    SQLite stores a type per value, not per column, so every column is
    flagged ``type_is_advisory``: the canonical type is inferred from the
    declared type name, falling back to SQLite's own affinity rules.
    """

    dialect = Dialect.SQLITE

    def map_type(self, native: str) -> TypeMapping:
        """Resolve a declared SQLite type name.

        Example:
            >>> SqliteNormalizer().map_type("VARCHAR(50)")
            TypeMapping(type=<CanonicalType.VARCHAR: 'varchar'>, max_length=50, ...)
        """
        native = native or ""
        custom = self._custom_mapping(native)
        if custom:
            return custom

        base, params = split_type_params(native)
        if not base:
            # No declared type (BLOB affinity); values are whatever was stored
            return TypeMapping(type=T.TEXT)

        if base.endswith("[]"):
            element = self.map_type(base[:-2])
            return TypeMapping(type=T.ARRAY, element_type=element.type)

        canonical = self._lookup(base, _SQLITE_EXTRA_TYPES)
        if canonical is None:
            canonical = self._affinity(base)
        if canonical is None:
            return TypeMapping(
                type=T.TEXT,
                unmapped=True,
                warning=f"unknown type '{native}' mapped to text",
            )

        mapping = TypeMapping(type=canonical)
        self._apply_params(mapping, params)
        return mapping

    @staticmethod
    def _affinity(base: str) -> CanonicalType | None:
        """SQLite's column-affinity rules, in the engine's own precedence order."""
        if "int" in base:
            return T.INTEGER
        if "char" in base or "clob" in base or "text" in base:
            return T.TEXT
        if "blob" in base:
            return T.BLOB
        if "real" in base or "floa" in base or "doub" in base:
            return T.DOUBLE
        if "num" in base or "dec" in base:
            return T.NUMERIC
        return None

    def normalize_column(
        self,
        table: str,
        row: dict,
        primary_key: list[str],
        table_sql: str | None = None,
    ) -> tuple[Column, list[str]]:
        """Build a ``Column`` from a ``pragma_table_info`` row.

        A single-column ``INTEGER PRIMARY KEY`` aliases the rowid and is
        reported as auto-increment, as is any column of a table declared
        with ``AUTOINCREMENT``.

        Returns:
            Tuple of (column, warnings).
        """
        warnings: list[str] = []
        native = row["type"] or ""
        mapping = self.map_type(native)
        if mapping.warning:
            warnings.append(f"{table}.{row['name']}: {mapping.warning}")

        in_pk = row["name"] in primary_key
        auto_increment = False
        if in_pk and len(primary_key) == 1:
            base, _ = split_type_params(native)
            declared_autoincrement = bool(table_sql and "AUTOINCREMENT" in table_sql.upper())
            auto_increment = base == "integer" or declared_autoincrement

        default, _ = self.normalize_default(row["dflt_value"], mapping.type)
        column = Column(
            name=row["name"],
            type=mapping.type,
            element_type=mapping.element_type,
            native_type=native,
            nullable=not row["notnull"] and not in_pk,
            default=default,
            primary_key=in_pk,
            auto_increment=auto_increment,
            max_length=mapping.max_length,
            precision=mapping.precision,
            scale=mapping.scale,
            type_is_advisory=True,
            unmapped=mapping.unmapped,
        )
        return column, warnings


class PostgresNormalizer(Normalizer):
    """Normalizer for PostgreSQL catalog types."""

    dialect = Dialect.POSTGRESQL

    def _map_name(self, name: str) -> TypeMapping:
        base, params = split_type_params(name)
        if base.endswith("[]"):
            element = self._map_name(base[:-2])
            return TypeMapping(type=T.ARRAY, element_type=element.type)
        if base.startswith("_"):
            element = self._map_name(base[1:])
            return TypeMapping(type=T.ARRAY, element_type=element.type)
        if base in _FULL_TEXT_TYPES:
            return TypeMapping(type=T.TEXT, warning=f"full-text type '{name}' mapped to text")
        canonical = self._lookup(base, _POSTGRES_EXTRA_TYPES)
        if canonical is None:
            return TypeMapping(type=T.TEXT, unmapped=True, warning=f"unknown type '{name}' mapped to text")
        mapping = TypeMapping(type=canonical)
        self._apply_params(mapping, params)
        return mapping

    def map_type(
        self,
        data_type: str,
        udt_name: str | None = None,
        element_udt_name: str | None = None,
    ) -> TypeMapping:
        """Resolve an ``information_schema`` type triple.

        Args:
            data_type: ``information_schema.columns.data_type`` (or a
                ``format_type`` spelling such as ``integer[]``).
            udt_name: Underlying type name (``int4``, ``_text``, ``tsvector``).
            element_udt_name: Element type for ``ARRAY`` columns.
        """
        for candidate in (data_type, udt_name):
            if candidate:
                custom = self._custom_mapping(candidate)
                if custom:
                    return custom

        if data_type == "ARRAY":
            element_name = element_udt_name or (udt_name or "").lstrip("_")
            element = self._map_name(element_name)
            return TypeMapping(type=T.ARRAY, element_type=element.type, warning=element.warning)
        if data_type == "USER-DEFINED" and udt_name:
            return self._map_name(udt_name)
        return self._map_name(data_type)

    def normalize_column(
        self,
        table: str,
        row: dict,
        primary_key: list[str],
        table_sql: str | None = None,
    ) -> tuple[Column, list[str]]:
        """Build a ``Column`` from an ``information_schema.columns`` row.

        Returns:
            Tuple of (column, warnings).
        """
        warnings: list[str] = []
        data_type = row["data_type"]
        udt_name = row.get("udt_name")
        mapping = self.map_type(data_type, udt_name, row.get("element_udt_name"))
        if mapping.warning:
            warnings.append(f"{table}.{row['column_name']}: {mapping.warning}")

        if mapping.type in (T.VARCHAR, T.CHAR) and row.get("character_maximum_length"):
            mapping.max_length = int(row["character_maximum_length"])
        if mapping.type == T.NUMERIC and row.get("numeric_precision") is not None:
            mapping.precision = int(row["numeric_precision"])
            mapping.scale = int(row.get("numeric_scale") or 0)

        default, from_sequence = self.normalize_default(row.get("column_default"), mapping.type)
        in_pk = row["column_name"] in primary_key

        if data_type in ("ARRAY", "USER-DEFINED") and udt_name:
            native = udt_name
        else:
            native = data_type

        column = Column(
            name=row["column_name"],
            type=mapping.type,
            element_type=mapping.element_type,
            native_type=native,
            nullable=row["is_nullable"] == "YES" and not in_pk,
            default=default,
            primary_key=in_pk,
            auto_increment=from_sequence or row.get("is_identity") == "YES",
            max_length=mapping.max_length,
            precision=mapping.precision,
            scale=mapping.scale,
            unmapped=mapping.unmapped,
        )
        return column, warnings
