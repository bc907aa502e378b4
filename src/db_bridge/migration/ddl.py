"""Render canonical schema objects as dialect SQL.

The renderer is mechanical: it does not decide whether a construct is
supported on the target (that is the planner's job, using the capability
table). It only spells the columns, tables, indexes and constraints it is
given.

Usage:
    from db_bridge.migration.ddl import SqlRenderer
    from db_bridge.schema.capabilities import Dialect

    renderer = SqlRenderer(Dialect.POSTGRESQL)
    renderer.create_table(table)
    # 'CREATE TABLE users (id SERIAL PRIMARY KEY, email TEXT, age INTEGER)'
"""

from db_bridge.schema.capabilities import Dialect, get_capabilities
from db_bridge.schema.identifiers import SIMPLE_IDENTIFIER, quote_ident, quote_literal
from db_bridge.schema.models import Column, ForeignKey, Index, ReferentialAction, Table
from db_bridge.schema.types import INTEGER_TYPES, CanonicalType

T = CanonicalType

_POSTGRES_TYPES: dict[CanonicalType, str] = {
    T.SMALLINT: "SMALLINT",
    T.INTEGER: "INTEGER",
    T.BIGINT: "BIGINT",
    T.REAL: "REAL",
    T.DOUBLE: "DOUBLE PRECISION",
    T.NUMERIC: "NUMERIC",
    T.TEXT: "TEXT",
    T.VARCHAR: "VARCHAR",
    T.CHAR: "CHAR",
    T.BOOLEAN: "BOOLEAN",
    T.DATE: "DATE",
    T.TIME: "TIME",
    T.TIMESTAMP: "TIMESTAMP",
    T.TIMESTAMPTZ: "TIMESTAMPTZ",
    T.INTERVAL: "INTERVAL",
    T.JSON: "JSONB",
    T.BLOB: "BYTEA",
    T.UUID: "UUID",
}

_SQLITE_TYPES: dict[CanonicalType, str] = {
    T.SMALLINT: "SMALLINT",
    T.INTEGER: "INTEGER",
    T.BIGINT: "BIGINT",
    T.REAL: "REAL",
    T.DOUBLE: "DOUBLE",
    T.NUMERIC: "NUMERIC",
    T.TEXT: "TEXT",
    T.VARCHAR: "VARCHAR",
    T.CHAR: "CHAR",
    T.BOOLEAN: "BOOLEAN",
    T.DATE: "DATE",
    T.TIME: "TIME",
    T.TIMESTAMP: "TIMESTAMP",
    T.TIMESTAMPTZ: "TIMESTAMP",
    T.INTERVAL: "TEXT",
    T.JSON: "TEXT",
    T.BLOB: "BLOB",
    T.UUID: "UUID",
    T.ARRAY: "TEXT",
}

_SERIAL_TYPES = {T.SMALLINT: "SMALLSERIAL", T.INTEGER: "SERIAL", T.BIGINT: "BIGSERIAL"}


def _join(names) -> str:
    return ", ".join(quote_ident(n) for n in names)


class SqlRenderer:
    """Spell canonical schema objects in one dialect.

    Args:
        dialect: Target dialect.
        preserve_native_types: Use each column's ``native_type`` verbatim.
            Only meaningful when source and target are the same dialect.
    """

    def __init__(self, dialect: Dialect, preserve_native_types: bool = False):
        self.dialect = dialect
        self.capabilities = get_capabilities(dialect)
        self.preserve_native_types = preserve_native_types

    @property
    def is_postgres(self) -> bool:
        return self.dialect == Dialect.POSTGRESQL

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    def column_type(self, column: Column) -> str:
        """SQL type for a column, parameters included."""
        preserve = (
            self.preserve_native_types
            and column.native_type
            and column.type != T.ARRAY
            # Unknown PostgreSQL types (enums, domains) may not exist in the target database
            and not (self.is_postgres and column.unmapped)
        )
        if preserve:
            native = column.native_type
            if column.max_length and "(" not in native:
                native = f"{native}({column.max_length})"
            elif column.precision is not None and "(" not in native:
                native = f"{native}({column.precision},{column.scale or 0})"
            return native.upper() if self.dialect == Dialect.POSTGRESQL else native

        types = _POSTGRES_TYPES if self.is_postgres else _SQLITE_TYPES
        if column.type == T.ARRAY and self.is_postgres:
            element = _POSTGRES_TYPES.get(column.element_type or T.TEXT, "TEXT")
            return f"{element}[]"

        name = types[column.type]
        if column.type in (T.VARCHAR, T.CHAR) and column.max_length:
            return f"{name}({column.max_length})"
        if column.type == T.NUMERIC and column.precision is not None:
            return f"{name}({column.precision},{column.scale or 0})"
        return name

    def _is_serial(self, column: Column) -> bool:
        return self.is_postgres and column.auto_increment and column.type in INTEGER_TYPES

    def default_clause(self, column: Column) -> str | None:
        """``DEFAULT`` text for a column, or None if it has none to render."""
        default = column.default
        if default is None or default.kind == "null":
            return None
        expression = default.expression
        if not self.is_postgres and column.type == T.BOOLEAN and expression in ("TRUE", "FALSE"):
            expression = "1" if expression == "TRUE" else "0"
        if default.kind == "expression" and not self.is_postgres and not expression.startswith("CURRENT_"):
            # SQLite only accepts non-literal defaults in parentheses or as keywords
            expression = f"({expression})"
        return f"DEFAULT {expression}"

    def column_definition(
        self,
        column: Column,
        inline_primary_key: bool = False,
        include_not_null: bool = True,
    ) -> str:
        """Render ``name TYPE [PRIMARY KEY] [NOT NULL] [DEFAULT ...]``."""
        if self._is_serial(column):
            sql_type = _SERIAL_TYPES[column.type]
        elif inline_primary_key and column.auto_increment and column.type in INTEGER_TYPES and not self.is_postgres:
            # Only this exact spelling aliases the rowid
            sql_type = "INTEGER"
        else:
            sql_type = self.column_type(column)

        parts = [quote_ident(column.name), sql_type]
        if inline_primary_key:
            parts.append("PRIMARY KEY")
        elif include_not_null and not column.nullable:
            parts.append("NOT NULL")
        if not self._is_serial(column):
            default = self.default_clause(column)
            if default:
                parts.append(default)
        return " ".join(parts)

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def foreign_key_clause(self, fk: ForeignKey) -> str:
        """``FOREIGN KEY (...) REFERENCES t (...) [ON DELETE ...]`` body."""
        clause = f"FOREIGN KEY ({_join(fk.columns)}) REFERENCES {quote_ident(fk.referenced_table)}"
        if fk.referenced_columns:
            clause += f" ({_join(fk.referenced_columns)})"
        if fk.on_delete and fk.on_delete != ReferentialAction.NO_ACTION:
            clause += f" ON DELETE {fk.on_delete.value}"
        if fk.on_update and fk.on_update != ReferentialAction.NO_ACTION:
            clause += f" ON UPDATE {fk.on_update.value}"
        if fk.deferrable:
            clause += " DEFERRABLE INITIALLY DEFERRED"
        return clause

    def create_table(self, table: Table, foreign_keys: list[ForeignKey] | None = None) -> str:
        """Render CREATE TABLE with the given inline foreign keys.

        Args:
            table: Table to create.
            foreign_keys: Foreign keys to declare inline. Defaults to all of
                the table's foreign keys.
        """
        fks = table.foreign_keys if foreign_keys is None else foreign_keys
        single_pk = table.primary_key[0] if len(table.primary_key) == 1 else None

        lines = [
            self.column_definition(column, inline_primary_key=column.name == single_pk)
            for column in table.columns
        ]
        if len(table.primary_key) > 1:
            lines.append(f"PRIMARY KEY ({_join(table.primary_key)})")
        for fk in fks:
            prefix = f"CONSTRAINT {quote_ident(fk.name)} " if fk.name and self.is_postgres else ""
            lines.append(prefix + self.foreign_key_clause(fk))

        body = ",\n    ".join(lines)
        return f"CREATE TABLE {quote_ident(table.name)} (\n    {body}\n)"

    def drop_table(self, table: Table) -> str:
        kind = "TABLE"
        if table.is_view:
            kind = "MATERIALIZED VIEW" if table.materialized else "VIEW"
        cascade = " CASCADE" if self.capabilities.supports_drop_cascade else ""
        return f"DROP {kind} IF EXISTS {quote_ident(table.name)}{cascade}"

    def create_view(self, table: Table) -> str:
        definition = (table.view_definition or "").strip().rstrip(";")
        if table.materialized:
            data = "" if table.populated is None else (" WITH DATA" if table.populated else " WITH NO DATA")
            return f"CREATE MATERIALIZED VIEW {quote_ident(table.name)} AS {definition}{data}"
        return f"CREATE VIEW {quote_ident(table.name)} AS {definition}"

    # ------------------------------------------------------------------
    # Alterations
    # ------------------------------------------------------------------

    def add_column(self, table: str, column: Column, keep_not_null: bool) -> str:
        definition = self.column_definition(column, include_not_null=keep_not_null)
        return f"ALTER TABLE {quote_ident(table)} ADD COLUMN {definition}"

    def alter_column_type(self, table: str, column: Column) -> str:
        sql_type = self.column_type(column)
        name = quote_ident(column.name)
        return f"ALTER TABLE {quote_ident(table)} ALTER COLUMN {name} TYPE {sql_type} USING CAST({name} AS {sql_type})"

    def drop_not_null(self, table: str, column: str) -> str:
        return f"ALTER TABLE {quote_ident(table)} ALTER COLUMN {quote_ident(column)} DROP NOT NULL"

    def set_default(self, table: str, column: Column) -> str:
        clause = self.default_clause(column)
        action = f"SET {clause}" if clause else "DROP DEFAULT"
        return f"ALTER TABLE {quote_ident(table)} ALTER COLUMN {quote_ident(column.name)} {action}"

    def add_foreign_key(self, table: str, fk: ForeignKey) -> str:
        name = quote_ident(self.constraint_name(table, fk))
        return f"ALTER TABLE {quote_ident(table)} ADD CONSTRAINT {name} {self.foreign_key_clause(fk)}"

    def drop_constraint(self, table: str, fk: ForeignKey) -> str:
        name = quote_ident(self.constraint_name(table, fk))
        return f"ALTER TABLE {quote_ident(table)} DROP CONSTRAINT IF EXISTS {name}"

    @staticmethod
    def constraint_name(table: str, fk: ForeignKey) -> str:
        return fk.name or f"{table}_{'_'.join(fk.columns)}_fkey"

    def create_index(self, table: str, index: Index) -> str:
        unique = "UNIQUE " if index.unique else ""
        using = f" USING {index.method}" if index.method and self.is_postgres else ""
        entries = ", ".join(c if index.expressions and not SIMPLE_IDENTIFIER.match(c) else quote_ident(c) for c in index.columns)
        sql = (
            f"CREATE {unique}INDEX IF NOT EXISTS {quote_ident(index.name)} "
            f"ON {quote_ident(table)}{using} ({entries})"
        )
        if index.predicate:
            sql += f" WHERE {index.predicate}"
        return sql

    def reset_sequence(self, table: str, column: str) -> str:
        """PostgreSQL: move a serial column's sequence past the copied rows."""
        return (
            f"SELECT setval(pg_get_serial_sequence({quote_literal(quote_ident(table))}, "
            f"{quote_literal(column)}), COALESCE((SELECT MAX({quote_ident(column)}) "
            f"FROM {quote_ident(table)}), 0) + 1, false)"
        )

    # ------------------------------------------------------------------
    # Data copy
    # ------------------------------------------------------------------

    def insert(self, table: str, columns: list[Column]) -> str:
        """Parameterized INSERT with ``:p0, :p1, ...`` placeholders.

        PostgreSQL json columns receive a JSON string cast to the column type.
        """
        placeholders = []
        for i, column in enumerate(columns):
            if self.is_postgres and column.type == T.JSON:
                placeholders.append(f"CAST(:p{i} AS {self.column_type(column).lower()})")
            else:
                placeholders.append(f":p{i}")
        return (
            f"INSERT INTO {quote_ident(table)} ({_join(c.name for c in columns)}) "
            f"VALUES ({', '.join(placeholders)})"
        )

    def count(self, table: str) -> str:
        return f"SELECT COUNT(*) AS row_count FROM {quote_ident(table)}"

    def select_keyset(self, table: str, columns: list[str], keys: list[str], after: bool) -> str:
        """Keyset window ordered by ``keys``; ``after`` adds the ``> last key`` bound."""
        where = ""
        if after:
            if len(keys) == 1:
                where = f" WHERE {quote_ident(keys[0])} > :k0"
            else:
                bound = ", ".join(f":k{i}" for i in range(len(keys)))
                where = f" WHERE ({_join(keys)}) > ({bound})"
        return f"SELECT {_join(columns)} FROM {quote_ident(table)}{where} ORDER BY {_join(keys)} LIMIT :limit"

    def select_rowid(self, table: str, columns: list[str], alias: str, after: bool) -> str:
        where = " WHERE rowid > :k0" if after else ""
        return (
            f"SELECT rowid AS {alias}, {_join(columns)} FROM {quote_ident(table)}"
            f"{where} ORDER BY rowid LIMIT :limit"
        )

    def select_offset(self, table: str, columns: list[str], after: bool) -> str:
        offset = " OFFSET :offset" if after else ""
        return f"SELECT {_join(columns)} FROM {quote_ident(table)} ORDER BY ctid LIMIT :limit{offset}"
