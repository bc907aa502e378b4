"""Dialect-native schema introspection.

Each introspector queries its engine's metadata and returns raw rows (plain
dicts, grouped per index / foreign key). Turning those rows into canonical
``Column``/``Index``/``ForeignKey`` models is the normalizer's job.

- ``SqliteIntrospector``: ``sqlite_master`` plus the table-valued pragmas
  ``pragma_table_info``, ``pragma_index_list``, ``pragma_index_info`` and
  ``pragma_foreign_key_list``.
- ``PostgresIntrospector``: ``information_schema`` plus ``pg_catalog``
  (``pg_index``, ``pg_constraint``, ``pg_matviews``).

Usage:
    from db_bridge.schema.introspector import PostgresIntrospector

    introspector = PostgresIntrospector()
    async with handle.session() as session:
        tables = await introspector.list_tables(session, "public")
        columns = await introspector.get_columns(session, "users", "public")
"""

import re

from db_bridge.adapters.base import DatabaseSession
from db_bridge.schema.capabilities import Dialect


# ------------------------------------------------------------------
# SQLite
# ------------------------------------------------------------------


_INDEX_WHERE_RE = re.compile(r"\)\s*WHERE\s+(?P<predicate>.+?)\s*;?\s*$", re.IGNORECASE | re.DOTALL)
_INDEX_ON_RE = re.compile(r"\bON\s+[\"`\[]?\w+[\"`\]]?\s*\(", re.IGNORECASE)


def _index_column_list(sql: str) -> list[str]:
    """Extract the column/expression list from a CREATE INDEX statement.

    Splits on top-level commas only, so ``lower(email), substr(name, 1, 3)``
    yields two entries.
    """
    match = _INDEX_ON_RE.search(sql)
    if not match:
        return []
    depth = 1
    entries: list[str] = []
    current: list[str] = []
    for ch in sql[match.end():]:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                break
        if ch == "," and depth == 1:
            entries.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    entries.append("".join(current).strip())
    return [e for e in entries if e]


def _index_predicate(sql: str | None) -> str | None:
    """Return the WHERE clause of a partial CREATE INDEX statement, if any."""
    if not sql:
        return None
    match = _INDEX_WHERE_RE.search(sql)
    return match.group("predicate").strip() if match else None


class SqliteIntrospector:
    """Reads SQLite schema metadata through reflection pragmas.

    Autoindexes backing ``PRIMARY KEY`` are skipped; autoindexes backing
    ``UNIQUE`` constraints are reported with ``origin = "u"``.
    """

    dialect = Dialect.SQLITE

    async def list_tables(self, session: DatabaseSession, schema_name: str | None = None) -> list[dict]:
        """Get all tables and views.

        Returns:
            Dicts with ``name``, ``kind`` (``table`` or ``view``), ``sql`` and
            ``definition`` (view body).
        """
        rows = await session.fetch(
            """
            SELECT name, type, sql
            FROM sqlite_master
            WHERE type IN ('table', 'view')
              AND name NOT LIKE 'sqlite_%'
            ORDER BY name
            """
        )
        tables = []
        for row in rows:
            definition = None
            if row["type"] == "view" and row["sql"]:
                match = re.search(r"\bAS\s+(.*)$", row["sql"], re.IGNORECASE | re.DOTALL)
                definition = match.group(1).strip() if match else row["sql"]
            tables.append(
                {
                    "name": row["name"],
                    "kind": row["type"],
                    "sql": row["sql"],
                    "definition": definition,
                    "populated": None,
                }
            )
        return tables

    async def get_columns(self, session: DatabaseSession, table: str, schema_name: str | None = None) -> list[dict]:
        """Get columns in declaration order (``cid``, ``name``, ``type``,
        ``notnull``, ``dflt_value``, ``pk``)."""
        return await session.fetch(
            'SELECT cid, name, type, "notnull", dflt_value, pk '
            "FROM pragma_table_info(:table) ORDER BY cid",
            {"table": table},
        )

    async def get_primary_key(self, session: DatabaseSession, table: str, schema_name: str | None = None) -> list[str]:
        """Get primary-key column names in key order."""
        rows = await session.fetch(
            "SELECT name FROM pragma_table_info(:table) WHERE pk > 0 ORDER BY pk",
            {"table": table},
        )
        return [row["name"] for row in rows]

    async def get_indexes(self, session: DatabaseSession, table: str, schema_name: str | None = None) -> list[dict]:
        """Get non-primary-key indexes with their ordered columns."""
        index_rows = await session.fetch(
            'SELECT seq, name, "unique", origin, partial '
            "FROM pragma_index_list(:table) ORDER BY seq",
            {"table": table},
        )
        indexes = []
        for index_row in index_rows:
            if index_row["origin"] == "pk":
                continue
            name = index_row["name"]
            info = await session.fetch(
                "SELECT seqno, cid, name FROM pragma_index_info(:index) ORDER BY seqno",
                {"index": name},
            )
            sql_rows = await session.fetch(
                "SELECT sql FROM sqlite_master WHERE type = 'index' AND name = :index",
                {"index": name},
            )
            sql = sql_rows[0]["sql"] if sql_rows else None

            expressions = any(r["cid"] == -2 for r in info)
            if expressions and sql:
                columns = _index_column_list(sql)
            else:
                columns = [r["name"] for r in info]

            indexes.append(
                {
                    "name": name,
                    "unique": bool(index_row["unique"]),
                    "origin": index_row["origin"],
                    "columns": columns,
                    "expressions": expressions,
                    "predicate": _index_predicate(sql) if index_row["partial"] else None,
                    "method": None,
                }
            )
        return indexes

    async def get_foreign_keys(self, session: DatabaseSession, table: str, schema_name: str | None = None) -> list[dict]:
        """Get foreign keys grouped by constraint id.

        ``referenced_columns`` entries are None where the declaration omitted
        them (``REFERENCES parent``); the coordinator resolves those to the
        referenced table's primary key.
        """
        rows = await session.fetch(
            'SELECT id, seq, "table" AS referenced_table, "from" AS column_name, '
            '"to" AS referenced_column, on_update, on_delete '
            "FROM pragma_foreign_key_list(:table) ORDER BY id, seq",
            {"table": table},
        )
        grouped: dict[int, dict] = {}
        for row in rows:
            fk = grouped.setdefault(
                row["id"],
                {
                    "name": None,
                    "referenced_table": row["referenced_table"],
                    "columns": [],
                    "referenced_columns": [],
                    "on_delete": row["on_delete"],
                    "on_update": row["on_update"],
                    "deferrable": False,
                },
            )
            fk["columns"].append(row["column_name"])
            fk["referenced_columns"].append(row["referenced_column"])
        return list(grouped.values())


# ------------------------------------------------------------------
# PostgreSQL
# ------------------------------------------------------------------


class PostgresIntrospector:
    """Reads PostgreSQL schema metadata from ``information_schema`` and ``pg_catalog``.

    Works with any PostgreSQL database (RDS, Supabase, local).
    """

    dialect = Dialect.POSTGRESQL

    async def list_tables(self, session: DatabaseSession, schema_name: str | None = "public") -> list[dict]:
        """Get base tables, views and materialized views in a schema."""
        params = {"schema": schema_name or "public"}
        rows = await session.fetch(
            """
            SELECT t.table_name AS name,
                   CASE WHEN t.table_type = 'VIEW' THEN 'view' ELSE 'table' END AS kind,
                   v.view_definition AS definition
            FROM information_schema.tables t
            LEFT JOIN information_schema.views v
                ON v.table_schema = t.table_schema
                AND v.table_name = t.table_name
            WHERE t.table_schema = :schema
              AND t.table_type IN ('BASE TABLE', 'VIEW')
            ORDER BY t.table_name
            """,
            params,
        )
        tables = [
            {
                "name": row["name"],
                "kind": row["kind"],
                "sql": None,
                "definition": row["definition"],
                "populated": None,
            }
            for row in rows
        ]
        matviews = await session.fetch(
            """
            SELECT matviewname AS name, definition, ispopulated
            FROM pg_matviews
            WHERE schemaname = :schema
            ORDER BY matviewname
            """,
            params,
        )
        for row in matviews:
            tables.append(
                {
                    "name": row["name"],
                    "kind": "materialized_view",
                    "sql": None,
                    "definition": row["definition"],
                    "populated": bool(row["ispopulated"]),
                }
            )
        return sorted(tables, key=lambda t: t["name"])

    async def get_columns(self, session: DatabaseSession, table: str, schema_name: str | None = "public") -> list[dict]:
        """Get columns in ordinal order.

        Array columns carry ``element_udt_name`` from
        ``information_schema.element_types``. Materialized views are absent
        from ``information_schema.columns`` and are read from
        ``pg_attribute`` instead.
        """
        params = {"schema": schema_name or "public", "table": table}
        rows = await session.fetch(
            """
            SELECT
                c.column_name,
                c.data_type,
                c.udt_name,
                c.is_nullable,
                c.column_default,
                c.character_maximum_length,
                c.numeric_precision,
                c.numeric_scale,
                c.is_identity,
                e.udt_name AS element_udt_name
            FROM information_schema.columns c
            LEFT JOIN information_schema.element_types e
                ON c.table_catalog = e.object_catalog
                AND c.table_schema = e.object_schema
                AND c.table_name = e.object_name
                AND e.object_type = 'TABLE'
                AND c.dtd_identifier = e.collection_type_identifier
            WHERE c.table_schema = :schema
              AND c.table_name = :table
            ORDER BY c.ordinal_position
            """,
            params,
        )
        if rows:
            return rows

        return await session.fetch(
            """
            SELECT
                a.attname AS column_name,
                format_type(a.atttypid, a.atttypmod) AS data_type,
                ty.typname AS udt_name,
                CASE WHEN a.attnotnull THEN 'NO' ELSE 'YES' END AS is_nullable,
                NULL AS column_default,
                NULL AS character_maximum_length,
                NULL AS numeric_precision,
                NULL AS numeric_scale,
                'NO' AS is_identity,
                NULL AS element_udt_name
            FROM pg_attribute a
            JOIN pg_class t ON t.oid = a.attrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN pg_type ty ON ty.oid = a.atttypid
            WHERE n.nspname = :schema
              AND t.relname = :table
              AND a.attnum > 0
              AND NOT a.attisdropped
            ORDER BY a.attnum
            """,
            params,
        )

    async def get_primary_key(self, session: DatabaseSession, table: str, schema_name: str | None = "public") -> list[str]:
        """Get primary-key column names in key order."""
        rows = await session.fetch(
            """
            SELECT a.attname AS column_name
            FROM pg_index ix
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS k(attnum, ord) ON TRUE
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = k.attnum
            WHERE n.nspname = :schema
              AND t.relname = :table
              AND ix.indisprimary
            ORDER BY k.ord
            """,
            {"schema": schema_name or "public", "table": table},
        )
        return [row["column_name"] for row in rows]

    async def get_indexes(self, session: DatabaseSession, table: str, schema_name: str | None = "public") -> list[dict]:
        """Get indexes (excluding primary key) with ordered key columns.

        Expression entries come back as their expression text via
        ``pg_get_indexdef``. Partial-index predicates come from
        ``pg_get_expr(indpred)``.
        """
        rows = await session.fetch(
            """
            SELECT
                i.relname AS index_name,
                ix.indisunique AS is_unique,
                am.amname AS method,
                pg_get_expr(ix.indpred, ix.indrelid) AS predicate,
                ix.indexprs IS NOT NULL AS has_expressions,
                pg_get_indexdef(ix.indexrelid, CAST(k.ord AS integer), true) AS column_def
            FROM pg_index ix
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN pg_am am ON am.oid = i.relam
            JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS k(attnum, ord) ON TRUE
            WHERE n.nspname = :schema
              AND t.relname = :table
              AND NOT ix.indisprimary
              AND k.ord <= ix.indnkeyatts
            ORDER BY i.relname, k.ord
            """,
            {"schema": schema_name or "public", "table": table},
        )
        grouped: dict[str, dict] = {}
        for row in rows:
            index = grouped.setdefault(
                row["index_name"],
                {
                    "name": row["index_name"],
                    "unique": bool(row["is_unique"]),
                    "origin": "c",
                    "columns": [],
                    "expressions": bool(row["has_expressions"]),
                    "predicate": row["predicate"],
                    "method": row["method"],
                },
            )
            index["columns"].append(row["column_def"])
        return list(grouped.values())

    async def get_foreign_keys(self, session: DatabaseSession, table: str, schema_name: str | None = "public") -> list[dict]:
        """Get foreign keys with single-letter action codes (a/r/c/n/d)."""
        rows = await session.fetch(
            """
            SELECT
                con.conname AS name,
                ref.relname AS referenced_table,
                a.attname AS column_name,
                ra.attname AS referenced_column,
                CAST(con.confdeltype AS text) AS on_delete,
                CAST(con.confupdtype AS text) AS on_update,
                con.condeferrable AS deferrable
            FROM pg_constraint con
            JOIN pg_class t ON t.oid = con.conrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN pg_class ref ON ref.oid = con.confrelid
            JOIN LATERAL unnest(con.conkey, con.confkey)
                WITH ORDINALITY AS k(attnum, refattnum, ord) ON TRUE
            JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.attnum
            JOIN pg_attribute ra ON ra.attrelid = con.confrelid AND ra.attnum = k.refattnum
            WHERE con.contype = 'f'
              AND n.nspname = :schema
              AND t.relname = :table
            ORDER BY con.conname, k.ord
            """,
            {"schema": schema_name or "public", "table": table},
        )
        grouped: dict[str, dict] = {}
        for row in rows:
            fk = grouped.setdefault(
                row["name"],
                {
                    "name": row["name"],
                    "referenced_table": row["referenced_table"],
                    "columns": [],
                    "referenced_columns": [],
                    "on_delete": row["on_delete"],
                    "on_update": row["on_update"],
                    "deferrable": bool(row["deferrable"]),
                },
            )
            fk["columns"].append(row["column_name"])
            fk["referenced_columns"].append(row["referenced_column"])
        return list(grouped.values())
