"""Tests for the discovery coordinator.

Real SQLite files (aiosqlite through ``AsyncEngineHandle``) exercise the
SQLite introspector end to end; a scripted introspector covers the failure
policy.
"""

from types import SimpleNamespace

import pytest

from db_bridge.adapters.async_engine import AsyncEngineHandle
from db_bridge.errors import DiscoveryError, UnsupportedDialectError
from db_bridge.schema.capabilities import Dialect
from db_bridge.schema.discovery import (
    TRACKING_TABLE,
    DialectSupport,
    DiscoveryConfig,
    DiscoveryCoordinator,
)
from db_bridge.schema.comparator import compare_schemas
from db_bridge.schema.models import ReferentialAction
from db_bridge.schema.normalizer import PostgresNormalizer, SqliteNormalizer
from db_bridge.schema.types import CanonicalType as T

from fakes import FakeHandle

SHOP_DDL = [
    "CREATE TABLE users ("
    " id INTEGER PRIMARY KEY,"
    " email VARCHAR(255) NOT NULL UNIQUE,"
    " active BOOLEAN DEFAULT 1,"
    " created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)",
    "CREATE TABLE orders ("
    " id INTEGER PRIMARY KEY,"
    " user_id INTEGER NOT NULL REFERENCES users ON DELETE CASCADE,"
    " total NUMERIC(10,2))",
    "CREATE INDEX orders_user_id_idx ON orders (user_id)",
    "CREATE INDEX users_lower_email ON users (lower(email))",
    "CREATE INDEX users_recent_active ON users (created_at) WHERE active = 1",
    "CREATE VIEW active_users AS SELECT id, email FROM users WHERE active = 1",
    "CREATE TABLE tmp_scratch (x TEXT)",
    f"CREATE TABLE {TRACKING_TABLE} (id VARCHAR(64) PRIMARY KEY, checksum VARCHAR(64), applied_at VARCHAR(32))",
]


@pytest.fixture
async def shop(tmp_path):
    handle = AsyncEngineHandle(f"sqlite:///{tmp_path / 'shop.db'}")
    for statement in SHOP_DDL:
        await handle.execute(statement)
    yield handle
    await handle.close()


# ------------------------------------------------------------------
# Scripted introspector
# ------------------------------------------------------------------


class ScriptedIntrospector:
    """Returns canned rows; raises for the named operations."""

    def __init__(self, fail: set[str] = frozenset()):
        self.fail = fail

    def _check(self, operation: str) -> None:
        if operation in self.fail:
            raise RuntimeError(f"{operation} exploded")

    async def list_tables(self, session, schema_name=None):
        self._check("list_tables")
        return [{"name": "things", "kind": "table", "sql": None, "definition": None}]

    async def get_columns(self, session, table, schema_name=None):
        self._check("get_columns")
        return [{"name": "id", "type": "INTEGER", "notnull": 0, "dflt_value": None, "pk": 1}]

    async def get_primary_key(self, session, table, schema_name=None):
        return ["id"]

    async def get_indexes(self, session, table, schema_name=None):
        self._check("get_indexes")
        return [{"name": "things_id_idx", "unique": False, "columns": ["id"]}]

    async def get_foreign_keys(self, session, table, schema_name=None):
        self._check("get_foreign_keys")
        return []


def _coordinator(fail: set[str] = frozenset()) -> DiscoveryCoordinator:
    return DiscoveryCoordinator({Dialect.SQLITE: DialectSupport(ScriptedIntrospector(fail), SqliteNormalizer)})


# ==================================================================
# Test Group 1: SQLite end to end
# ==================================================================


class TestSqliteDiscovery:
    """Verify a real SQLite schema is read into the canonical model."""

    async def test_tables_filtered_and_sorted(self, shop) -> None:
        schema = await DiscoveryCoordinator().discover(shop, DiscoveryConfig(exclude_tables=["tmp_*"]))
        assert schema.dialect == Dialect.SQLITE
        assert schema.table_names == ["orders", "users"]

    async def test_tracking_table_hidden_by_default(self, shop) -> None:
        schema = await DiscoveryCoordinator().discover(shop)
        assert TRACKING_TABLE not in schema.table_names
        assert "tmp_scratch" in schema.table_names

    async def test_include_filter(self, shop) -> None:
        schema = await DiscoveryCoordinator().discover(shop, DiscoveryConfig(include_tables=["u*"]))
        assert schema.table_names == ["users"]

    async def test_columns(self, shop) -> None:
        schema = await DiscoveryCoordinator().discover(shop)
        users = schema.get_table("users")
        assert users.column_names == ["id", "email", "active", "created_at"]
        assert users.primary_key == ("id",)

        id_col = users.get_column("id")
        assert id_col.auto_increment and not id_col.nullable

        email = users.get_column("email")
        assert (email.type, email.max_length, email.nullable) == (T.VARCHAR, 255, False)

        active = users.get_column("active")
        assert active.type == T.BOOLEAN
        assert active.default.expression == "TRUE"

        created = users.get_column("created_at")
        assert created.default.expression == "CURRENT_TIMESTAMP"
        assert created.default.kind == "expression"

    async def test_numeric_precision(self, shop) -> None:
        schema = await DiscoveryCoordinator().discover(shop)
        total = schema.get_table("orders").get_column("total")
        assert (total.type, total.precision, total.scale) == (T.NUMERIC, 10, 2)

    async def test_indexes(self, shop) -> None:
        schema = await DiscoveryCoordinator().discover(shop)
        indexes = {i.name: i for i in schema.get_table("users").indexes}

        assert indexes["users_email_key"].unique
        assert indexes["users_email_key"].columns == ("email",)

        expression = indexes["users_lower_email"]
        assert expression.expressions
        assert expression.columns == ("lower(email)",)

        partial = indexes["users_recent_active"]
        assert partial.columns == ("created_at",)
        assert partial.predicate == "active = 1"

    async def test_implicit_reference_resolved_to_primary_key(self, shop) -> None:
        schema = await DiscoveryCoordinator().discover(shop)
        (fk,) = schema.get_table("orders").foreign_keys
        assert fk.referenced_table == "users"
        assert fk.referenced_columns == ("id",)
        assert fk.on_delete == ReferentialAction.CASCADE

    async def test_relationships(self, shop) -> None:
        schema = await DiscoveryCoordinator().discover(shop)
        (relationship,) = schema.relationships
        assert relationship.kind == "many-to-one"
        assert (relationship.from_table, relationship.to_table) == ("orders", "users")

    async def test_views_excluded_by_default(self, shop) -> None:
        schema = await DiscoveryCoordinator().discover(shop)
        assert "active_users" not in schema.table_names

    async def test_views_included_on_request(self, shop) -> None:
        schema = await DiscoveryCoordinator().discover(shop, DiscoveryConfig(include_views=True))
        view = schema.get_table("active_users")
        assert view.is_view
        assert view.view_definition.startswith("SELECT id, email FROM users")
        assert view.column_names == ["id", "email"]

    async def test_discovery_is_repeatable(self, shop) -> None:
        """Two discoveries of an unchanged database give equal table models."""
        first = await DiscoveryCoordinator().discover(shop)
        second = await DiscoveryCoordinator().discover(shop)
        assert first.tables == second.tables


# ==================================================================
# Test Group 2: Failure policy
# ==================================================================


class TestDiscoveryFailures:
    """Verify which failures abort discovery and which become warnings."""

    async def test_unknown_dialect(self) -> None:
        handle = SimpleNamespace(dialect="mysql")
        with pytest.raises(UnsupportedDialectError):
            await DiscoveryCoordinator().discover(handle)

    async def test_unregistered_dialect(self) -> None:
        with pytest.raises(UnsupportedDialectError):
            await DiscoveryCoordinator(registry={}).discover(FakeHandle(Dialect.SQLITE))

    async def test_table_list_failure(self) -> None:
        with pytest.raises(DiscoveryError, match="list tables"):
            await _coordinator({"list_tables"}).discover(FakeHandle())

    async def test_column_failure_names_table(self) -> None:
        with pytest.raises(DiscoveryError) as exc_info:
            await _coordinator({"get_columns"}).discover(FakeHandle())
        assert exc_info.value.table == "things"

    async def test_index_failure_is_a_warning(self) -> None:
        schema = await _coordinator({"get_indexes"}).discover(FakeHandle())
        things = schema.get_table("things")
        assert things.indexes == ()
        assert any("indexes unavailable" in w for w in schema.warnings)

    async def test_foreign_key_failure_is_a_warning(self) -> None:
        schema = await _coordinator({"get_foreign_keys"}).discover(FakeHandle())
        assert schema.get_table("things").indexes[0].name == "things_id_idx"
        assert any("foreign keys unavailable" in w for w in schema.warnings)

    async def test_custom_type_mappings_applied(self) -> None:
        config = DiscoveryConfig(custom_type_mappings={"integer": T.BIGINT})
        schema = await _coordinator().discover(FakeHandle(), config)
        assert schema.get_table("things").get_column("id").type == T.BIGINT


# ==================================================================
# Test Group 3: Cross-dialect round trip
# ==================================================================


def _pg_column(name, data_type, udt_name, nullable="YES", default=None):
    return {
        "column_name": name,
        "data_type": data_type,
        "udt_name": udt_name,
        "is_nullable": nullable,
        "column_default": default,
        "character_maximum_length": None,
        "numeric_precision": None,
        "numeric_scale": None,
        "is_identity": "NO",
        "element_udt_name": None,
    }


class CatalogIntrospector:
    """PostgreSQL catalog rows for the table the SQLite users DDL becomes.

    ``CREATE TABLE users (id SERIAL PRIMARY KEY, email TEXT, age INTEGER)``
    plus ``CREATE UNIQUE INDEX users_email_key ON users (email)``.
    """

    async def list_tables(self, session, schema_name=None):
        return [{"name": "users", "kind": "table", "sql": None, "definition": None, "populated": None}]

    async def get_columns(self, session, table, schema_name=None):
        return [
            _pg_column("id", "integer", "int4", nullable="NO", default="nextval('users_id_seq'::regclass)"),
            _pg_column("email", "text", "text"),
            _pg_column("age", "integer", "int4"),
        ]

    async def get_primary_key(self, session, table, schema_name=None):
        return ["id"]

    async def get_indexes(self, session, table, schema_name=None):
        return [
            {
                "name": "users_email_key",
                "unique": True,
                "origin": "c",
                "columns": ["email"],
                "expressions": False,
                "predicate": None,
                "method": "btree",
            }
        ]

    async def get_foreign_keys(self, session, table, schema_name=None):
        return []


class TestCrossDialectRoundTrip:
    """A SQLite table and its PostgreSQL rendition normalize to the same model."""

    async def test_users_compatible_across_dialects(self, tmp_path) -> None:
        sqlite = AsyncEngineHandle(f"sqlite:///{tmp_path / 'people.db'}")
        try:
            await sqlite.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT UNIQUE, age INTEGER)")
            sqlite_schema = await DiscoveryCoordinator().discover(sqlite)
        finally:
            await sqlite.close()

        registry = {Dialect.POSTGRESQL: DialectSupport(CatalogIntrospector(), PostgresNormalizer)}
        pg_schema = await DiscoveryCoordinator(registry).discover(FakeHandle(Dialect.POSTGRESQL))

        pg_users = pg_schema.get_table("users")
        sqlite_users = sqlite_schema.get_table("users")
        assert [(c.name, c.type, c.auto_increment) for c in pg_users.columns] == [
            (c.name, c.type, c.auto_increment) for c in sqlite_users.columns
        ]
        assert pg_users.indexes == sqlite_users.indexes

        comparison = compare_schemas(sqlite_schema, pg_schema)
        assert comparison.compatible
        assert comparison.breaking_count == 0
