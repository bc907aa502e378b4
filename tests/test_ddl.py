"""Tests for dialect SQL rendering."""

from db_bridge.migration.ddl import SqlRenderer
from db_bridge.schema.capabilities import Dialect
from db_bridge.schema.models import ColumnDefault, ReferentialAction

from fakes import col, fk, idx, orders_table, pk, table, users_table, view

SQLITE = SqlRenderer(Dialect.SQLITE)
POSTGRES = SqlRenderer(Dialect.POSTGRESQL)


# ==================================================================
# Test Group 1: CREATE TABLE
# ==================================================================


class TestCreateTable:
    """Verify table DDL in both dialects."""

    def test_sqlite_users(self) -> None:
        assert SQLITE.create_table(users_table()) == (
            "CREATE TABLE users (\n"
            "    id INTEGER PRIMARY KEY,\n"
            "    email TEXT NOT NULL,\n"
            "    active BOOLEAN DEFAULT 1\n"
            ")"
        )

    def test_postgres_users(self) -> None:
        assert POSTGRES.create_table(users_table()) == (
            "CREATE TABLE users (\n"
            "    id SERIAL PRIMARY KEY,\n"
            "    email TEXT NOT NULL,\n"
            "    active BOOLEAN DEFAULT TRUE\n"
            ")"
        )

    def test_postgres_named_foreign_key(self) -> None:
        sql = POSTGRES.create_table(orders_table())
        assert "    total NUMERIC(10,2),\n" in sql
        assert sql.endswith("    CONSTRAINT orders_user_id_fkey FOREIGN KEY (user_id) REFERENCES users (id)\n)")

    def test_sqlite_inline_foreign_key(self) -> None:
        sql = SQLITE.create_table(orders_table())
        assert "    FOREIGN KEY (user_id) REFERENCES users (id)\n" in sql
        assert "CONSTRAINT" not in sql

    def test_foreign_keys_can_be_withheld(self) -> None:
        """Deferred foreign keys are left out of the CREATE statement."""
        assert "FOREIGN KEY" not in POSTGRES.create_table(orders_table(), foreign_keys=[])

    def test_composite_primary_key(self) -> None:
        t = table("t", col("a", nullable=False), col("b", nullable=False), primary_key=("a", "b"))
        assert SQLITE.create_table(t) == (
            "CREATE TABLE t (\n    a TEXT NOT NULL,\n    b TEXT NOT NULL,\n    PRIMARY KEY (a, b)\n)"
        )

    def test_reserved_and_mixed_case_names_quoted(self) -> None:
        t = table("order", pk(), col("user"), col("Name"))
        sql = POSTGRES.create_table(t)
        assert sql.startswith('CREATE TABLE "order" (')
        assert '    "user" TEXT,\n' in sql
        assert '    "Name" TEXT\n' in sql

    def test_non_auto_increment_integer_key(self) -> None:
        t = table("t", pk("id", "bigint", auto_increment=False))
        assert "id BIGINT PRIMARY KEY" in POSTGRES.create_table(t)


# ==================================================================
# Test Group 2: Column types and defaults
# ==================================================================


class TestColumns:
    """Verify type spelling and default clauses."""

    def test_varchar_length(self) -> None:
        assert SQLITE.column_type(col("s", "varchar", max_length=40)) == "VARCHAR(40)"

    def test_arrays(self) -> None:
        tags = col("tags", "array", element_type="integer")
        assert POSTGRES.column_type(tags) == "INTEGER[]"
        assert SQLITE.column_type(tags) == "TEXT"

    def test_json(self) -> None:
        doc = col("doc", "json")
        assert POSTGRES.column_type(doc) == "JSONB"
        assert SQLITE.column_type(doc) == "TEXT"

    def test_preserved_native_type(self) -> None:
        renderer = SqlRenderer(Dialect.POSTGRESQL, preserve_native_types=True)
        column = col("s", "varchar", native_type="character varying", max_length=40)
        assert renderer.column_type(column) == "CHARACTER VARYING(40)"

    def test_unmapped_postgres_type_not_preserved(self) -> None:
        """Enum and domain names may not exist in the target database."""
        renderer = SqlRenderer(Dialect.POSTGRESQL, preserve_native_types=True)
        column = col("mood", "text", native_type="mood", unmapped=True)
        assert renderer.column_type(column) == "TEXT"

    def test_sqlite_expression_default_parenthesized(self) -> None:
        default = ColumnDefault(expression="lower(hex(randomblob(16)))", kind="expression")
        column = col("token", "text", default=default)
        assert SQLITE.default_clause(column) == "DEFAULT (lower(hex(randomblob(16))))"
        assert POSTGRES.default_clause(column) == "DEFAULT lower(hex(randomblob(16)))"

    def test_current_timestamp_not_parenthesized(self) -> None:
        column = col("created_at", "timestamp", default="CURRENT_TIMESTAMP")
        assert SQLITE.default_clause(column) == "DEFAULT CURRENT_TIMESTAMP"

    def test_boolean_default_spelling(self) -> None:
        column = col("flag", "boolean", default="FALSE")
        assert SQLITE.default_clause(column) == "DEFAULT 0"
        assert POSTGRES.default_clause(column) == "DEFAULT FALSE"

    def test_null_default_not_rendered(self) -> None:
        column = col("a", default=ColumnDefault(expression="NULL", kind="null"))
        assert SQLITE.default_clause(column) is None


# ==================================================================
# Test Group 3: Alterations, indexes and views
# ==================================================================


class TestAlterations:
    """Verify ALTER, index and view statements."""

    def test_add_column_without_not_null(self) -> None:
        column = col("nickname", nullable=False)
        assert SQLITE.add_column("users", column, keep_not_null=False) == "ALTER TABLE users ADD COLUMN nickname TEXT"
        assert POSTGRES.add_column("users", column, keep_not_null=True) == (
            "ALTER TABLE users ADD COLUMN nickname TEXT NOT NULL"
        )

    def test_alter_column_type(self) -> None:
        assert POSTGRES.alter_column_type("t", col("n", "bigint")) == (
            "ALTER TABLE t ALTER COLUMN n TYPE BIGINT USING CAST(n AS BIGINT)"
        )

    def test_drop_not_null_and_defaults(self) -> None:
        assert POSTGRES.drop_not_null("t", "a") == "ALTER TABLE t ALTER COLUMN a DROP NOT NULL"
        assert POSTGRES.set_default("t", col("a")) == "ALTER TABLE t ALTER COLUMN a DROP DEFAULT"
        assert POSTGRES.set_default("t", col("a", default="'x'")) == "ALTER TABLE t ALTER COLUMN a SET DEFAULT 'x'"

    def test_add_foreign_key(self) -> None:
        key = fk("user_id", "users", on_delete=ReferentialAction.CASCADE)
        assert POSTGRES.add_foreign_key("orders", key) == (
            "ALTER TABLE orders ADD CONSTRAINT orders_user_id_fkey "
            "FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE"
        )

    def test_deferrable_foreign_key(self) -> None:
        key = fk("parent_id", "nodes", deferrable=True)
        assert POSTGRES.foreign_key_clause(key).endswith(" DEFERRABLE INITIALLY DEFERRED")

    def test_unique_partial_index(self) -> None:
        index = idx("users_email_live", "email", unique=True, predicate="deleted_at IS NULL")
        assert SQLITE.create_index("users", index) == (
            "CREATE UNIQUE INDEX IF NOT EXISTS users_email_live ON users (email) WHERE deleted_at IS NULL"
        )

    def test_expression_index(self) -> None:
        index = idx("users_lower_email", "lower(email)", expressions=True)
        assert SQLITE.create_index("users", index) == (
            "CREATE INDEX IF NOT EXISTS users_lower_email ON users (lower(email))"
        )

    def test_index_method_only_on_postgres(self) -> None:
        index = idx("posts_tags_idx", "tags", method="gin")
        assert POSTGRES.create_index("posts", index) == "CREATE INDEX IF NOT EXISTS posts_tags_idx ON posts USING gin (tags)"
        assert "USING" not in SQLITE.create_index("posts", index)

    def test_drop_table(self) -> None:
        assert SQLITE.drop_table(users_table()) == "DROP TABLE IF EXISTS users"
        assert POSTGRES.drop_table(users_table()) == "DROP TABLE IF EXISTS users CASCADE"

    def test_drop_materialized_view(self) -> None:
        mv = view("totals", "SELECT 1", materialized=True)
        assert POSTGRES.drop_table(mv) == "DROP MATERIALIZED VIEW IF EXISTS totals CASCADE"

    def test_create_views(self) -> None:
        assert SQLITE.create_view(view("v", "SELECT id FROM users;")) == "CREATE VIEW v AS SELECT id FROM users"
        mv = view("totals", "SELECT 1", materialized=True).model_copy(update={"populated": False})
        assert POSTGRES.create_view(mv) == "CREATE MATERIALIZED VIEW totals AS SELECT 1 WITH NO DATA"


# ==================================================================
# Test Group 4: Data copy statements
# ==================================================================


class TestDataCopy:
    """Verify the statements the executor reads and writes rows with."""

    def test_insert_placeholders(self) -> None:
        columns = list(users_table().columns)
        assert SQLITE.insert("users", columns) == "INSERT INTO users (id, email, active) VALUES (:p0, :p1, :p2)"

    def test_postgres_json_insert_cast(self) -> None:
        sql = POSTGRES.insert("docs", [pk(), col("body", "json")])
        assert sql == "INSERT INTO docs (id, body) VALUES (:p0, CAST(:p1 AS jsonb))"

    def test_count(self) -> None:
        assert SQLITE.count("users") == "SELECT COUNT(*) AS row_count FROM users"

    def test_keyset_first_and_next_windows(self) -> None:
        assert SQLITE.select_keyset("users", ["id", "email"], ["id"], after=False) == (
            "SELECT id, email FROM users ORDER BY id LIMIT :limit"
        )
        assert SQLITE.select_keyset("users", ["id", "email"], ["id"], after=True) == (
            "SELECT id, email FROM users WHERE id > :k0 ORDER BY id LIMIT :limit"
        )

    def test_composite_keyset(self) -> None:
        assert POSTGRES.select_keyset("t", ["a", "b", "c"], ["a", "b"], after=True) == (
            "SELECT a, b, c FROM t WHERE (a, b) > (:k0, :k1) ORDER BY a, b LIMIT :limit"
        )

    def test_rowid_window(self) -> None:
        assert SQLITE.select_rowid("t", ["a"], "_bridge_rowid", after=True) == (
            "SELECT rowid AS _bridge_rowid, a FROM t WHERE rowid > :k0 ORDER BY rowid LIMIT :limit"
        )

    def test_offset_window(self) -> None:
        assert POSTGRES.select_offset("t", ["a"], after=True) == "SELECT a FROM t ORDER BY ctid LIMIT :limit OFFSET :offset"

    def test_reset_sequence(self) -> None:
        assert POSTGRES.reset_sequence("users", "id") == (
            "SELECT setval(pg_get_serial_sequence('users', 'id'), "
            "COALESCE((SELECT MAX(id) FROM users), 0) + 1, false)"
        )
