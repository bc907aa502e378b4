"""Migration options, plan pieces and result models.

Plan pieces are dataclasses (built once by the planner, consumed once by the
executor); options and results are Pydantic models so they load from config
and serialize into reports.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from db_bridge.schema.capabilities import Dialect
from db_bridge.schema.discovery import LOCK_TABLE, TRACKING_TABLE
from db_bridge.schema.models import Column


# ============================================================================
# Options
# ============================================================================


class MigrationOptions(BaseModel):
    """Migration configuration.

    Attributes:
        batch_size: Rows per SELECT window / bulk INSERT.
        parallel: Run FK-independent table groups concurrently.
        workers: Upper bound on concurrently running table groups.
        drop_tables: Drop target tables absent from the source. Destructive,
            never implied by any other option.
        continue_on_error: Skip constructs with no fallback (planning) and
            keep going after a failed table (execution).
        fail_fast: Raise ``MigrationExecutionError`` when no table succeeded.
        schema_only: Plan DDL only, no data-copy tasks.
        copy_existing_tables: Also copy rows into tables that already exist
            in the target (only tables created by the plan are filled
            otherwise).
        include_tables: Glob patterns; when non-empty only matching tables
            are planned.
        exclude_tables: Glob patterns of tables to leave out.
        dry_run: Produce SQL text instead of executing.
        apply_recommendations: Append index recommendations to the plan's
            post statements.
        verify: Compare source/target row counts after copying.
        lock_retries: Attempts to take the migration lock.
        lock_backoff: Initial delay between lock attempts, in seconds
            (doubled after each attempt).
        tracking_table: Name of the applied-migrations table.
        lock_table: Name of the lock table.
    """

    batch_size: int = Field(default=500, gt=0)
    parallel: bool = False
    workers: int = Field(default=4, gt=0)
    drop_tables: bool = False
    continue_on_error: bool = False
    fail_fast: bool = False
    schema_only: bool = False
    copy_existing_tables: bool = False
    include_tables: list[str] = Field(default_factory=list)
    exclude_tables: list[str] = Field(default_factory=list)
    dry_run: bool = False
    apply_recommendations: bool = False
    verify: bool = True
    lock_retries: int = Field(default=5, ge=1)
    lock_backoff: float = Field(default=0.5, ge=0)
    tracking_table: str = TRACKING_TABLE
    lock_table: str = LOCK_TABLE


# ============================================================================
# Plan
# ============================================================================


StatementKind = Literal[
    "drop",
    "create_table",
    "create_view",
    "alter",
    "add_column",
    "index",
    "constraint",
    "drop_constraint",
    "insert",
    "sequence",
]


@dataclass
class Statement:
    """One SQL statement sent to the target.

    Example:
        stmt = Statement("CREATE INDEX users_email_idx ON users (email)", kind="index", table="users")
    """

    sql: str
    kind: StatementKind = "alter"
    table: str | None = None
    params: Any = None
    rows: int = 0  # Rows written, for insert statements


@dataclass
class DataCopyTask:
    """Copy every row of one source table into the target.

    The SQL texts are rendered by the planner; the executor only binds
    parameters.

    Attributes:
        source_table: Table to read from.
        target_table: Table to write to.
        columns: Columns copied, in INSERT order.
        target_columns: Target column models, in ``columns`` order.
        key_columns: Ordering key for keyset pagination (empty for
            rowid/offset pagination).
        strategy: ``keyset`` (primary key), ``rowid`` (SQLite rowid), or
            ``offset`` (PostgreSQL ctid order).
        batch_size: Rows per window.
        count_sql: Row count query on the source.
        first_batch_sql: First window.
        next_batch_sql: Following windows (keyset/rowid: after the last
            key; offset: at ``:offset``).
        insert_sql: Parameterized INSERT on the target.
        target_count_sql: Row count query on the target, for verification.
        key_alias: Result column carrying the rowid, stripped before insert.
    """

    source_table: str
    target_table: str
    columns: list[str]
    target_columns: list[Column]
    key_columns: list[str]
    strategy: Literal["keyset", "rowid", "offset"]
    batch_size: int
    count_sql: str
    first_batch_sql: str
    next_batch_sql: str
    insert_sql: str
    key_alias: str | None = None
    target_count_sql: str = ""

    def signature(self) -> str:
        return f"COPY {self.source_table} -> {self.target_table} ({', '.join(self.columns)}) BATCH {self.batch_size}"


@dataclass
class TableMigration:
    """DDL plus optional data copy for one table, executed as one unit of work."""

    table: str
    action: Literal["create", "alter", "copy", "view"]
    ddl: list[Statement] = field(default_factory=list)
    copy: DataCopyTask | None = None
    dependencies: set[str] = field(default_factory=set)


@dataclass
class MigrationPlan:
    """Ordered migration plan.

    Attributes:
        source_dialect: Dialect the plan reads from.
        target_dialect: Dialect the plan writes to.
        pre_statements: Drops, children before parents.
        disable_constraints: Constraint hooks run before any table unit of
            work: foreign keys dropped from existing tables whose rows are
            copied again.
        migrations: Table units of work, parents before children.
        enable_constraints: Constraint hooks run after the table units of
            work: foreign keys added once the rows they reference exist
            (self references, broken cycles, and everything
            ``disable_constraints`` removed).
        post_statements: Foreign keys added to existing tables, sequence
            resets and applied index recommendations.
        warnings: Capability fallbacks and skipped constructs.
        optimizations: Redundant-index findings.
        index_recommendations: Suggestions passed in by the caller.
        estimated_impact: ``high``, ``medium``, ``low`` or ``none``.
        dry_run: True if the plan is meant for SQL output only.
        dropped_tables: Tables the pre statements drop.
    """

    source_dialect: Dialect
    target_dialect: Dialect
    pre_statements: list[Statement] = field(default_factory=list)
    disable_constraints: list[Statement] = field(default_factory=list)
    migrations: list[TableMigration] = field(default_factory=list)
    enable_constraints: list[Statement] = field(default_factory=list)
    post_statements: list[Statement] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    optimizations: list[str] = field(default_factory=list)
    index_recommendations: list[Any] = field(default_factory=list)
    estimated_impact: str = "none"
    dry_run: bool = False
    dropped_tables: list[str] = field(default_factory=list)

    @property
    def create_order(self) -> list[str]:
        return [m.table for m in self.migrations if m.action in ("create", "view")]

    @property
    def has_changes(self) -> bool:
        """True if executing the plan would send anything to the target."""
        return bool(
            self.pre_statements
            or self.disable_constraints
            or self.enable_constraints
            or self.post_statements
            or any(m.ddl or m.copy for m in self.migrations)
        )

    @property
    def ddl_statements(self) -> list[Statement]:
        """Every schema statement in execution order (no row data)."""
        statements = list(self.pre_statements) + list(self.disable_constraints)
        for migration in self.migrations:
            statements.extend(migration.ddl)
        statements.extend(self.enable_constraints)
        statements.extend(self.post_statements)
        return statements

    @property
    def checksum(self) -> str:
        """sha256 over the DDL text and copy-task signatures."""
        digest = hashlib.sha256()
        for stmt in self.pre_statements + self.disable_constraints:
            digest.update(stmt.sql.encode())
        for migration in self.migrations:
            for stmt in migration.ddl:
                digest.update(stmt.sql.encode())
            if migration.copy:
                digest.update(migration.copy.signature().encode())
        for stmt in self.enable_constraints + self.post_statements:
            digest.update(stmt.sql.encode())
        return digest.hexdigest()

    def to_sql(self) -> str:
        """Render the schema statements as a SQL script (data copy excluded)."""
        lines = [f"{stmt.sql};" for stmt in self.ddl_statements]
        for migration in self.migrations:
            if migration.copy:
                lines.append(f"-- {migration.copy.signature()}")
        return "\n".join(lines)


# ============================================================================
# Results
# ============================================================================


class CopyProgress(BaseModel):
    """Progress of one table's data copy."""

    table: str
    current: int
    total: int
    percentage: float
    eta_seconds: float | None = None


class MigrationError(BaseModel):
    """A failure recorded during planning or execution."""

    table: str | None = None
    column: str | None = None
    message: str
    fatal: bool = False


class MigrationSummary(BaseModel):
    """Counts of what a migration changed."""

    schema_changes: int = 0
    data_changes: int = 0
    indexes_created: int = 0
    constraints_applied: int = 0
    tables_created: list[str] = Field(default_factory=list)
    tables_dropped: list[str] = Field(default_factory=list)


class MigrationResult(BaseModel):
    """Result of executing (or dry-running) a migration plan.

    Cross-table atomicity is not guaranteed: each table commits on its own,
    so a failed run may leave earlier tables migrated. ``errors`` lists the
    tables that rolled back.
    """

    success: bool = False
    tables_processed: int = 0
    rows_migrated: int = 0
    duration: float = 0.0
    warnings: list[str] = Field(default_factory=list)
    errors: list[MigrationError] = Field(default_factory=list)
    summary: MigrationSummary = Field(default_factory=MigrationSummary)
    cancelled: bool = False
    dry_run: bool = False
    statements: list[str] = Field(default_factory=list)
    checksum: str | None = None
