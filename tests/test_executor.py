"""Tests for the migration executor, against scripted handles."""

import asyncio

import pytest

from db_bridge.errors import LockAcquisitionError, MigrationExecutionError
from db_bridge.migration.executor import MigrationExecutor
from db_bridge.migration.models import MigrationOptions
from db_bridge.migration.planner import MigrationPlanner
from db_bridge.schema.capabilities import get_capabilities
from db_bridge.schema.comparator import compare_schemas

from fakes import (
    FakeHandle,
    FakeLock,
    FakeTracker,
    col,
    fk,
    orders_table,
    paged_rows,
    pk,
    schema,
    source_for,
    table,
    users_table,
    view,
)

USERS = [{"id": i, "email": f"user{i}@example.com", "active": i % 2 == 0} for i in range(1, 6)]


def zones_table():
    return table("zones", pk(), col("name"))


def _plan(source_tables, target_tables=(), source="sqlite", target="sqlite", **options):
    comparison = compare_schemas(schema(source, *source_tables), schema(target, *target_tables))
    planner = MigrationPlanner(get_capabilities(target), MigrationOptions(**options))
    return planner.plan(comparison)


def _executor(lock=None, tracker=None, on_progress=None, **options):
    options.setdefault("verify", False)
    return MigrationExecutor(
        MigrationOptions(**options),
        lock=lock or FakeLock(),
        tracker=tracker or FakeTracker(),
        on_progress=on_progress,
    )


def _source(dialect="sqlite", **tables) -> FakeHandle:
    """Source handle serving several tables; count queries are matched first."""
    responses = {}
    for name, rows in tables.items():
        responses[f"COUNT(*) AS row_count FROM {name}"] = [{"row_count": len(rows)}]
    for name, rows in tables.items():
        responses[f"FROM {name} "] = paged_rows(rows)
    return FakeHandle(dialect, responses=responses)


def _inserts(sql: list[str]) -> list[str]:
    return [s for s in sql if s.startswith("INSERT")]


# ==================================================================
# Test Group 1: Dry run
# ==================================================================


class TestDryRun:
    """Verify dry runs render exactly what execution would send."""

    async def test_one_insert_per_batch(self) -> None:
        plan = _plan([users_table()], batch_size=2)
        statements = await _executor(batch_size=2).generate_sql(plan, source_for("users", USERS))
        assert statements[0].startswith("CREATE TABLE users (")
        assert statements[1] == "CREATE UNIQUE INDEX IF NOT EXISTS users_email_key ON users (email)"
        assert _inserts(statements) == ["INSERT INTO users (id, email, active) VALUES (:p0, :p1, :p2)"] * 3

    @pytest.mark.parametrize("rows, batches", [(0, 0), (1, 1), (4, 2), (5, 3)])
    async def test_batch_count(self, rows, batches) -> None:
        plan = _plan([users_table()], batch_size=2)
        statements = await _executor().generate_sql(plan, source_for("users", USERS[:rows]))
        assert len(_inserts(statements)) == batches

    async def test_only_counts_read(self) -> None:
        source = source_for("users", USERS)
        await _executor().generate_sql(_plan([users_table()]), source)
        assert [sql for sql, _ in source.fetched] == ["SELECT COUNT(*) AS row_count FROM users"]

    async def test_dry_run_option_leaves_target_alone(self) -> None:
        target = FakeHandle()
        lock = FakeLock()
        result = await _executor(lock=lock, dry_run=True).execute(_plan([users_table()]), source_for("users", USERS), target)
        assert result.dry_run and result.success
        assert len(result.statements) == 3
        assert target.executed == []
        assert lock.acquired == 0

    async def test_dry_run_matches_execution(self) -> None:
        plan = _plan([users_table(), orders_table()], batch_size=2)
        source = _source(users=USERS, orders=[{"id": 1, "user_id": 2, "total": "9.50"}])
        executor = _executor(batch_size=2)

        dry = await executor.generate_sql(plan, source)
        target = FakeHandle()
        await executor.execute(plan, source, target)

        assert target.executed_sql == dry


# ==================================================================
# Test Group 2: Execution
# ==================================================================


class TestExecution:
    """Verify a successful run and what it reports."""

    async def test_create_and_copy(self) -> None:
        plan = _plan([users_table()], batch_size=2)
        target = FakeHandle()
        lock, tracker = FakeLock(), FakeTracker()

        result = await _executor(lock=lock, tracker=tracker).execute(plan, source_for("users", USERS), target)

        assert result.success
        assert result.tables_processed == 1
        assert result.rows_migrated == 5
        assert result.checksum == plan.checksum
        assert result.summary.tables_created == ["users"]
        assert result.summary.indexes_created == 1
        assert result.summary.schema_changes == 2
        assert result.summary.data_changes == 1
        assert tracker.recorded == [plan.checksum]
        assert (lock.acquired, lock.released) == (1, 1)

    async def test_rows_converted_for_target(self) -> None:
        plan = _plan([users_table()], batch_size=2)
        target = FakeHandle()
        await _executor().execute(plan, source_for("users", USERS), target)
        inserts = [params for sql, params in target.executed if sql.startswith("INSERT")]
        assert inserts[0] == [
            {"p0": 1, "p1": "user1@example.com", "p2": 0},
            {"p0": 2, "p1": "user2@example.com", "p2": 1},
        ]
        assert len(inserts[-1]) == 1

    async def test_table_is_one_transaction(self) -> None:
        target = FakeHandle()
        await _executor().execute(_plan([users_table()], batch_size=2), source_for("users", USERS), target)
        assert target.transactions == 1
        assert len(target.committed) == 5

    async def test_progress_reported_per_batch(self) -> None:
        seen = []
        plan = _plan([users_table()], batch_size=2)
        await _executor(on_progress=seen.append).execute(plan, source_for("users", USERS), FakeHandle())
        assert [p.current for p in seen] == [2, 4, 5]
        assert [p.percentage for p in seen] == [40.0, 80.0, 100.0]
        assert all(p.total == 5 for p in seen)

    async def test_nothing_to_migrate(self) -> None:
        lock = FakeLock()
        plan = _plan([users_table()], [users_table()])
        result = await _executor(lock=lock).execute(plan, FakeHandle(), FakeHandle())
        assert result.success
        assert result.warnings == ["Nothing to migrate"]
        assert lock.acquired == 0

    async def test_previously_applied_plan_runs_again(self) -> None:
        plan = _plan([users_table()])
        target = FakeHandle()
        lock = FakeLock()
        tracker = FakeTracker({plan.checksum})
        result = await _executor(lock=lock, tracker=tracker).execute(plan, source_for("users", USERS), target)
        assert result.success
        assert f"Plan {plan.checksum[:12]} was applied before; applying again" in result.warnings
        assert result.rows_migrated == 5
        assert tracker.recorded == [plan.checksum]
        assert lock.released == 1

    async def test_views_created_after_tables(self) -> None:
        v = view("active_users", "SELECT id FROM users WHERE active = 1", col("id", "integer"))
        plan = _plan([users_table(), v])
        target = FakeHandle()
        result = await _executor().execute(plan, source_for("users", []), target)
        assert result.success
        assert target.executed_sql[-1] == "CREATE VIEW active_users AS SELECT id FROM users WHERE active = 1"

    async def test_row_count_verified(self) -> None:
        target = FakeHandle(responses={"COUNT(*) AS row_count FROM users": [{"row_count": 1}]})
        result = await _executor(verify=True).execute(_plan([users_table()]), source_for("users", USERS), target)
        assert "Row count mismatch for users: source 5, target 1" in result.warnings

    async def test_matching_row_count_is_quiet(self) -> None:
        target = FakeHandle(responses={"COUNT(*) AS row_count FROM users": [{"row_count": 5}]})
        result = await _executor(verify=True).execute(_plan([users_table()]), source_for("users", USERS), target)
        assert not any("mismatch" in w for w in result.warnings)


# ==================================================================
# Test Group 3: Failures
# ==================================================================


class TestFailures:
    """Verify per-table rollback and the error policies."""

    async def test_failed_table_stops_run(self) -> None:
        plan = _plan([users_table(), orders_table(), zones_table()])
        target = FakeHandle(fail_on=("CREATE TABLE users",))
        result = await _executor().execute(plan, _source(users=[], orders=[], zones=[]), target)

        assert not result.success
        assert result.tables_processed == 0
        assert [e.table for e in result.errors] == ["users"]
        assert target.rollbacks == 1
        assert not any("CREATE TABLE zones" in s for s in target.executed_sql)

    async def test_continue_skips_dependents_only(self) -> None:
        plan = _plan([users_table(), orders_table(), zones_table()])
        target = FakeHandle(fail_on=("CREATE TABLE users",))
        result = await _executor(continue_on_error=True).execute(
            plan, _source(users=[], orders=[], zones=[]), target
        )

        assert not result.success
        assert result.tables_processed == 1
        assert result.summary.tables_created == ["zones"]
        errors = {e.table: e.message for e in result.errors}
        assert errors["orders"] == "Skipped: depends on failed table(s) users"
        assert "CREATE TABLE users" in errors["users"]

    async def test_fail_fast_raises_when_nothing_migrated(self) -> None:
        lock = FakeLock()
        target = FakeHandle(fail_on=("CREATE TABLE users",))
        with pytest.raises(MigrationExecutionError) as exc_info:
            await _executor(lock=lock, fail_fast=True).execute(_plan([users_table()]), source_for("users", []), target)
        assert exc_info.value.table == "users"
        assert lock.released == 1

    async def test_failed_drop_is_fatal(self) -> None:
        plan = _plan([users_table()], [table("legacy", pk())], drop_tables=True)
        target = FakeHandle(fail_on=("DROP TABLE",))
        result = await _executor().execute(plan, source_for("users", []), target)
        assert not result.success
        assert result.errors[0].fatal
        assert result.errors[0].message.startswith("Pre-migration statements failed")
        assert not any(s.startswith("CREATE TABLE") for s in target.executed_sql)

    async def test_failed_post_statement_recorded(self) -> None:
        plan = _plan([users_table()], target="postgresql")
        target = FakeHandle("postgresql", fail_on=("setval",))
        tracker = FakeTracker()
        result = await _executor(tracker=tracker).execute(plan, source_for("users", USERS), target)
        assert result.tables_processed == 1
        assert not result.success
        assert result.errors[0].message.startswith("SELECT setval")
        assert not result.errors[0].fatal
        assert tracker.recorded == []

    async def test_lock_failure_propagates(self) -> None:
        lock = FakeLock(error=LockAcquisitionError("busy"))
        target = FakeHandle()
        with pytest.raises(LockAcquisitionError):
            await _executor(lock=lock).execute(_plan([users_table()]), source_for("users", USERS), target)
        assert target.executed == []


# ==================================================================
# Test Group 4: Cancellation and concurrency
# ==================================================================


class TestCancellationAndParallelism:
    """Verify cancellation rolls back and parallel mode respects the target."""

    async def test_cancel_rolls_back_table_in_flight(self) -> None:
        cancel = asyncio.Event()
        tracker = FakeTracker()
        executor = _executor(tracker=tracker, on_progress=lambda progress: cancel.set(), batch_size=2)

        result = await executor.execute(_plan([users_table()], batch_size=2), source_for("users", USERS), FakeHandle(), cancel)

        assert result.cancelled
        assert not result.success
        assert result.tables_processed == 0
        assert result.rows_migrated == 0
        assert "Cancelled during 'users'; its changes were rolled back" in result.warnings
        assert tracker.recorded == []

    async def test_cancel_leaves_nothing_committed(self) -> None:
        cancel = asyncio.Event()
        target = FakeHandle()
        executor = _executor(on_progress=lambda progress: cancel.set(), batch_size=2)
        await executor.execute(_plan([users_table()], batch_size=2), source_for("users", USERS), target, cancel)
        assert target.committed == []
        assert target.rollbacks == 1

    async def test_parallel_disabled_on_sqlite(self) -> None:
        plan = _plan([users_table(), zones_table()])
        result = await _executor(parallel=True).execute(plan, _source(users=USERS, zones=[]), FakeHandle())
        assert result.success
        assert "Parallel mode disabled: sqlite has a single writer" in result.warnings

    async def test_parallel_on_postgres(self) -> None:
        plan = _plan([users_table(), zones_table()], target="postgresql")
        target = FakeHandle("postgresql")
        result = await _executor(parallel=True, workers=2).execute(
            plan, _source(users=USERS, zones=[{"id": 1, "name": "north"}]), target
        )
        assert result.success
        assert result.tables_processed == 2
        assert result.rows_migrated == 6
        # One work session plus one per independent table group
        assert target.sessions == 3


# ==================================================================
# Test Group 5: Constraint hooks
# ==================================================================


def employees_table():
    return table(
        "employees",
        pk(),
        col("manager_id", "integer"),
        foreign_keys=[fk("manager_id", "employees", name="emp_mgr")],
    )


# Row 1 reports to row 3, which is only copied in the second batch
EMPLOYEES = [{"id": 1, "manager_id": 3}, {"id": 2, "manager_id": 1}, {"id": 3, "manager_id": None}]

EMPLOYEES_FK = "ALTER TABLE employees ADD CONSTRAINT emp_mgr FOREIGN KEY (manager_id) REFERENCES employees (id)"


class TestConstraintHooks:
    """Verify deferred foreign keys are added once every row is in place."""

    async def test_self_reference_added_after_rows(self) -> None:
        plan = _plan([employees_table()], target="postgresql", batch_size=2)
        target = FakeHandle("postgresql")
        result = await _executor(batch_size=2).execute(plan, source_for("employees", EMPLOYEES), target)

        assert result.success, result.errors
        assert result.rows_migrated == 3
        assert result.summary.constraints_applied == 1
        sql = target.executed_sql
        last_insert = max(i for i, s in enumerate(sql) if s.startswith("INSERT INTO employees"))
        assert sql.index(EMPLOYEES_FK) > last_insert
        assert "REFERENCES" not in sql[0]

    async def test_dry_run_lists_hook_before_post_statements(self) -> None:
        plan = _plan([employees_table()], target="postgresql")
        statements = await _executor().generate_sql(plan, source_for("employees", EMPLOYEES))
        assert statements[-2] == EMPLOYEES_FK
        assert "setval" in statements[-1]

    async def test_hook_skipped_for_rolled_back_table(self) -> None:
        plan = _plan([employees_table()], target="postgresql")
        target = FakeHandle("postgresql", fail_on=("INSERT INTO employees",))
        result = await _executor().execute(plan, source_for("employees", EMPLOYEES), target)

        assert not result.success
        assert [e.table for e in result.errors] == ["employees"]
        assert EMPLOYEES_FK not in target.executed_sql

    async def test_suspended_constraint_restored(self) -> None:
        employees = employees_table()
        comparison = compare_schemas(schema("postgresql", employees), schema("postgresql", employees))
        options = MigrationOptions(copy_existing_tables=True)
        plan = MigrationPlanner(get_capabilities("postgresql"), options).plan(comparison)
        target = FakeHandle("postgresql")

        result = await _executor(copy_existing_tables=True).execute(
            plan, source_for("employees", EMPLOYEES, dialect="postgresql"), target
        )

        assert result.success, result.errors
        sql = target.executed_sql
        drop = sql.index("ALTER TABLE employees DROP CONSTRAINT IF EXISTS emp_mgr")
        assert drop < sql.index(next(s for s in sql if s.startswith("INSERT"))) < sql.index(EMPLOYEES_FK)
