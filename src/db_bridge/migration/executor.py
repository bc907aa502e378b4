"""Migration executor -- apply a ``MigrationPlan`` to a target database.

Run order:

1. Migration lock on the target.
2. Tracking table check: a plan whose checksum is already recorded gets a
   warning and still runs. Plans come from a live diff, so a repeat means
   the target drifted back.
3. Pre statements (drops) and constraint-disable hooks in one transaction.
4. One unit of work per table: its DDL and every copy batch inside a single
   target transaction. A failure rolls back that table only.
5. Constraint-enable hooks (self-referencing and cycle-breaking foreign
   keys, suspended constraints), each in its own transaction. They run even
   after a failed or cancelled copy, except for created tables that rolled
   back.
6. Post statements (foreign keys on existing tables, sequence resets,
   recommended indexes), each in its own transaction.
7. Row-count verification, tracking record, lock release.

Cross-table atomicity is not provided: tables commit one by one, so a failed
run can leave earlier tables migrated. ``MigrationResult.errors`` names the
tables that rolled back.

``generate_sql()`` and ``execute()`` consume the same statement generator,
so the dry-run text is exactly what execution sends.

Usage:
    from db_bridge.migration.executor import MigrationExecutor

    executor = MigrationExecutor(options, on_progress=print)
    result = await executor.execute(plan, source, target)
    if not result.success:
        for error in result.errors:
            print(error.table, error.message)
"""

import asyncio
import logging
import math
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AsyncExitStack

from db_bridge.adapters.base import DatabaseHandle, DatabaseSession
from db_bridge.errors import MigrationExecutionError
from db_bridge.migration.convert import build_row_converter
from db_bridge.migration.lock import MigrationLock, default_lock
from db_bridge.migration.models import (
    CopyProgress,
    DataCopyTask,
    MigrationError,
    MigrationOptions,
    MigrationPlan,
    MigrationResult,
    Statement,
    TableMigration,
)
from db_bridge.migration.tracker import MigrationTracker
from db_bridge.schema.capabilities import Dialect, get_capabilities

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[CopyProgress], None]

_SCHEMA_KINDS = {
    "drop",
    "create_table",
    "create_view",
    "alter",
    "add_column",
    "index",
    "constraint",
    "drop_constraint",
}


class _Cancelled(Exception):
    """Raised inside a table unit of work to roll it back on cancellation."""


class _TableOutcome:
    """Counts for one table, merged into the result only after commit."""

    def __init__(self, table: str):
        self.table = table
        self.statements: list[Statement] = []
        self.rows = 0
        self.source_rows: int | None = None


def _components(migrations: list[TableMigration]) -> list[list[TableMigration]]:
    """Group migrations into foreign-key connected components, plan order kept."""
    parent = {m.table: m.table for m in migrations}

    def find(name: str) -> str:
        while parent[name] != name:
            parent[name] = parent[parent[name]]
            name = parent[name]
        return name

    for migration in migrations:
        for dep in migration.dependencies:
            if dep in parent:
                parent[find(dep)] = find(migration.table)

    groups: dict[str, list[TableMigration]] = {}
    for migration in migrations:
        groups.setdefault(find(migration.table), []).append(migration)
    return list(groups.values())


class MigrationExecutor:
    """Run or render a migration plan.

    Args:
        options: Migration options (batch behaviour, error policy, ...).
        lock: Migration lock. Defaults to the strategy for the target's
            dialect.
        tracker: Tracking-table access. Defaults to
            ``MigrationTracker(options.tracking_table)``.
        on_progress: Called after every copied batch.
    """

    def __init__(
        self,
        options: MigrationOptions | None = None,
        lock: MigrationLock | None = None,
        tracker: MigrationTracker | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        self.options = options or MigrationOptions()
        self.lock = lock
        self.tracker = tracker or MigrationTracker(self.options.tracking_table)
        self.on_progress = on_progress

    # ------------------------------------------------------------------
    # Statement generation (shared by dry run and execution)
    # ------------------------------------------------------------------

    async def _table_statements(
        self,
        migration: TableMigration,
        source: DatabaseSession | DatabaseHandle,
        target_dialect: Dialect,
        outcome: _TableOutcome,
        cancel: asyncio.Event | None = None,
        read_rows: bool = True,
    ) -> AsyncIterator[Statement]:
        """Yield one table's statements: its DDL, then one INSERT per batch.

        The row count is read first; exactly ``ceil(count / batch_size)``
        batches follow. With ``read_rows`` off the INSERT statements carry
        no parameters and the source is only counted.
        """
        for stmt in migration.ddl:
            yield stmt

        task = migration.copy
        if task is None:
            return

        rows = await source.fetch(task.count_sql)
        total = int(rows[0]["row_count"]) if rows else 0
        outcome.source_rows = total
        batches = math.ceil(total / task.batch_size)
        convert = build_row_converter(task.target_columns, target_dialect)
        started = time.monotonic()
        last_row: dict | None = None

        for number in range(batches):
            if cancel is not None and cancel.is_set():
                raise _Cancelled(task.target_table)

            if not read_rows:
                size = min(task.batch_size, total - outcome.rows)
                outcome.rows += size
                yield Statement(task.insert_sql, kind="insert", table=task.target_table, rows=size)
                continue

            params = {"limit": task.batch_size}
            if last_row is not None:
                params.update(self._window(task, last_row, number))
            sql = task.first_batch_sql if last_row is None else task.next_batch_sql
            batch = await source.fetch(sql, params)
            if not batch:
                break
            last_row = batch[-1]
            outcome.rows += len(batch)
            yield Statement(
                task.insert_sql,
                kind="insert",
                table=task.target_table,
                params=[convert(row) for row in batch],
                rows=len(batch),
            )
            self._report(task.target_table, outcome.rows, total, started)

    @staticmethod
    def _window(task: DataCopyTask, last_row: dict, number: int) -> dict:
        if task.strategy == "keyset":
            return {f"k{i}": last_row[key] for i, key in enumerate(task.key_columns)}
        if task.strategy == "rowid":
            return {"k0": last_row[task.key_alias]}
        return {"offset": number * task.batch_size}

    def _report(self, table: str, current: int, total: int, started: float) -> None:
        if self.on_progress is None:
            return
        elapsed = time.monotonic() - started
        eta = (elapsed / current) * (total - current) if current else None
        self.on_progress(
            CopyProgress(
                table=table,
                current=current,
                total=total,
                percentage=round(current / total * 100, 1) if total else 100.0,
                eta_seconds=eta,
            )
        )

    async def generate_sql(self, plan: MigrationPlan, source: DatabaseHandle) -> list[str]:
        """Render the plan as the exact statement sequence execution would send.

        Reads only row counts from the source; nothing is sent to a target.

        Returns:
            SQL texts in execution order, one entry per INSERT batch.
        """
        statements = [stmt.sql for stmt in plan.pre_statements + plan.disable_constraints]
        async with source.session() as reader:
            for migration in plan.migrations:
                outcome = _TableOutcome(migration.table)
                async for stmt in self._table_statements(
                    migration, reader, plan.target_dialect, outcome, read_rows=False
                ):
                    statements.append(stmt.sql)
        statements.extend(stmt.sql for stmt in plan.enable_constraints + plan.post_statements)
        return statements

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        plan: MigrationPlan,
        source: DatabaseHandle,
        target: DatabaseHandle,
        cancel: asyncio.Event | None = None,
    ) -> MigrationResult:
        """Apply a plan.

        Args:
            plan: Plan from ``MigrationPlanner.plan()``.
            source: Database the rows are read from.
            target: Database the plan is applied to.
            cancel: Set to stop before the next batch; the table in flight
                rolls back and a partial result is returned.

        Returns:
            ``MigrationResult``. With ``dry_run`` (option or plan) only
            ``statements`` is filled and nothing is executed.

        Raises:
            LockAcquisitionError: If another migration holds the lock.
            MigrationExecutionError: If ``fail_fast`` is set and no table
                could be migrated.
        """
        started = time.monotonic()
        result = MigrationResult(checksum=plan.checksum, warnings=list(plan.warnings))

        if self.options.dry_run or plan.dry_run:
            result.statements = await self.generate_sql(plan, source)
            result.dry_run = True
            result.success = True
            result.duration = time.monotonic() - started
            return result

        if not plan.has_changes:
            result.success = True
            result.warnings.append("Nothing to migrate")
            result.duration = time.monotonic() - started
            return result

        lock = self.lock or default_lock(target.dialect, self.options)
        async with AsyncExitStack() as stack:
            session = await stack.enter_async_context(target.session())
            await lock.acquire(target, session)
            stack.push_async_callback(lock.release)

            if await self.tracker.is_applied(session, plan):
                result.warnings.append(
                    f"Plan {plan.checksum[:12]} was applied before; applying again"
                )
                logger.warning(f"Plan {plan.checksum[:12]} already recorded; re-applying against current target")

            if await self._run_pre(plan, session, result):
                await self._run_tables(plan, source, target, session, result, cancel)
                await self._run_enable_constraints(plan, session, result)
                if not result.cancelled and not any(e.fatal for e in result.errors):
                    await self._run_post(plan, session, result)

            result.success = not result.errors and not result.cancelled
            if result.success:
                await self.tracker.record(session, plan)

        result.duration = time.monotonic() - started
        logger.info(
            f"Migration finished: success={result.success}, tables={result.tables_processed}, "
            f"rows={result.rows_migrated}, errors={len(result.errors)}"
        )

        if self.options.fail_fast and result.errors and result.tables_processed == 0:
            raise MigrationExecutionError(
                f"No table could be migrated: {result.errors[0].message}", table=result.errors[0].table
            )
        return result

    def _count(self, statements: list[Statement], result: MigrationResult) -> None:
        summary = result.summary
        for stmt in statements:
            if stmt.kind in _SCHEMA_KINDS:
                summary.schema_changes += 1
            if stmt.kind == "index":
                summary.indexes_created += 1
            elif stmt.kind == "constraint":
                summary.constraints_applied += 1
            elif stmt.kind == "create_table" and stmt.table:
                summary.tables_created.append(stmt.table)
            elif stmt.kind == "drop" and stmt.table:
                summary.tables_dropped.append(stmt.table)

    async def _run_pre(self, plan: MigrationPlan, session: DatabaseSession, result: MigrationResult) -> bool:
        """Run drops and constraint-disable hooks in one transaction; False if the run must stop."""
        statements = plan.pre_statements + plan.disable_constraints
        if not statements:
            return True
        try:
            async with session.transaction():
                for stmt in statements:
                    await session.execute(stmt.sql)
        except Exception as e:
            logger.error(f"Pre-migration statements failed: {e}")
            result.errors.append(MigrationError(message=f"Pre-migration statements failed: {e}", fatal=True))
            return False
        self._count(statements, result)
        return True

    async def _run_enable_constraints(
        self, plan: MigrationPlan, session: DatabaseSession, result: MigrationResult
    ) -> None:
        """Add the deferred foreign keys, also after a failed or cancelled copy.

        Hooks for a created table that rolled back are skipped; hooks for
        existing tables always run so suspended constraints come back.
        """
        created = {m.table for m in plan.migrations if m.action == "create"}
        committed = set(result.summary.tables_created)
        for stmt in plan.enable_constraints:
            if stmt.table in created and stmt.table not in committed:
                continue
            try:
                async with session.transaction():
                    await session.execute(stmt.sql)
            except Exception as e:
                logger.error(f"Constraint on {stmt.table} could not be added: {e}")
                result.errors.append(MigrationError(table=stmt.table, message=f"{stmt.sql}: {e}"))
                continue
            self._count([stmt], result)

    async def _run_post(self, plan: MigrationPlan, session: DatabaseSession, result: MigrationResult) -> None:
        for stmt in plan.post_statements:
            try:
                async with session.transaction():
                    await session.execute(stmt.sql)
            except Exception as e:
                logger.error(f"Post-migration statement failed on {stmt.table}: {e}")
                result.errors.append(MigrationError(table=stmt.table, message=f"{stmt.sql}: {e}"))
                continue
            self._count([stmt], result)

    async def _run_tables(
        self,
        plan: MigrationPlan,
        source: DatabaseHandle,
        target: DatabaseHandle,
        session: DatabaseSession,
        result: MigrationResult,
        cancel: asyncio.Event | None,
    ) -> None:
        tables = [m for m in plan.migrations if m.action != "view"]
        views = [m for m in plan.migrations if m.action == "view"]
        failed: set[str] = set()

        parallel = self.options.parallel
        if parallel and not get_capabilities(target.dialect).supports_concurrent_writers:
            result.warnings.append(f"Parallel mode disabled: {target.dialect.value} has a single writer")
            parallel = False

        if parallel:
            semaphore = asyncio.Semaphore(self.options.workers)

            async def run_component(group: list[TableMigration]) -> None:
                async with semaphore:
                    async with source.session() as reader, target.session() as writer:
                        await self._run_sequence(group, plan, reader, writer, result, cancel, failed)

            await asyncio.gather(*(run_component(group) for group in _components(tables)))
        else:
            async with source.session() as reader:
                await self._run_sequence(tables, plan, reader, session, result, cancel, failed)

        if views and not result.cancelled and not (failed and not self.options.continue_on_error):
            async with source.session() as reader:
                await self._run_sequence(views, plan, reader, session, result, cancel, failed)

    async def _run_sequence(
        self,
        migrations: list[TableMigration],
        plan: MigrationPlan,
        reader: DatabaseSession,
        writer: DatabaseSession,
        result: MigrationResult,
        cancel: asyncio.Event | None,
        failed: set[str],
    ) -> None:
        for migration in migrations:
            if result.cancelled or (failed and not self.options.continue_on_error):
                return
            blocked = sorted(migration.dependencies & failed)
            if blocked:
                failed.add(migration.table)
                result.errors.append(
                    MigrationError(
                        table=migration.table,
                        message=f"Skipped: depends on failed table(s) {', '.join(blocked)}",
                    )
                )
                continue

            outcome = _TableOutcome(migration.table)
            try:
                async with writer.transaction():
                    async for stmt in self._table_statements(
                        migration, reader, plan.target_dialect, outcome, cancel
                    ):
                        await writer.execute(stmt.sql, stmt.params)
                        outcome.statements.append(stmt)
            except _Cancelled:
                logger.warning(f"Migration cancelled; rolled back {migration.table}")
                result.cancelled = True
                result.warnings.append(f"Cancelled during '{migration.table}'; its changes were rolled back")
                return
            except Exception as e:
                logger.error(f"Migration of {migration.table} failed: {e}")
                failed.add(migration.table)
                result.errors.append(MigrationError(table=migration.table, message=str(e)))
                continue

            result.tables_processed += 1
            result.rows_migrated += outcome.rows
            if migration.copy is not None:
                result.summary.data_changes += 1
            self._count(outcome.statements, result)
            logger.info(f"Migrated {migration.table}: {outcome.rows} row(s)")

            if self.options.verify and migration.copy is not None and migration.action == "create":
                await self._verify(migration.copy, outcome, writer, result)

    async def _verify(
        self,
        task: DataCopyTask,
        outcome: _TableOutcome,
        writer: DatabaseSession,
        result: MigrationResult,
    ) -> None:
        """Compare the target row count with the source count read before copying."""
        rows = await writer.fetch(task.target_count_sql)
        copied = int(rows[0]["row_count"]) if rows else 0
        if copied != outcome.source_rows:
            result.warnings.append(
                f"Row count mismatch for {task.target_table}: source {outcome.source_rows}, target {copied}"
            )
