"""High-level entry points: compare, plan and migrate two databases.

``compare()`` and ``migrate()`` always return a report. Discovery, planning
and lock failures end up in ``ComparisonResult.error`` or as fatal
``MigrationResult.errors`` instead of propagating, so callers branch on
``compatible`` / ``success``. ``plan()`` raises, since there is no plan to
return on failure.

Usage:
    from db_bridge.adapters.async_engine import AsyncEngineHandle
    from db_bridge.migration.models import MigrationOptions
    from db_bridge.migration.service import compare, migrate

    source = AsyncEngineHandle("sqlite:///app.db")
    target = AsyncEngineHandle("postgresql://user:pw@localhost/app")

    comparison = await compare(source, target)
    print(comparison.format_report())

    result = await migrate(source, target, MigrationOptions(batch_size=500))
    print(result.success, result.rows_migrated)
"""

import asyncio
import logging
import time

from db_bridge.adapters.base import DatabaseHandle
from db_bridge.advisor.index_advisor import IndexAdvisor
from db_bridge.errors import LockAcquisitionError, MigrationExecutionError
from db_bridge.migration.executor import MigrationExecutor, ProgressCallback
from db_bridge.migration.lock import MigrationLock
from db_bridge.migration.models import MigrationError, MigrationOptions, MigrationPlan, MigrationResult
from db_bridge.migration.planner import MigrationPlanner
from db_bridge.migration.tracker import MigrationTracker
from db_bridge.schema.capabilities import get_capabilities
from db_bridge.schema.comparator import compare_schemas
from db_bridge.schema.discovery import DiscoveryConfig, DiscoveryCoordinator
from db_bridge.schema.models import ComparisonResult, SchemaModel

logger = logging.getLogger(__name__)


async def discover(
    handle: DatabaseHandle,
    config: DiscoveryConfig | None = None,
    coordinator: DiscoveryCoordinator | None = None,
) -> SchemaModel:
    """Discover one database's schema (raises on failure)."""
    coordinator = coordinator or DiscoveryCoordinator()
    return await coordinator.discover(handle, config)


async def _compare(
    source: DatabaseHandle,
    target: DatabaseHandle,
    config: DiscoveryConfig | None,
    coordinator: DiscoveryCoordinator | None,
) -> ComparisonResult:
    coordinator = coordinator or DiscoveryCoordinator()
    source_schema, target_schema = await asyncio.gather(
        coordinator.discover(source, config),
        coordinator.discover(target, config),
    )
    return compare_schemas(source_schema, target_schema)


async def compare(
    source: DatabaseHandle,
    target: DatabaseHandle,
    config: DiscoveryConfig | None = None,
    coordinator: DiscoveryCoordinator | None = None,
) -> ComparisonResult:
    """Discover both databases and compare them.

    Returns:
        ``ComparisonResult``. On failure ``compatible`` is False and
        ``error`` holds the message.
    """
    try:
        return await _compare(source, target, config, coordinator)
    except Exception as e:
        logger.error(f"Comparison failed: {e}")
        return ComparisonResult(compatible=False, error=str(e))


async def plan(
    source: DatabaseHandle,
    target: DatabaseHandle,
    options: MigrationOptions | None = None,
    config: DiscoveryConfig | None = None,
    advisor: IndexAdvisor | None = None,
    coordinator: DiscoveryCoordinator | None = None,
) -> MigrationPlan:
    """Discover, compare and plan without touching the target.

    Raises:
        UnsupportedDialectError: If either handle's dialect is unknown.
        DiscoveryError: If either schema cannot be read.
        PlanningError: If a construct has no fallback on the target.
    """
    options = options or MigrationOptions()
    comparison = await _compare(source, target, config, coordinator)
    recommendations = advisor.recommend(comparison.source, dialect=target.dialect) if advisor else None
    planner = MigrationPlanner(get_capabilities(target.dialect), options)
    return planner.plan(comparison, recommendations)


def _fatal(message: str, started: float, table: str | None = None) -> MigrationResult:
    return MigrationResult(
        success=False,
        duration=time.monotonic() - started,
        errors=[MigrationError(table=table, message=message, fatal=True)],
    )


async def migrate(
    source: DatabaseHandle,
    target: DatabaseHandle,
    options: MigrationOptions | None = None,
    config: DiscoveryConfig | None = None,
    advisor: IndexAdvisor | None = None,
    cancel: asyncio.Event | None = None,
    on_progress: ProgressCallback | None = None,
    lock: MigrationLock | None = None,
    tracker: MigrationTracker | None = None,
    coordinator: DiscoveryCoordinator | None = None,
) -> MigrationResult:
    """Bring the target in line with the source: schema first, then rows.

    Args:
        source: Database to read from.
        target: Database to migrate.
        options: Migration options. ``dry_run`` returns the SQL text in
            ``MigrationResult.statements`` without executing anything.
        config: Discovery filters and type overrides for both sides.
        advisor: Optional index advisor consulted while planning.
        cancel: Set to stop between batches.
        on_progress: Per-batch progress callback.
        lock: Lock override (defaults to the target dialect's strategy).
        tracker: Tracking-table override.
        coordinator: Discovery coordinator override.

    Returns:
        ``MigrationResult``; never raises for discovery, planning or lock
        failures.

    Raises:
        MigrationExecutionError: Only with ``fail_fast`` when no table
            could be migrated.
    """
    started = time.monotonic()
    options = options or MigrationOptions()

    try:
        migration_plan = await plan(source, target, options, config, advisor, coordinator)
    except Exception as e:
        logger.error(f"Migration planning failed: {e}")
        return _fatal(str(e), started, getattr(e, "table", None))

    executor = MigrationExecutor(options, lock=lock, tracker=tracker, on_progress=on_progress)
    try:
        return await executor.execute(migration_plan, source, target, cancel)
    except LockAcquisitionError as e:
        logger.error(str(e))
        return _fatal(str(e), started)
    except MigrationExecutionError:
        raise
    except Exception as e:
        logger.error(f"Migration failed: {e}")
        return _fatal(str(e), started)
