"""Migration planning and execution.

Provides the planner (``MigrationPlanner``), the executor
(``MigrationExecutor``), migration locks, the tracking table, and the
``compare`` / ``plan`` / ``migrate`` entry points.

Usage:
    from db_bridge.migration import MigrationOptions, migrate
    from db_bridge.migration import MigrationPlanner, MigrationExecutor
"""

from db_bridge.migration.executor import MigrationExecutor
from db_bridge.migration.lock import ExclusiveMigrationLock, MigrationLock, RowMigrationLock, default_lock
from db_bridge.migration.models import (
    CopyProgress,
    DataCopyTask,
    MigrationError,
    MigrationOptions,
    MigrationPlan,
    MigrationResult,
    MigrationSummary,
    Statement,
    TableMigration,
)
from db_bridge.migration.planner import MigrationPlanner
from db_bridge.migration.service import compare, discover, migrate, plan
from db_bridge.migration.tracker import AppliedMigration, MigrationTracker

__all__ = [
    "MigrationExecutor",
    "MigrationPlanner",
    "MigrationLock",
    "RowMigrationLock",
    "ExclusiveMigrationLock",
    "default_lock",
    "MigrationTracker",
    "AppliedMigration",
    "CopyProgress",
    "DataCopyTask",
    "MigrationError",
    "MigrationOptions",
    "MigrationPlan",
    "MigrationResult",
    "MigrationSummary",
    "Statement",
    "TableMigration",
    "compare",
    "discover",
    "migrate",
    "plan",
]
