"""Applied-migration bookkeeping in the target database.

One row per executed plan: an identifier, the plan checksum and the time it
was applied. The table is an audit history; a plan is always computed from a
live diff, so a recorded checksum never suppresses a run.

Usage:
    from db_bridge.migration.tracker import MigrationTracker

    tracker = MigrationTracker()
    async with target.session() as session:
        ...
        await tracker.record(session, plan)
        assert await tracker.is_applied(session, plan)
"""

from datetime import datetime, timezone

from pydantic import BaseModel

from db_bridge.adapters.base import DatabaseSession
from db_bridge.migration.models import MigrationPlan
from db_bridge.schema.discovery import TRACKING_TABLE
from db_bridge.schema.identifiers import quote_ident


class AppliedMigration(BaseModel):
    """One row of the tracking table."""

    id: str
    checksum: str
    applied_at: str


class MigrationTracker:
    """Read and write the tracking table.

    Args:
        table: Tracking table name.
    """

    def __init__(self, table: str = TRACKING_TABLE):
        self.table = table

    @property
    def _table(self) -> str:
        return quote_ident(self.table)

    async def ensure(self, session: DatabaseSession) -> None:
        """Create the tracking table if it does not exist."""
        await session.execute(
            f"CREATE TABLE IF NOT EXISTS {self._table} ("
            "id VARCHAR(64) PRIMARY KEY, "
            "checksum VARCHAR(64) NOT NULL, "
            "applied_at VARCHAR(32) NOT NULL)"
        )

    async def applied(self, session: DatabaseSession) -> list[AppliedMigration]:
        """Every recorded migration, oldest first."""
        await self.ensure(session)
        rows = await session.fetch(
            f"SELECT id, checksum, applied_at FROM {self._table} ORDER BY applied_at, id"
        )
        return [AppliedMigration(**row) for row in rows]

    async def is_applied(self, session: DatabaseSession, plan: MigrationPlan) -> bool:
        await self.ensure(session)
        rows = await session.fetch(
            f"SELECT id FROM {self._table} WHERE checksum = :checksum", {"checksum": plan.checksum}
        )
        return bool(rows)

    async def record(self, session: DatabaseSession, plan: MigrationPlan) -> AppliedMigration:
        """Insert a row for an executed plan."""
        await self.ensure(session)
        now = datetime.now(timezone.utc)
        entry = AppliedMigration(
            id=f"{now:%Y%m%d%H%M%S%f}_{plan.checksum[:12]}",
            checksum=plan.checksum,
            applied_at=now.isoformat(timespec="seconds"),
        )
        await session.execute(
            f"INSERT INTO {self._table} (id, checksum, applied_at) VALUES (:id, :checksum, :applied_at)",
            entry.model_dump(),
        )
        return entry
