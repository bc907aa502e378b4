"""Migration locks -- keep two migration runs from interleaving DDL.

Two strategies, picked from the target's capability table:

- ``RowMigrationLock`` (PostgreSQL): a one-row lock table, locked with
  ``SELECT ... FOR UPDATE NOWAIT`` inside a transaction held open on a
  dedicated session for the whole run. Commit, rollback or a dropped
  connection releases it; no unlock statement is needed.
- ``ExclusiveMigrationLock`` (SQLite): ``PRAGMA locking_mode = EXCLUSIVE``
  plus a write on the work session. SQLite then keeps the file lock until
  the connection closes.

Both retry with exponential backoff and raise ``LockAcquisitionError`` once
the attempts are used up.

Usage:
    from db_bridge.migration.lock import default_lock

    lock = default_lock(target.dialect, options)
    async with target.session() as session:
        await lock.acquire(target, session)
        try:
            ...
        finally:
            await lock.release()
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Protocol

from db_bridge.adapters.base import DatabaseHandle, DatabaseSession
from db_bridge.errors import LockAcquisitionError
from db_bridge.migration.models import MigrationOptions
from db_bridge.schema.capabilities import Dialect, get_capabilities
from db_bridge.schema.discovery import LOCK_TABLE
from db_bridge.schema.identifiers import quote_ident

logger = logging.getLogger(__name__)


class MigrationLock(Protocol):
    """A lock held for the duration of one migration run."""

    async def acquire(self, handle: DatabaseHandle, session: DatabaseSession) -> None:
        """Take the lock.

        Args:
            handle: Target database (for locks that need their own session).
            session: The work session the migration will run on.

        Raises:
            LockAcquisitionError: If another run holds the lock.
        """
        ...

    async def release(self) -> None:
        """Give the lock back. Safe to call when not held."""
        ...


class _RetryingLock:
    """Retry loop shared by both lock strategies."""

    def __init__(self, table: str = LOCK_TABLE, retries: int = 5, backoff: float = 0.5):
        self.table = table
        self.retries = retries
        self.backoff = backoff
        self.held = False

    async def _try_acquire(self, handle: DatabaseHandle, session: DatabaseSession) -> None:
        raise NotImplementedError

    async def acquire(self, handle: DatabaseHandle, session: DatabaseSession) -> None:
        delay = self.backoff
        last_error: Exception | None = None
        for attempt in range(1, self.retries + 1):
            try:
                await self._try_acquire(handle, session)
                self.held = True
                logger.info(f"Migration lock acquired ({type(self).__name__}, attempt {attempt})")
                return
            except Exception as e:
                last_error = e
                logger.warning(f"Migration lock busy (attempt {attempt}/{self.retries}): {e}")
                if attempt < self.retries:
                    await asyncio.sleep(delay)
                    delay *= 2
        raise LockAcquisitionError(
            f"Could not acquire migration lock after {self.retries} attempts; "
            "another migration is probably running"
        ) from last_error


class RowMigrationLock(_RetryingLock):
    """Row lock on a dedicated session (PostgreSQL)."""

    def __init__(self, table: str = LOCK_TABLE, retries: int = 5, backoff: float = 0.5):
        super().__init__(table, retries, backoff)
        self._stack: AsyncExitStack | None = None

    async def _try_acquire(self, handle: DatabaseHandle, session: DatabaseSession) -> None:
        table = quote_ident(self.table)
        stack = AsyncExitStack()
        try:
            lock_session = await stack.enter_async_context(handle.session())
            await lock_session.execute(
                f"CREATE TABLE IF NOT EXISTS {table} (id INTEGER PRIMARY KEY, locked_at TIMESTAMP)"
            )
            await lock_session.execute(f"INSERT INTO {table} (id) VALUES (1) ON CONFLICT (id) DO NOTHING")
            await stack.enter_async_context(lock_session.transaction())
            await lock_session.fetch(f"SELECT id FROM {table} WHERE id = 1 FOR UPDATE NOWAIT")
            await lock_session.execute(f"UPDATE {table} SET locked_at = CURRENT_TIMESTAMP WHERE id = 1")
        except Exception as e:
            await stack.__aexit__(type(e), e, e.__traceback__)
            raise
        self._stack = stack

    async def release(self) -> None:
        if self._stack is not None:
            stack, self._stack = self._stack, None
            await stack.aclose()
        self.held = False


class ExclusiveMigrationLock(_RetryingLock):
    """Exclusive file lock on the work session (SQLite)."""

    def __init__(self, table: str = LOCK_TABLE, retries: int = 5, backoff: float = 0.5):
        super().__init__(table, retries, backoff)
        self._session: DatabaseSession | None = None

    async def _try_acquire(self, handle: DatabaseHandle, session: DatabaseSession) -> None:
        table = quote_ident(self.table)
        await session.execute("PRAGMA locking_mode = EXCLUSIVE")
        try:
            await session.execute(f"CREATE TABLE IF NOT EXISTS {table} (id INTEGER PRIMARY KEY, locked_at TIMESTAMP)")
            await session.execute(f"INSERT OR REPLACE INTO {table} (id, locked_at) VALUES (1, CURRENT_TIMESTAMP)")
        except Exception:
            await session.execute("PRAGMA locking_mode = NORMAL")
            raise
        self._session = session

    async def release(self) -> None:
        if self._session is not None:
            session, self._session = self._session, None
            await session.execute("PRAGMA locking_mode = NORMAL")
            # The file lock is only dropped on the next access after the mode change
            await session.fetch(f"SELECT id FROM {quote_ident(self.table)} WHERE id = 1")
        self.held = False


def default_lock(dialect: "Dialect | str", options: MigrationOptions | None = None) -> MigrationLock:
    """Pick the lock strategy for a target dialect.

    Example:
        >>> type(default_lock("sqlite")).__name__
        'ExclusiveMigrationLock'
    """
    options = options or MigrationOptions()
    kwargs = {"table": options.lock_table, "retries": options.lock_retries, "backoff": options.lock_backoff}
    if get_capabilities(dialect).lock_strategy == "row":
        return RowMigrationLock(**kwargs)
    return ExclusiveMigrationLock(**kwargs)
