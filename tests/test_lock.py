"""Tests for the migration lock strategies."""

import asyncio

import pytest

from db_bridge.errors import LockAcquisitionError
from db_bridge.migration.lock import ExclusiveMigrationLock, RowMigrationLock, default_lock
from db_bridge.migration.models import MigrationOptions

from fakes import FakeHandle


@pytest.fixture
def sleeps(monkeypatch):
    """Record backoff delays instead of waiting."""
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return delays


# ==================================================================
# Test Group 1: Strategy selection
# ==================================================================


class TestDefaultLock:
    """Verify the lock strategy follows the target's capabilities."""

    def test_sqlite_uses_exclusive_lock(self) -> None:
        assert isinstance(default_lock("sqlite"), ExclusiveMigrationLock)

    def test_postgres_uses_row_lock(self) -> None:
        assert isinstance(default_lock("postgres"), RowMigrationLock)

    def test_options_applied(self) -> None:
        options = MigrationOptions(lock_retries=2, lock_backoff=0.1, lock_table="my_lock")
        lock = default_lock("postgresql", options)
        assert (lock.retries, lock.backoff, lock.table) == (2, 0.1, "my_lock")


# ==================================================================
# Test Group 2: SQLite exclusive lock
# ==================================================================


class TestExclusiveLock:
    """Verify the SQLite lock statements and retry loop."""

    async def test_acquire_and_release(self) -> None:
        handle = FakeHandle()
        lock = ExclusiveMigrationLock()
        async with handle.session() as session:
            await lock.acquire(handle, session)
            assert lock.held
            await lock.release()
        assert not lock.held
        assert handle.executed_sql == [
            "PRAGMA locking_mode = EXCLUSIVE",
            "CREATE TABLE IF NOT EXISTS db_bridge_lock (id INTEGER PRIMARY KEY, locked_at TIMESTAMP)",
            "INSERT OR REPLACE INTO db_bridge_lock (id, locked_at) VALUES (1, CURRENT_TIMESTAMP)",
            "PRAGMA locking_mode = NORMAL",
        ]
        assert handle.fetched[-1][0] == "SELECT id FROM db_bridge_lock WHERE id = 1"

    async def test_busy_database_retried_then_fails(self, sleeps) -> None:
        handle = FakeHandle(fail_on=("INSERT OR REPLACE",))
        lock = ExclusiveMigrationLock(retries=4, backoff=0.5)
        async with handle.session() as session:
            with pytest.raises(LockAcquisitionError, match="after 4 attempts"):
                await lock.acquire(handle, session)
        assert sleeps == [0.5, 1.0, 2.0]
        assert not lock.held
        # Locking mode is restored after every failed attempt
        assert handle.executed_sql.count("PRAGMA locking_mode = NORMAL") == 4

    async def test_release_without_acquire(self) -> None:
        handle = FakeHandle()
        await ExclusiveMigrationLock().release()
        assert handle.executed == []


# ==================================================================
# Test Group 3: PostgreSQL row lock
# ==================================================================


class TestRowLock:
    """Verify the row lock holds a transaction on its own session."""

    async def test_lock_held_until_release(self) -> None:
        handle = FakeHandle("postgresql")
        lock = RowMigrationLock()
        async with handle.session() as session:
            await lock.acquire(handle, session)
            assert handle.sessions == 2
            assert any("FOR UPDATE NOWAIT" in sql for sql, _ in handle.fetched)
            # The lock row update stays uncommitted while the lock is held
            assert not any(s.startswith("UPDATE") for s in handle.committed)

            await lock.release()

        assert handle.committed[-1] == "UPDATE db_bridge_lock SET locked_at = CURRENT_TIMESTAMP WHERE id = 1"
        assert handle.transactions == 1
        assert not lock.held

    async def test_contention_rolls_back_each_attempt(self, sleeps) -> None:
        handle = FakeHandle("postgresql", fail_on=("UPDATE db_bridge_lock",))
        lock = RowMigrationLock(retries=2, backoff=0)
        async with handle.session() as session:
            with pytest.raises(LockAcquisitionError) as exc_info:
                await lock.acquire(handle, session)
        assert "another migration is probably running" in str(exc_info.value)
        assert handle.rollbacks == 2
        assert sleeps == [0]

    async def test_succeeds_after_retry(self, sleeps) -> None:
        attempts = []
        handle = FakeHandle("postgresql")
        original = handle.respond

        def busy_once(sql, params):
            if "NOWAIT" in sql:
                attempts.append(sql)
                if len(attempts) == 1:
                    raise RuntimeError("could not obtain lock on row")
            return original(sql, params)

        handle.respond = busy_once
        lock = RowMigrationLock(retries=3, backoff=0.25)
        async with handle.session() as session:
            await lock.acquire(handle, session)
            await lock.release()
        assert len(attempts) == 2
        assert sleeps == [0.25]
