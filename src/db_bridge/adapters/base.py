"""Database handle protocol definition.

Defines the ``DatabaseHandle`` and ``DatabaseSession`` Protocols the
discovery, migration and locking code is written against. All query
methods are ``async def`` -- the library is async-first.

Usage:
    from db_bridge.adapters.base import DatabaseHandle

    async def count_users(handle: DatabaseHandle) -> int:
        rows = await handle.fetch("SELECT COUNT(*) AS n FROM users")
        return rows[0]["n"]

    async def copy(handle: DatabaseHandle) -> None:
        async with handle.session() as session:
            async with session.transaction():
                await session.execute("INSERT INTO t (a) VALUES (:a)", [{"a": 1}, {"a": 2}])
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from db_bridge.schema.capabilities import Dialect

Params = dict[str, Any] | list[dict[str, Any]] | None


class DatabaseSession(Protocol):
    """A single pinned connection.

    Statements run outside ``transaction()`` are committed immediately.
    Inside ``transaction()`` they commit together when the block exits
    normally and roll back when it raises.
    """

    dialect: Dialect

    async def fetch(self, sql: str, params: dict[str, Any] | None = None) -> list[dict]:
        """Run a query and return its rows as dicts.

        Args:
            sql: SQL text with ``:name`` placeholders.
            params: Optional dict of named parameters.

        Returns:
            List of dicts, one per row. Empty list if no rows.
        """
        ...

    async def execute(self, sql: str, params: Params = None) -> None:
        """Run a statement that returns no rows.

        Args:
            sql: SQL text with ``:name`` placeholders.
            params: Dict of named parameters, or a list of dicts to run the
                statement once per entry (executemany).
        """
        ...

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Open a transaction (a savepoint when one is already open)."""
        ...


class DatabaseHandle(Protocol):
    """Connection factory plus one-shot query helpers for a single database.

    Pooling is the implementation's concern. ``fetch``/``execute`` on the
    handle itself each run on a fresh connection and commit immediately.
    """

    dialect: Dialect

    async def fetch(self, sql: str, params: dict[str, Any] | None = None) -> list[dict]:
        """Run a query on a fresh connection and return its rows as dicts."""
        ...

    async def execute(self, sql: str, params: Params = None) -> None:
        """Run a statement on a fresh connection inside its own transaction."""
        ...

    def session(self) -> AbstractAsyncContextManager[DatabaseSession]:
        """Open a pinned connection for multi-statement work.

        Example:
            async with handle.session() as session:
                async with session.transaction():
                    await session.execute("DELETE FROM t")
        """
        ...

    async def close(self) -> None:
        """Release every pooled connection."""
        ...
