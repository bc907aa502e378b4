"""Database handles package.

Provides the ``DatabaseHandle`` / ``DatabaseSession`` Protocols and the
SQLAlchemy async-engine implementation used for both PostgreSQL
(``asyncpg``) and SQLite (``aiosqlite``).

Usage:
    from db_bridge.adapters import AsyncEngineHandle, DatabaseHandle
"""

from db_bridge.adapters.async_engine import AsyncEngineHandle, AsyncEngineSession, normalize_url
from db_bridge.adapters.base import DatabaseHandle, DatabaseSession

__all__ = [
    "DatabaseHandle",
    "DatabaseSession",
    "AsyncEngineHandle",
    "AsyncEngineSession",
    "normalize_url",
]
