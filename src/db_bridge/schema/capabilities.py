"""Per-dialect capability table.

Answers "does this engine support X" for every feature the planner and the
executor branch on. Capabilities are looked up once from the ``Dialect``
enum; no call site compares dialect names as strings.

Usage:
    from db_bridge.schema.capabilities import Dialect, get_capabilities

    caps = get_capabilities(Dialect.SQLITE)
    if not caps.supports_alter_add_constraint:
        ...
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict

from db_bridge.errors import UnsupportedDialectError


class Dialect(str, Enum):
    """Reference database engines."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


_DIALECT_ALIASES: dict[str, Dialect] = {
    "sqlite": Dialect.SQLITE,
    "sqlite3": Dialect.SQLITE,
    "sqlite+aiosqlite": Dialect.SQLITE,
    "postgresql": Dialect.POSTGRESQL,
    "postgres": Dialect.POSTGRESQL,
    "pg": Dialect.POSTGRESQL,
    "postgresql+asyncpg": Dialect.POSTGRESQL,
}


def resolve_dialect(name: "str | Dialect") -> Dialect:
    """Resolve a dialect name or alias to a ``Dialect``.

    Args:
        name: Dialect enum member, canonical name, alias, or SQLAlchemy
            driver spelling (``postgresql+asyncpg``).

    Returns:
        The matching ``Dialect``.

    Raises:
        UnsupportedDialectError: If the name is not a known dialect.
    """
    if isinstance(name, Dialect):
        return name
    dialect = _DIALECT_ALIASES.get(str(name).strip().lower())
    if dialect is None:
        raise UnsupportedDialectError(name)
    return dialect


class Capabilities(BaseModel):
    """Feature flags for one dialect."""

    model_config = ConfigDict(frozen=True)

    dialect: Dialect
    supports_views: bool
    supports_materialized_views: bool
    supports_foreign_keys: bool
    supports_deferred_constraints: bool
    supports_partial_indexes: bool
    supports_expression_indexes: bool
    supports_arrays: bool
    supports_json: bool
    supports_native_boolean: bool
    supports_timezone_timestamps: bool
    supports_alter_column_type: bool
    supports_alter_column_default: bool
    supports_alter_add_constraint: bool
    supports_drop_not_null: bool
    supports_drop_cascade: bool
    allows_forward_references: bool
    supports_transactional_ddl: bool
    supports_concurrent_writers: bool
    strict_typing: bool
    lock_strategy: Literal["row", "exclusive"]
    row_identifier: Literal["rowid", "ctid"]


_CAPABILITIES: dict[Dialect, Capabilities] = {
    Dialect.SQLITE: Capabilities(
        dialect=Dialect.SQLITE,
        supports_views=True,
        supports_materialized_views=False,
        supports_foreign_keys=True,
        supports_deferred_constraints=False,
        supports_partial_indexes=True,
        supports_expression_indexes=True,
        supports_arrays=False,
        supports_json=False,
        supports_native_boolean=False,
        supports_timezone_timestamps=False,
        supports_alter_column_type=False,
        supports_alter_column_default=False,
        supports_alter_add_constraint=False,
        supports_drop_not_null=False,
        supports_drop_cascade=False,
        allows_forward_references=True,
        supports_transactional_ddl=True,
        supports_concurrent_writers=False,
        strict_typing=False,
        lock_strategy="exclusive",
        row_identifier="rowid",
    ),
    Dialect.POSTGRESQL: Capabilities(
        dialect=Dialect.POSTGRESQL,
        supports_views=True,
        supports_materialized_views=True,
        supports_foreign_keys=True,
        supports_deferred_constraints=True,
        supports_partial_indexes=True,
        supports_expression_indexes=True,
        supports_arrays=True,
        supports_json=True,
        supports_native_boolean=True,
        supports_timezone_timestamps=True,
        supports_alter_column_type=True,
        supports_alter_column_default=True,
        supports_alter_add_constraint=True,
        supports_drop_not_null=True,
        supports_drop_cascade=True,
        allows_forward_references=False,
        supports_transactional_ddl=True,
        supports_concurrent_writers=True,
        strict_typing=True,
        lock_strategy="row",
        row_identifier="ctid",
    ),
}


def get_capabilities(dialect: "str | Dialect") -> Capabilities:
    """Return the capability descriptor for a dialect.

    Raises:
        UnsupportedDialectError: If the dialect is unknown.
    """
    return _CAPABILITIES[resolve_dialect(dialect)]
