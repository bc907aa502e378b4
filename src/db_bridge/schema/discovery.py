"""Discovery coordinator -- assemble a ``SchemaModel`` from a live database.

Picks the introspector/normalizer pair registered for the handle's dialect,
applies table filters, and builds tables, views and relationships.

Failure policy:

- Unknown dialect -> ``UnsupportedDialectError``.
- Table list or a table's columns unreadable -> ``DiscoveryError``.
- A table's indexes or foreign keys unreadable -> that table gets empty
  indexes/foreign keys and the failure is recorded in
  ``SchemaModel.warnings``; discovery of the other tables continues.

Usage:
    from db_bridge.schema.discovery import DiscoveryConfig, DiscoveryCoordinator

    coordinator = DiscoveryCoordinator()
    schema = await coordinator.discover(
        handle,
        DiscoveryConfig(exclude_tables=["tmp_*"], include_views=True),
    )
    for table in schema.tables:
        print(table.name, [c.name for c in table.columns])
"""

import fnmatch
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from db_bridge.adapters.base import DatabaseHandle, DatabaseSession
from db_bridge.errors import BridgeError, DiscoveryError, UnsupportedDialectError
from db_bridge.schema.capabilities import Dialect, resolve_dialect
from db_bridge.schema.introspector import PostgresIntrospector, SqliteIntrospector
from db_bridge.schema.models import ForeignKey, SchemaModel, Table
from db_bridge.schema.normalizer import Normalizer, PostgresNormalizer, SqliteNormalizer
from db_bridge.schema.relationships import derive_relationships
from db_bridge.schema.types import CanonicalType

logger = logging.getLogger(__name__)

# Bookkeeping tables written by the migration executor
TRACKING_TABLE = "db_bridge_migrations"
LOCK_TABLE = "db_bridge_lock"


class DiscoveryConfig(BaseModel):
    """Table filters and type overrides for one discovery call.

    Attributes:
        exclude_tables: Glob patterns of tables to skip.
        include_tables: Glob patterns; when non-empty only matching tables
            are discovered.
        include_views: Also return views and materialized views.
        custom_type_mappings: Native type name -> canonical type overrides,
            matched case-insensitively before the built-in mapping.
        schema_name: Namespace to read on engines that have one.
        exclude_internal: Hide the migration tracking and lock tables.
        internal_tables: Names hidden when ``exclude_internal`` is set.
    """

    exclude_tables: list[str] = Field(default_factory=list)
    include_tables: list[str] = Field(default_factory=list)
    include_views: bool = False
    custom_type_mappings: dict[str, CanonicalType] = Field(default_factory=dict)
    schema_name: str = "public"
    exclude_internal: bool = True
    internal_tables: list[str] = Field(default_factory=lambda: [TRACKING_TABLE, LOCK_TABLE])

    def accepts(self, table_name: str) -> bool:
        """True if the table passes the include/exclude filters."""
        if self.exclude_internal and table_name in self.internal_tables:
            return False
        if self.include_tables and not any(
            fnmatch.fnmatchcase(table_name, pattern) for pattern in self.include_tables
        ):
            return False
        return not any(fnmatch.fnmatchcase(table_name, pattern) for pattern in self.exclude_tables)


@dataclass(frozen=True)
class DialectSupport:
    """Introspector plus normalizer class registered for one dialect."""

    introspector: Any
    normalizer_class: type[Normalizer]


def default_registry() -> dict[Dialect, DialectSupport]:
    """Registry with the two reference dialects."""
    return {
        Dialect.SQLITE: DialectSupport(SqliteIntrospector(), SqliteNormalizer),
        Dialect.POSTGRESQL: DialectSupport(PostgresIntrospector(), PostgresNormalizer),
    }


class DiscoveryCoordinator:
    """Builds ``SchemaModel`` values from live database handles.

    Stateless between calls; concurrent ``discover`` calls are safe.

    Args:
        registry: Dialect -> ``DialectSupport`` mapping. Defaults to
            ``default_registry()``.
    """

    def __init__(self, registry: dict[Dialect, DialectSupport] | None = None):
        self._registry = registry if registry is not None else default_registry()

    def support_for(self, dialect: "Dialect | str") -> DialectSupport:
        """Return the registered pair for a dialect.

        Raises:
            UnsupportedDialectError: If nothing is registered for it.
        """
        resolved = resolve_dialect(dialect)
        if resolved not in self._registry:
            raise UnsupportedDialectError(dialect)
        return self._registry[resolved]

    async def discover(
        self,
        handle: DatabaseHandle,
        config: DiscoveryConfig | None = None,
    ) -> SchemaModel:
        """Discover the schema behind ``handle``.

        Args:
            handle: Live database handle reporting its ``dialect``.
            config: Filters and type overrides. Defaults to
                ``DiscoveryConfig()``.

        Returns:
            A new, immutable ``SchemaModel``.

        Raises:
            UnsupportedDialectError: If the handle's dialect is not registered.
            DiscoveryError: If the table list or any table's columns cannot
                be read.
        """
        config = config or DiscoveryConfig()
        dialect = resolve_dialect(getattr(handle, "dialect", None) or "")
        support = self.support_for(dialect)
        introspector = support.introspector
        normalizer = support.normalizer_class(config.custom_type_mappings)
        schema_name = config.schema_name if dialect == Dialect.POSTGRESQL else None

        warnings: list[str] = []
        tables: list[Table] = []

        async with handle.session() as session:
            try:
                raw_tables = await introspector.list_tables(session, schema_name)
            except Exception as e:
                raise DiscoveryError(f"Failed to list tables: {e}") from e

            for raw in raw_tables:
                is_view = raw["kind"] in ("view", "materialized_view")
                if is_view and not config.include_views:
                    continue
                if not config.accepts(raw["name"]):
                    continue
                table = await self._discover_table(
                    session, introspector, normalizer, raw, schema_name, warnings
                )
                tables.append(table)

            tables = await self._resolve_implicit_references(
                session, introspector, tables, schema_name, warnings
            )

        logger.info(
            f"Discovered {len(tables)} tables from {dialect.value} "
            f"({len(warnings)} warnings)"
        )
        return SchemaModel(
            dialect=dialect,
            tables=tuple(tables),
            relationships=tuple(derive_relationships(tables)),
            warnings=tuple(warnings),
        )

    async def _discover_table(
        self,
        session: DatabaseSession,
        introspector: Any,
        normalizer: Normalizer,
        raw: dict,
        schema_name: str | None,
        warnings: list[str],
    ) -> Table:
        name = raw["name"]
        is_view = raw["kind"] in ("view", "materialized_view")

        try:
            column_rows = await introspector.get_columns(session, name, schema_name)
            primary_key = [] if is_view else await introspector.get_primary_key(session, name, schema_name)
        except BridgeError:
            raise
        except Exception as e:
            raise DiscoveryError(f"Failed to read columns of {name}: {e}", table=name) from e

        columns = []
        for row in column_rows:
            column, column_warnings = normalizer.normalize_column(
                name, row, primary_key, raw.get("sql")
            )
            columns.append(column)
            warnings.extend(column_warnings)

        indexes = []
        foreign_keys = []
        if not is_view:
            try:
                raw_indexes = await introspector.get_indexes(session, name, schema_name)
                indexes = [normalizer.normalize_index(name, r) for r in raw_indexes]
            except Exception as e:
                message = f"{name}: indexes unavailable ({e})"
                logger.warning(message)
                warnings.append(message)
                indexes = []
            try:
                raw_fks = await introspector.get_foreign_keys(session, name, schema_name)
                foreign_keys = [normalizer.normalize_foreign_key(name, r) for r in raw_fks]
            except Exception as e:
                message = f"{name}: foreign keys unavailable ({e})"
                logger.warning(message)
                warnings.append(message)
                foreign_keys = []

        return Table(
            name=name,
            schema_name=schema_name,
            columns=tuple(columns),
            indexes=tuple(indexes),
            foreign_keys=tuple(foreign_keys),
            primary_key=tuple(primary_key),
            is_view=is_view,
            view_definition=raw.get("definition"),
            materialized=raw["kind"] == "materialized_view",
            populated=raw.get("populated"),
        )

    async def _resolve_implicit_references(
        self,
        session: DatabaseSession,
        introspector: Any,
        tables: list[Table],
        schema_name: str | None,
        warnings: list[str],
    ) -> list[Table]:
        """Fill in referenced columns omitted from ``REFERENCES parent`` clauses."""
        known_pks = {t.name: t.primary_key for t in tables}
        resolved: list[Table] = []

        for table in tables:
            if all(fk.referenced_columns for fk in table.foreign_keys):
                resolved.append(table)
                continue

            fks: list[ForeignKey] = []
            for fk in table.foreign_keys:
                if fk.referenced_columns:
                    fks.append(fk)
                    continue
                pk = known_pks.get(fk.referenced_table)
                if pk is None:
                    try:
                        pk = tuple(
                            await introspector.get_primary_key(session, fk.referenced_table, schema_name)
                        )
                    except Exception as e:
                        logger.warning(f"Primary key lookup failed for {fk.referenced_table}: {e}")
                        pk = ()
                    known_pks[fk.referenced_table] = pk
                if len(pk) != len(fk.columns):
                    warnings.append(
                        f"{table.name}: foreign key {fk.name} references "
                        f"{fk.referenced_table} without resolvable columns"
                    )
                    fks.append(fk)
                    continue
                fks.append(fk.model_copy(update={"referenced_columns": tuple(pk)}))
            resolved.append(table.model_copy(update={"foreign_keys": tuple(fks)}))

        return resolved
