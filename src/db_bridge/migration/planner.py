"""Migration planner -- turn a schema comparison into an ordered plan.

Pure sync logic: no I/O. The planner reads the ``ComparisonResult`` (which
carries both schema models), consults the target's capability table for
every construct it emits, and returns a ``MigrationPlan`` the executor can
run or render as SQL.

Ordering rules:

- Tables are created parents first (Kahn's algorithm over foreign keys,
  ties broken by name). A foreign-key cycle is broken by moving the
  offending constraint to an ``ALTER TABLE ... ADD CONSTRAINT`` run after
  the data copy, or by leaving it inline where the target accepts forward
  references. Self-referencing keys get the same treatment, since a row may
  point at a key copied in a later batch.
- Tables are dropped children first, and only with ``drop_tables``.
- Data copies follow creation order.

Usage:
    from db_bridge.migration.planner import MigrationPlanner
    from db_bridge.schema.capabilities import get_capabilities

    planner = MigrationPlanner(get_capabilities("postgresql"), options)
    plan = planner.plan(comparison)
    print(plan.to_sql())
"""

import fnmatch
import heapq
import logging
from collections import defaultdict

from db_bridge.advisor.index_advisor import IndexAnalysis, IndexRecommendation, find_redundant_indexes
from db_bridge.errors import PlanningError
from db_bridge.migration.ddl import SqlRenderer
from db_bridge.migration.models import (
    DataCopyTask,
    MigrationOptions,
    MigrationPlan,
    Statement,
    TableMigration,
)
from db_bridge.schema.capabilities import Capabilities, Dialect
from db_bridge.schema.models import (
    Column,
    ComparisonResult,
    Difference,
    DifferenceKind,
    ForeignKey,
    Index,
    SchemaModel,
    Severity,
    Table,
)
from db_bridge.schema.normalizer import strip_casts
from db_bridge.schema.types import CanonicalType

logger = logging.getLogger(__name__)

K = DifferenceKind
T = CanonicalType

# Result column carrying SQLite's rowid during keyless copies
ROWID_ALIAS = "_db_bridge_rowid"


def topological_order(dependencies: dict[str, set[str]]) -> tuple[list[str], list[str]]:
    """Order tables parents first with Kahn's algorithm.

    Args:
        dependencies: Table -> tables it references. References to tables
            outside the mapping are ignored.

    Returns:
        Tuple of (order, cycle_breaks). ``cycle_breaks`` lists the tables
        that were emitted while some of their references were still
        pending, in emission order.

    Example:
        >>> topological_order({"orders": {"users"}, "users": set()})
        (['users', 'orders'], [])
    """
    pending = {name: set(deps) & set(dependencies) - {name} for name, deps in dependencies.items()}
    children: dict[str, set[str]] = defaultdict(set)
    for name, deps in pending.items():
        for dep in deps:
            children[dep].add(name)

    ready = [name for name, deps in pending.items() if not deps]
    heapq.heapify(ready)
    order: list[str] = []
    breaks: list[str] = []
    emitted: set[str] = set()

    while len(order) < len(pending):
        if not ready:
            # Only cycles remain: emit the smallest name and defer its references
            name = min(n for n in pending if n not in emitted)
            breaks.append(name)
        else:
            name = heapq.heappop(ready)
            if name in emitted:
                continue
        emitted.add(name)
        order.append(name)
        for child in sorted(children[name]):
            pending[child].discard(name)
            if not pending[child] and child not in emitted:
                heapq.heappush(ready, child)
    return order, breaks


class MigrationPlanner:
    """Build a ``MigrationPlan`` for one target.

    Args:
        capabilities: Capability descriptor of the target dialect.
        options: Migration options (filters, drop guard, batch size, ...).

    Raises:
        PlanningError: From ``plan()``, for a construct with no fallback on
            the target when ``continue_on_error`` is off.
    """

    def __init__(self, capabilities: Capabilities, options: MigrationOptions | None = None):
        self.capabilities = capabilities
        self.options = options or MigrationOptions()
        self.target = capabilities.dialect

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def accepts(self, name: str) -> bool:
        """True if the table passes the include/exclude options."""
        if name in (self.options.tracking_table, self.options.lock_table):
            return False
        if self.options.include_tables and not any(
            fnmatch.fnmatchcase(name, p) for p in self.options.include_tables
        ):
            return False
        return not any(fnmatch.fnmatchcase(name, p) for p in self.options.exclude_tables)

    def _unsupported(self, plan: MigrationPlan, message: str, table: str | None = None) -> None:
        """Skip a construct with no fallback, or fail the plan."""
        if not self.options.continue_on_error:
            raise PlanningError(message, table=table)
        plan.warnings.append(f"{message}; skipped")

    # ------------------------------------------------------------------
    # Capability fallbacks
    # ------------------------------------------------------------------

    def _adapt_column(self, table: str, column: Column, source: Dialect, warnings: list[str]) -> Column:
        caps = self.capabilities
        updates: dict = {}
        where = f"{table}.{column.name}"

        if column.type == T.ARRAY and not caps.supports_arrays:
            updates.update(type=T.TEXT, element_type=None)
            warnings.append(f"Column '{where}': array stored as JSON text")
        elif column.type == T.JSON and not caps.supports_json:
            updates.update(type=T.TEXT)
            warnings.append(f"Column '{where}': json stored as text")
        elif column.type == T.TIMESTAMPTZ and not caps.supports_timezone_timestamps:
            updates.update(type=T.TIMESTAMP)
            warnings.append(f"Column '{where}': timestamptz stored as timestamp without time zone")
        elif column.type == T.INTERVAL and not caps.strict_typing:
            updates.update(type=T.TEXT)
            warnings.append(f"Column '{where}': interval stored as text")

        default = column.default
        if default is not None and default.kind == "expression" and not default.portable and default.dialect != self.target:
            updates["default"] = None
            warnings.append(
                f"Column '{where}': default {default.expression} is specific to "
                f"{default.dialect.value if default.dialect else source.value}; dropped"
            )

        if updates and source != self.target:
            updates["native_type"] = ""
        return column.model_copy(update=updates) if updates else column

    def _adapt_index(self, plan: MigrationPlan, table: Table, index: Index, source: Dialect) -> Index | None:
        caps = self.capabilities
        if index.predicate and not caps.supports_partial_indexes:
            plan.warnings.append(f"Partial index {index.name} on {table.name}: not supported on {self.target.value}; skipped")
            return None
        if index.expressions and not caps.supports_expression_indexes:
            self._unsupported(plan, f"Expression index {index.name} on {table.name} cannot be built on {self.target.value}", table.name)
            return None
        if not index.expressions and any(table.get_column(c) is None for c in index.columns):
            plan.warnings.append(f"Index {index.name} on {table.name} references unknown columns; skipped")
            return None

        updates: dict = {}
        if source != self.target:
            if index.expressions:
                updates["columns"] = tuple(strip_casts(c) for c in index.columns)
            if index.predicate:
                updates["predicate"] = strip_casts(index.predicate)
        if index.method and self.target != Dialect.POSTGRESQL:
            plan.warnings.append(f"Index {index.name} on {table.name}: {index.method} method not available; default used")
            updates["method"] = None
        return index.model_copy(update=updates) if updates else index

    def _adapt_foreign_key(self, plan: MigrationPlan, table: str, fk: ForeignKey) -> ForeignKey | None:
        if not self.capabilities.supports_foreign_keys:
            plan.warnings.append(f"Foreign key {fk.name} on {table}: not supported; skipped")
            return None
        if fk.deferrable and not self.capabilities.supports_deferred_constraints:
            plan.warnings.append(f"Foreign key {fk.name} on {table}: deferrable constraint created as immediate")
            return fk.model_copy(update={"deferrable": False})
        return fk

    def _adapt_table(self, plan: MigrationPlan, table: Table, source: Dialect) -> Table:
        columns = tuple(self._adapt_column(table.name, c, source, plan.warnings) for c in table.columns)
        adapted = table.model_copy(update={"columns": columns})
        indexes = tuple(
            i for i in (self._adapt_index(plan, adapted, index, source) for index in table.indexes) if i is not None
        )
        fks = tuple(
            fk for fk in (self._adapt_foreign_key(plan, table.name, f) for f in table.foreign_keys) if fk is not None
        )
        return adapted.model_copy(update={"indexes": indexes, "foreign_keys": fks})

    # ------------------------------------------------------------------
    # Table creation
    # ------------------------------------------------------------------

    def _create_migration(
        self,
        plan: MigrationPlan,
        renderer: SqlRenderer,
        table: Table,
        pending: set[str],
        known_tables: set[str],
    ) -> TableMigration:
        inline: list[ForeignKey] = []
        for fk in table.foreign_keys:
            if fk.referenced_table not in known_tables:
                plan.warnings.append(
                    f"Foreign key {fk.name} on {table.name} references '{fk.referenced_table}', "
                    "which is not being migrated; skipped"
                )
                continue
            if fk.referenced_table == table.name and self.capabilities.supports_alter_add_constraint:
                # Rows may reference keys copied in a later batch
                plan.enable_constraints.append(
                    Statement(renderer.add_foreign_key(table.name, fk), kind="constraint", table=table.name)
                )
                continue
            if fk.referenced_table in pending:
                if self.capabilities.supports_alter_add_constraint:
                    plan.enable_constraints.append(
                        Statement(renderer.add_foreign_key(table.name, fk), kind="constraint", table=table.name)
                    )
                    plan.warnings.append(
                        f"Foreign key cycle: {table.name} -> {fk.referenced_table} added after table creation"
                    )
                    continue
                plan.warnings.append(
                    f"Foreign key cycle: {table.name} -> {fk.referenced_table} declared as a forward reference"
                )
            inline.append(fk)

        migration = TableMigration(table=table.name, action="create", dependencies=table.dependencies)
        migration.ddl.append(
            Statement(renderer.create_table(table, foreign_keys=inline), kind="create_table", table=table.name)
        )
        for index in table.indexes:
            migration.ddl.append(Statement(renderer.create_index(table.name, index), kind="index", table=table.name))
        return migration

    def _suspend_self_references(self, plan: MigrationPlan, renderer: SqlRenderer, table: Table) -> None:
        """Drop an existing table's self-referencing keys for the copy, add them back after."""
        if not self.capabilities.supports_alter_add_constraint:
            return
        for fk in table.foreign_keys:
            if fk.referenced_table != table.name:
                continue
            plan.disable_constraints.append(
                Statement(renderer.drop_constraint(table.name, fk), kind="drop_constraint", table=table.name)
            )
            plan.enable_constraints.append(
                Statement(renderer.add_foreign_key(table.name, fk), kind="constraint", table=table.name)
            )

    # ------------------------------------------------------------------
    # Table alteration
    # ------------------------------------------------------------------

    def _alter_statements(
        self,
        plan: MigrationPlan,
        renderer: SqlRenderer,
        source_table: Table,
        differences: list[Difference],
        source: Dialect,
        retyped: set[str],
    ) -> list[Statement]:
        caps = self.capabilities
        name = source_table.name
        same_dialect = source == self.target
        statements: list[Statement] = []

        for diff in differences:
            column = None
            notes: list[str] = []
            if diff.column and diff.kind != K.COLUMN_REMOVED:
                column = self._adapt_column(name, source_table.get_column(diff.column), source, notes)

            if diff.kind == K.COLUMN_ADDED:
                plan.warnings.extend(notes)
                statements.append(self._add_column(plan, renderer, name, column))
                retyped.add(column.name)

            elif diff.kind == K.COLUMN_TYPE_CHANGED:
                if not (same_dialect or diff.severity == Severity.BREAKING):
                    continue
                if not same_dialect and diff.before is not None and column.type == diff.before.type:
                    continue  # Target already holds the fallback type
                if caps.supports_alter_column_type:
                    statements.append(Statement(renderer.alter_column_type(name, column), kind="alter", table=name))
                    retyped.add(column.name)
                else:
                    plan.warnings.append(f"{diff.message}; {self.target.value} cannot alter column types")

            elif diff.kind == K.COLUMN_NULLABILITY_CHANGED:
                if diff.severity != Severity.BREAKING:
                    continue
                if caps.supports_drop_not_null:
                    statements.append(Statement(renderer.drop_not_null(name, column.name), kind="alter", table=name))
                else:
                    plan.warnings.append(f"{diff.message}; {self.target.value} cannot drop NOT NULL")

            elif diff.kind == K.COLUMN_DEFAULT_CHANGED:
                original = source_table.get_column(diff.column).default
                if original is not None and column.default is None:
                    plan.warnings.extend(notes)
                    continue
                if caps.supports_alter_column_default:
                    statements.append(Statement(renderer.set_default(name, column), kind="alter", table=name))
                else:
                    plan.warnings.append(f"{diff.message}; {self.target.value} cannot alter column defaults")

            elif diff.kind == K.COLUMN_REMOVED:
                plan.warnings.append(f"{diff.message}; column kept (columns are never dropped)")

            elif diff.kind == K.INDEX_ADDED:
                index = self._adapt_index(plan, source_table, diff.after, source)
                if index is not None:
                    statements.append(Statement(renderer.create_index(name, index), kind="index", table=name))

            elif diff.kind == K.INDEX_REMOVED:
                plan.warnings.append(f"{diff.message}; index kept")

            elif diff.kind == K.CONSTRAINT_ADDED:
                if not isinstance(diff.after, ForeignKey):
                    plan.warnings.append(f"{diff.message}; primary key changes are not applied")
                    continue
                fk = self._adapt_foreign_key(plan, name, diff.after)
                if fk is None:
                    continue
                if caps.supports_alter_add_constraint:
                    plan.post_statements.append(
                        Statement(renderer.add_foreign_key(name, fk), kind="constraint", table=name)
                    )
                else:
                    plan.warnings.append(f"{diff.message}; {self.target.value} cannot add constraints to existing tables")

            elif diff.kind == K.CONSTRAINT_REMOVED:
                plan.warnings.append(f"{diff.message}; constraint kept")

        return statements

    def _add_column(self, plan: MigrationPlan, renderer: SqlRenderer, table: str, column: Column) -> Statement:
        where = f"{table}.{column.name}"
        if column.primary_key:
            plan.warnings.append(f"Column '{where}': primary key cannot be added to an existing table; added as plain column")
            column = column.model_copy(update={"primary_key": False})
        if (
            column.default is not None
            and column.default.kind == "expression"
            and self.target == Dialect.SQLITE
        ):
            plan.warnings.append(f"Column '{where}': SQLite cannot add a column with default {column.default.expression}; default dropped")
            column = column.model_copy(update={"default": None})

        has_default = column.default is not None and column.default.kind != "null"
        keep_not_null = not column.nullable and has_default
        if not column.nullable and not has_default and not column.auto_increment:
            plan.warnings.append(f"Column '{where}': added as nullable (NOT NULL without a default)")
        return Statement(renderer.add_column(table, column, keep_not_null=keep_not_null), kind="add_column", table=table)

    # ------------------------------------------------------------------
    # Drops
    # ------------------------------------------------------------------

    def _drop_statements(self, plan: MigrationPlan, renderer: SqlRenderer, target: SchemaModel, names: list[str]) -> None:
        tables = {name: target.get_table(name) for name in names}
        views = sorted(n for n, t in tables.items() if t.is_view)
        order, _ = topological_order({n: t.dependencies for n, t in tables.items() if not t.is_view})
        for name in views + list(reversed(order)):
            plan.pre_statements.append(Statement(renderer.drop_table(tables[name]), kind="drop", table=name))
            plan.dropped_tables.append(name)

    # ------------------------------------------------------------------
    # Data copy
    # ------------------------------------------------------------------

    def _copy_task(
        self,
        source_renderer: SqlRenderer,
        target_renderer: SqlRenderer,
        source_table: Table,
        target_columns: list[Column],
    ) -> DataCopyTask:
        columns = [c.name for c in target_columns]
        keys = list(source_table.primary_key)
        key_alias = None
        name = source_table.name

        if keys:
            strategy = "keyset"
            selected = columns + [k for k in keys if k not in columns]
            first = source_renderer.select_keyset(name, selected, keys, after=False)
            following = source_renderer.select_keyset(name, selected, keys, after=True)
        elif source_renderer.capabilities.row_identifier == "rowid":
            strategy = "rowid"
            key_alias = ROWID_ALIAS
            first = source_renderer.select_rowid(name, columns, key_alias, after=False)
            following = source_renderer.select_rowid(name, columns, key_alias, after=True)
        else:
            strategy = "offset"
            first = source_renderer.select_offset(name, columns, after=False)
            following = source_renderer.select_offset(name, columns, after=True)

        return DataCopyTask(
            source_table=name,
            target_table=name,
            columns=columns,
            target_columns=target_columns,
            key_columns=keys,
            strategy=strategy,
            batch_size=self.options.batch_size,
            count_sql=source_renderer.count(name),
            first_batch_sql=first,
            next_batch_sql=following,
            insert_sql=target_renderer.insert(name, target_columns),
            key_alias=key_alias,
            target_count_sql=target_renderer.count(name),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan(
        self,
        comparison: ComparisonResult,
        recommendations: "IndexAnalysis | list[IndexRecommendation] | None" = None,
    ) -> MigrationPlan:
        """Build the migration plan for a comparison.

        Args:
            comparison: Result of ``compare_schemas(source, target)``; must
                carry both schema models.
            recommendations: Optional index suggestions. Recorded on the
                plan; turned into post statements when
                ``apply_recommendations`` is set.

        Returns:
            ``MigrationPlan`` ready for ``MigrationExecutor``.

        Raises:
            PlanningError: If the comparison has no schema models, or a
                construct has no fallback and ``continue_on_error`` is off.
        """
        if comparison.source is None or comparison.target is None:
            raise PlanningError("Comparison result carries no schema models")

        source_schema = comparison.source
        target_schema = comparison.target
        source = source_schema.dialect
        same_dialect = source == self.target
        plan = MigrationPlan(source_dialect=source, target_dialect=self.target, dry_run=self.options.dry_run)
        plan.warnings.extend(source_schema.warnings)
        renderer = SqlRenderer(self.target, preserve_native_types=same_dialect)
        source_renderer = SqlRenderer(source)

        by_table: dict[str, list[Difference]] = defaultdict(list)
        for diff in comparison.differences:
            if self.accepts(diff.table):
                by_table[diff.table].append(diff)

        added = sorted(n for n, diffs in by_table.items() if any(d.kind == K.TABLE_ADDED for d in diffs))
        removed = sorted(n for n, diffs in by_table.items() if any(d.kind == K.TABLE_REMOVED for d in diffs))

        # Drops
        if removed and self.options.drop_tables:
            self._drop_statements(plan, renderer, target_schema, removed)
        elif removed:
            plan.warnings.extend(
                f"'{name}' exists only in the target; left in place (drop_tables is off)" for name in removed
            )

        # Views have no portable definition across dialects
        created_tables: dict[str, Table] = {}
        views: list[Table] = []
        for name in added:
            table = source_schema.get_table(name)
            if not table.is_view:
                created_tables[name] = self._adapt_table(plan, table, source)
            elif table.materialized and not self.capabilities.supports_materialized_views:
                self._unsupported(plan, f"Materialized view '{name}' has no equivalent on {self.target.value}", name)
            elif not same_dialect:
                self._unsupported(plan, f"View '{name}' cannot be translated from {source.value} to {self.target.value}", name)
            else:
                views.append(table)

        # Existing tables: alterations and optional data copy
        existing = [
            t
            for t in source_schema.tables
            if not t.is_view and self.accepts(t.name) and t.name not in created_tables
            and target_schema.get_table(t.name) is not None
            and not target_schema.get_table(t.name).is_view
        ]
        altered: dict[str, list[Statement]] = {}
        retyped: dict[str, set[str]] = defaultdict(set)
        for table in existing:
            details = [d for d in by_table.get(table.name, []) if d.kind != K.TABLE_MODIFIED]
            if details:
                altered[table.name] = self._alter_statements(
                    plan, renderer, table, details, source, retyped[table.name]
                )

        copied_existing = {t.name for t in existing} if self.options.copy_existing_tables else set()
        planned = set(created_tables) | set(altered) | copied_existing
        source_tables = {t.name: t for t in source_schema.tables}
        order, _ = topological_order({n: source_tables[n].dependencies for n in planned})

        known_tables = set(created_tables) | {t.name for t in target_schema.tables if not t.is_view}
        created: set[str] = set()
        for name in order:
            table = created_tables.get(name)
            if table is not None:
                # Non-empty only for tables emitted to break a cycle
                pending = {d for d in table.dependencies if d in created_tables and d not in created}
                migration = self._create_migration(plan, renderer, table, pending, known_tables)
                created.add(name)
                target_columns = list(table.columns)
            else:
                migration = TableMigration(
                    table=name,
                    action="alter" if altered.get(name) else "copy",
                    ddl=altered.get(name, []),
                    dependencies=source_tables[name].dependencies,
                )
                target_table = target_schema.get_table(name)
                target_columns = []
                for column in source_tables[name].columns:
                    current = target_table.get_column(column.name)
                    if current is None or column.name in retyped[name]:
                        target_columns.append(self._adapt_column(name, column, source, []))
                    else:
                        target_columns.append(current)

            copy_wanted = not self.options.schema_only and (name in created_tables or name in copied_existing)
            if copy_wanted:
                migration.copy = self._copy_task(source_renderer, renderer, source_tables[name], target_columns)
                if table is None:
                    self._suspend_self_references(plan, renderer, target_schema.get_table(name))
                if self.target == Dialect.POSTGRESQL:
                    for column in target_columns:
                        if column.auto_increment and column.type in (T.SMALLINT, T.INTEGER, T.BIGINT):
                            plan.post_statements.append(
                                Statement(renderer.reset_sequence(name, column.name), kind="sequence", table=name)
                            )
            if migration.ddl or migration.copy:
                plan.migrations.append(migration)

        for view in sorted(views, key=lambda v: v.name):
            plan.migrations.append(
                TableMigration(
                    table=view.name,
                    action="view",
                    ddl=[Statement(renderer.create_view(view), kind="create_view", table=view.name)],
                )
            )

        # Index recommendations and redundancy findings
        if isinstance(recommendations, IndexAnalysis):
            recommendations = recommendations.recommendations
        plan.index_recommendations = list(recommendations or [])
        if self.options.apply_recommendations:
            final_tables = {t.name for t in source_schema.tables if self.accepts(t.name)} & (
                set(created_tables) | {t.name for t in target_schema.tables}
            )
            for rec in plan.index_recommendations:
                if rec.table in final_tables:
                    plan.post_statements.append(Statement(rec.sql, kind="index", table=rec.table))
        plan.optimizations = find_redundant_indexes(
            t for t in source_schema.tables if not t.is_view and self.accepts(t.name)
        )

        plan.estimated_impact = self._estimate_impact(plan)
        logger.info(
            f"Planned {len(plan.migrations)} table migration(s) for {self.target.value}: "
            f"{len(plan.create_order)} created, {len(plan.dropped_tables)} dropped, "
            f"{len(plan.warnings)} warning(s)"
        )
        return plan

    @staticmethod
    def _estimate_impact(plan: MigrationPlan) -> str:
        statements = plan.ddl_statements
        if plan.dropped_tables or any(s.kind == "alter" for s in statements):
            return "high"
        if plan.create_order or any(m.copy for m in plan.migrations):
            return "medium"
        if statements:
            return "low"
        return "none"
