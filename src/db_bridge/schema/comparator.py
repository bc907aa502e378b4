"""Schema comparison -- structural diff between two schema models.

Pure logic, no I/O: the same two ``SchemaModel`` values always produce the
same ``Difference`` list. Differences describe what has to change in the
*target* for it to match the *source*.

Usage:
    from db_bridge.schema.comparator import compare_schemas

    result = compare_schemas(source_schema, target_schema)
    if not result.compatible:
        print(result.format_report())
"""

from db_bridge.schema.models import (
    Column,
    ColumnDefault,
    ComparisonResult,
    Difference,
    DifferenceKind,
    ForeignKey,
    Index,
    ReferentialAction,
    SchemaModel,
    Severity,
    Table,
)
from db_bridge.schema.types import is_compatible

K = DifferenceKind


# ------------------------------------------------------------------
# Comparison keys
# ------------------------------------------------------------------


def _type_signature(column: Column) -> tuple:
    return (column.type, column.element_type, column.max_length, column.precision, column.scale)


def _describe_type(column: Column) -> str:
    name = column.type.value
    if column.element_type:
        name = f"{column.element_type.value}[]"
    if column.max_length:
        name = f"{name}({column.max_length})"
    elif column.precision is not None:
        name = f"{name}({column.precision},{column.scale or 0})"
    return name


def _default_key(default: ColumnDefault | None) -> tuple | None:
    if default is None or default.kind == "null":
        return None
    return (default.kind, default.expression)


def index_key(index: Index) -> tuple:
    """Identity of an index for set comparison; the name is not part of it."""
    return (tuple(index.columns), index.unique, index.predicate)


def foreign_key_key(fk: ForeignKey) -> tuple:
    """Identity of a foreign key for set comparison; the name is not part of it."""
    return (
        tuple(fk.columns),
        fk.referenced_table,
        tuple(fk.referenced_columns),
        fk.on_delete or ReferentialAction.NO_ACTION,
        fk.on_update or ReferentialAction.NO_ACTION,
    )


# ------------------------------------------------------------------
# Per-table diff
# ------------------------------------------------------------------


def _diff_columns(source: Table, target: Table) -> list[Difference]:
    diffs: list[Difference] = []
    target_columns = {c.name: c for c in target.columns}
    source_names = {c.name for c in source.columns}

    for column in source.columns:
        other = target_columns.get(column.name)
        if other is None:
            diffs.append(
                Difference(
                    kind=K.COLUMN_ADDED,
                    table=source.name,
                    column=column.name,
                    after=column,
                    message=f"Column '{source.name}.{column.name}' missing from target",
                    severity=Severity.BREAKING,
                )
            )
            continue

        if _type_signature(column) != _type_signature(other):
            compatible = is_compatible(other.type, column.type)
            diffs.append(
                Difference(
                    kind=K.COLUMN_TYPE_CHANGED,
                    table=source.name,
                    column=column.name,
                    before=other,
                    after=column,
                    message=(
                        f"Column '{source.name}.{column.name}' type differs: "
                        f"{_describe_type(other)} -> {_describe_type(column)}"
                    ),
                    severity=Severity.INFORMATIONAL if compatible else Severity.BREAKING,
                )
            )

        if column.nullable != other.nullable:
            breaking = column.nullable and not other.nullable
            diffs.append(
                Difference(
                    kind=K.COLUMN_NULLABILITY_CHANGED,
                    table=source.name,
                    column=column.name,
                    before=other,
                    after=column,
                    message=(
                        f"Column '{source.name}.{column.name}' is "
                        f"{'nullable' if column.nullable else 'NOT NULL'} in source but "
                        f"{'nullable' if other.nullable else 'NOT NULL'} in target"
                    ),
                    severity=Severity.BREAKING if breaking else Severity.INFORMATIONAL,
                )
            )

        if _default_key(column.default) != _default_key(other.default):
            diffs.append(
                Difference(
                    kind=K.COLUMN_DEFAULT_CHANGED,
                    table=source.name,
                    column=column.name,
                    before=other,
                    after=column,
                    message=(
                        f"Column '{source.name}.{column.name}' default differs: "
                        f"{other.default.expression if other.default else 'none'} -> "
                        f"{column.default.expression if column.default else 'none'}"
                    ),
                )
            )

    for other in target.columns:
        if other.name in source_names:
            continue
        # Rows copied from source cannot fill a required column with no default
        breaking = not other.nullable and other.default is None and not other.auto_increment
        diffs.append(
            Difference(
                kind=K.COLUMN_REMOVED,
                table=source.name,
                column=other.name,
                before=other,
                message=f"Column '{target.name}.{other.name}' not in source",
                severity=Severity.BREAKING if breaking else Severity.INFORMATIONAL,
            )
        )

    return diffs


def _diff_indexes(source: Table, target: Table) -> list[Difference]:
    diffs: list[Difference] = []
    source_keys = {index_key(i): i for i in source.indexes}
    target_keys = {index_key(i): i for i in target.indexes}

    for key, index in source_keys.items():
        if key not in target_keys:
            diffs.append(
                Difference(
                    kind=K.INDEX_ADDED,
                    table=source.name,
                    after=index,
                    message=(
                        f"{'Unique index' if index.unique else 'Index'} on "
                        f"{source.name}({', '.join(index.columns)}) missing from target"
                    ),
                )
            )
    for key, index in target_keys.items():
        if key not in source_keys:
            diffs.append(
                Difference(
                    kind=K.INDEX_REMOVED,
                    table=source.name,
                    before=index,
                    message=f"Index {index.name} on {target.name} not in source",
                )
            )
    return diffs


def _diff_constraints(source: Table, target: Table) -> list[Difference]:
    diffs: list[Difference] = []
    source_keys = {foreign_key_key(fk): fk for fk in source.foreign_keys}
    target_keys = {foreign_key_key(fk): fk for fk in target.foreign_keys}

    for key, fk in source_keys.items():
        if key not in target_keys:
            diffs.append(
                Difference(
                    kind=K.CONSTRAINT_ADDED,
                    table=source.name,
                    after=fk,
                    message=(
                        f"Foreign key {source.name}({', '.join(fk.columns)}) -> "
                        f"{fk.referenced_table}({', '.join(fk.referenced_columns)}) missing from target"
                    ),
                )
            )
    for key, fk in target_keys.items():
        if key not in source_keys:
            diffs.append(
                Difference(
                    kind=K.CONSTRAINT_REMOVED,
                    table=source.name,
                    before=fk,
                    message=(
                        f"Foreign key {target.name}({', '.join(fk.columns)}) -> "
                        f"{fk.referenced_table} not in source"
                    ),
                )
            )

    if tuple(source.primary_key) != tuple(target.primary_key):
        if target.primary_key:
            diffs.append(
                Difference(
                    kind=K.CONSTRAINT_REMOVED,
                    table=source.name,
                    before=tuple(target.primary_key),
                    message=f"Primary key {target.name}({', '.join(target.primary_key)}) not in source",
                )
            )
        if source.primary_key:
            diffs.append(
                Difference(
                    kind=K.CONSTRAINT_ADDED,
                    table=source.name,
                    after=tuple(source.primary_key),
                    message=f"Primary key {source.name}({', '.join(source.primary_key)}) missing from target",
                )
            )
    return diffs


def diff_table(source: Table, target: Table) -> list[Difference]:
    """Column, index and constraint differences for a table present on both sides.

    Views are compared by presence only; their definitions are engine
    spellings that do not compare meaningfully across dialects.
    """
    if source.is_view or target.is_view:
        return []
    return _diff_columns(source, target) + _diff_indexes(source, target) + _diff_constraints(source, target)


# ------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------


def summarize(differences: list[Difference]) -> dict[str, int]:
    """Counts by kind, plus ``total`` and ``breaking``."""
    summary = {kind.value: 0 for kind in DifferenceKind}
    for diff in differences:
        summary[diff.kind.value] += 1
    summary["total"] = len(differences)
    summary["breaking"] = sum(1 for d in differences if d.severity == Severity.BREAKING)
    return summary


def compare_schemas(source: SchemaModel, target: SchemaModel) -> ComparisonResult:
    """Compare two schema models.

    Args:
        source: Schema the target should be brought in line with.
        target: Schema of the database that would be migrated.

    Returns:
        ``ComparisonResult``; ``compatible`` is True iff every difference is
        informational.

    Example:
        >>> result = compare_schemas(schema, schema)
        >>> result.compatible, result.differences
        (True, [])
    """
    differences: list[Difference] = []
    target_tables = {t.name: t for t in target.tables}
    source_tables = {t.name: t for t in source.tables}

    for table in source.tables:
        other = target_tables.get(table.name)
        if other is None:
            differences.append(
                Difference(
                    kind=K.TABLE_ADDED,
                    table=table.name,
                    after=table,
                    message=f"{'View' if table.is_view else 'Table'} '{table.name}' missing from target",
                    severity=Severity.BREAKING,
                )
            )
            continue

        details = diff_table(table, other)
        if details:
            differences.append(
                Difference(
                    kind=K.TABLE_MODIFIED,
                    table=table.name,
                    before=other,
                    after=table,
                    message=f"Table '{table.name}' differs ({len(details)} changes)",
                )
            )
            differences.extend(details)

    for table in target.tables:
        if table.name not in source_tables:
            differences.append(
                Difference(
                    kind=K.TABLE_REMOVED,
                    table=table.name,
                    before=table,
                    message=f"{'View' if table.is_view else 'Table'} '{table.name}' not in source",
                )
            )

    return ComparisonResult(
        compatible=all(d.severity == Severity.INFORMATIONAL for d in differences),
        differences=differences,
        summary=summarize(differences),
        source=source,
        target=target,
    )
