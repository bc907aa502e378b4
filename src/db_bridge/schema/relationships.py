"""Cross-table relationships derived from foreign keys.

Usage:
    from db_bridge.schema.relationships import derive_relationships, find_cycles

    relationships = derive_relationships(tables)
    cycles = find_cycles(tables)  # [["a", "b", "a"]]
"""

from collections.abc import Sequence

from db_bridge.schema.models import Relationship, Table

# Non-key columns a junction table may carry (created_at, sort order, ...)
JUNCTION_EXTRA_COLUMNS = 2


def _is_unique_key(table: Table, columns: tuple[str, ...]) -> bool:
    if table.primary_key and set(columns) == set(table.primary_key):
        return True
    return any(
        index.unique and not index.predicate and set(index.columns) == set(columns)
        for index in table.indexes
    )


def is_junction_table(table: Table) -> bool:
    """True if the table links two other tables many-to-many.

    A junction table has exactly two foreign keys to different tables and at
    most ``JUNCTION_EXTRA_COLUMNS`` columns outside its keys.
    """
    if len(table.foreign_keys) != 2:
        return False
    first, second = table.foreign_keys
    if first.referenced_table == second.referenced_table:
        return False
    key_columns = set(first.columns) | set(second.columns) | set(table.primary_key)
    others = [c for c in table.columns if c.name not in key_columns]
    return len(others) <= JUNCTION_EXTRA_COLUMNS


def derive_relationships(tables: Sequence[Table]) -> list[Relationship]:
    """Infer relationships from the foreign keys of ``tables``.

    A foreign key whose local columns are themselves unique gives a
    one-to-one relationship, any other a many-to-one. Junction tables add
    a many-to-many relationship in each direction between the two tables
    they link. Foreign keys to tables outside ``tables`` are ignored.
    """
    by_name = {t.name: t for t in tables}
    relationships: list[Relationship] = []

    for table in tables:
        for fk in table.foreign_keys:
            if fk.referenced_table not in by_name:
                continue
            kind = "one-to-one" if _is_unique_key(table, fk.columns) else "many-to-one"
            relationships.append(
                Relationship(
                    kind=kind,
                    from_table=table.name,
                    from_columns=fk.columns,
                    to_table=fk.referenced_table,
                    to_columns=fk.referenced_columns,
                )
            )

    for table in tables:
        if not is_junction_table(table):
            continue
        first, second = table.foreign_keys
        if first.referenced_table not in by_name or second.referenced_table not in by_name:
            continue
        for a, b in ((first, second), (second, first)):
            relationships.append(
                Relationship(
                    kind="many-to-many",
                    from_table=a.referenced_table,
                    from_columns=a.referenced_columns,
                    to_table=b.referenced_table,
                    to_columns=b.referenced_columns,
                    through_table=table.name,
                )
            )

    return relationships


def find_cycles(tables: Sequence[Table]) -> list[list[str]]:
    """Find foreign-key cycles between tables (self-references excluded).

    Returns:
        Each cycle as a path that starts and ends at the same table.
    """
    graph = {t.name: sorted(t.dependencies) for t in tables}
    cycles: list[list[str]] = []
    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def visit(name: str) -> None:
        if name in on_stack:
            cycles.append(stack[stack.index(name):] + [name])
            return
        if name in visited or name not in graph:
            return
        visited.add(name)
        stack.append(name)
        on_stack.add(name)
        for dep in graph[name]:
            visit(dep)
        stack.pop()
        on_stack.discard(name)

    for name in sorted(graph):
        visit(name)
    return cycles
