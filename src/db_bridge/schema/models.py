"""Pydantic models for the dialect-neutral schema model and comparison reports."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from db_bridge.schema.capabilities import Dialect
from db_bridge.schema.types import CanonicalType


# ============================================================================
# Schema Model
# ============================================================================


class ReferentialAction(str, Enum):
    """ON DELETE / ON UPDATE actions."""

    CASCADE = "CASCADE"
    SET_NULL = "SET NULL"
    SET_DEFAULT = "SET DEFAULT"
    RESTRICT = "RESTRICT"
    NO_ACTION = "NO ACTION"


class ColumnDefault(BaseModel):
    """A column default, either a portable literal/expression or an opaque one.

    Attributes:
        expression: Normalized default text (``'active'``, ``0``,
            ``CURRENT_TIMESTAMP``, or the raw engine expression).
        kind: ``literal`` for constants, ``null`` for an explicit NULL,
            ``expression`` for anything evaluated by the engine.
        portable: True if every supported dialect accepts ``expression``.
        dialect: Dialect the raw expression was read from.
    """

    model_config = ConfigDict(frozen=True)

    expression: str
    kind: Literal["literal", "expression", "null"] = "literal"
    portable: bool = True
    dialect: Dialect | None = None


class Column(BaseModel):
    """Schema for a database column."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: CanonicalType
    element_type: CanonicalType | None = None  # Only for ARRAY
    native_type: str = ""
    nullable: bool = True
    default: ColumnDefault | None = None
    primary_key: bool = False
    auto_increment: bool = False
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    type_is_advisory: bool = False  # Engine types values per row, not per column
    unmapped: bool = False  # Native type fell back to TEXT


class Index(BaseModel):
    """Schema for a database index."""

    model_config = ConfigDict(frozen=True)

    name: str
    columns: tuple[str, ...]
    unique: bool = False
    expressions: bool = False  # True if any entry of columns is an expression
    predicate: str | None = None  # Partial index WHERE clause
    method: str | None = None


class ForeignKey(BaseModel):
    """Schema for a foreign-key constraint."""

    model_config = ConfigDict(frozen=True)

    name: str | None = None
    columns: tuple[str, ...]
    referenced_table: str
    referenced_columns: tuple[str, ...] = ()
    on_delete: ReferentialAction | None = None
    on_update: ReferentialAction | None = None
    deferrable: bool = False


class Table(BaseModel):
    """Schema for a table or view."""

    model_config = ConfigDict(frozen=True)

    name: str
    schema_name: str | None = None
    columns: tuple[Column, ...] = ()
    indexes: tuple[Index, ...] = ()
    foreign_keys: tuple[ForeignKey, ...] = ()
    primary_key: tuple[str, ...] = ()
    is_view: bool = False
    view_definition: str | None = None
    materialized: bool = False
    populated: bool | None = None  # Materialization state, None for plain tables/views

    def get_column(self, name: str) -> Column | None:
        """Return the column with this name, or None."""
        for column in self.columns:
            if column.name == name:
                return column
        return None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def dependencies(self) -> set[str]:
        """Tables this table references via foreign key (self-references excluded)."""
        return {fk.referenced_table for fk in self.foreign_keys if fk.referenced_table != self.name}


class Relationship(BaseModel):
    """A cross-table relationship derived from foreign keys."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["many-to-one", "one-to-one", "many-to-many"]
    from_table: str
    from_columns: tuple[str, ...]
    to_table: str
    to_columns: tuple[str, ...]
    through_table: str | None = None  # Junction table for many-to-many


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchemaModel(BaseModel):
    """Complete discovered database schema."""

    model_config = ConfigDict(frozen=True)

    dialect: Dialect
    tables: tuple[Table, ...] = ()
    relationships: tuple[Relationship, ...] = ()
    discovered_at: datetime = Field(default_factory=_utcnow)
    warnings: tuple[str, ...] = ()

    def get_table(self, name: str) -> Table | None:
        """Return the table with this name, or None."""
        for table in self.tables:
            if table.name == name:
                return table
        return None

    @property
    def table_names(self) -> list[str]:
        return [t.name for t in self.tables]


# ============================================================================
# Comparison Results
# ============================================================================


class DifferenceKind(str, Enum):
    """Kinds of structural discrepancy between two schema models."""

    TABLE_ADDED = "table_added"
    TABLE_REMOVED = "table_removed"
    TABLE_MODIFIED = "table_modified"
    COLUMN_ADDED = "column_added"
    COLUMN_REMOVED = "column_removed"
    COLUMN_TYPE_CHANGED = "column_type_changed"
    COLUMN_NULLABILITY_CHANGED = "column_nullability_changed"
    COLUMN_DEFAULT_CHANGED = "column_default_changed"
    INDEX_ADDED = "index_added"
    INDEX_REMOVED = "index_removed"
    CONSTRAINT_ADDED = "constraint_added"
    CONSTRAINT_REMOVED = "constraint_removed"


class Severity(str, Enum):
    INFORMATIONAL = "informational"
    BREAKING = "breaking"


class Difference(BaseModel):
    """One atomic structural discrepancy.

    ``before`` is the target-side snapshot and ``after`` the source-side one:
    applying the difference to the target moves it from ``before`` to
    ``after``.
    """

    model_config = ConfigDict(frozen=True)

    kind: DifferenceKind
    table: str
    column: str | None = None
    before: Any = None
    after: Any = None
    message: str = ""
    severity: Severity = Severity.INFORMATIONAL


class ComparisonResult(BaseModel):
    """Result of comparing a source schema against a target schema."""

    compatible: bool
    differences: list[Difference] = Field(default_factory=list)
    summary: dict[str, int] = Field(default_factory=dict)
    source: SchemaModel | None = None
    target: SchemaModel | None = None
    error: str | None = None

    def of_kind(self, kind: DifferenceKind) -> list[Difference]:
        """Differences of one kind, in report order."""
        return [d for d in self.differences if d.kind == kind]

    @property
    def breaking_count(self) -> int:
        return sum(1 for d in self.differences if d.severity == Severity.BREAKING)

    def format_report(self) -> str:
        """Format comparison result as human-readable report."""
        if self.error:
            return f"Comparison failed: {self.error}"
        if not self.differences:
            return "Schemas match"

        status = "compatible" if self.compatible else "incompatible"
        lines = [f"Schemas differ ({status}, {self.breaking_count} breaking):"]
        for diff in self.differences:
            if diff.kind == DifferenceKind.TABLE_MODIFIED:
                continue
            marker = "!" if diff.severity == Severity.BREAKING else "-"
            lines.append(f"  {marker} {diff.message}")
        return "\n".join(lines)
