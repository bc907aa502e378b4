"""Schema discovery and comparison.

Provides the dialect capability table, the canonical schema model, live
discovery (``DiscoveryCoordinator``) and structural comparison
(``compare_schemas``).

Usage:
    from db_bridge.schema import DiscoveryCoordinator, DiscoveryConfig
    from db_bridge.schema import compare_schemas, get_capabilities
"""

from db_bridge.schema.capabilities import Capabilities, Dialect, get_capabilities, resolve_dialect
from db_bridge.schema.comparator import compare_schemas
from db_bridge.schema.discovery import DiscoveryConfig, DiscoveryCoordinator, DialectSupport
from db_bridge.schema.models import (
    Column,
    ColumnDefault,
    ComparisonResult,
    Difference,
    DifferenceKind,
    ForeignKey,
    Index,
    ReferentialAction,
    Relationship,
    SchemaModel,
    Severity,
    Table,
)
from db_bridge.schema.types import CanonicalType, is_compatible

__all__ = [
    "Capabilities",
    "Dialect",
    "get_capabilities",
    "resolve_dialect",
    "compare_schemas",
    "DiscoveryConfig",
    "DiscoveryCoordinator",
    "DialectSupport",
    "Column",
    "ColumnDefault",
    "ComparisonResult",
    "Difference",
    "DifferenceKind",
    "ForeignKey",
    "Index",
    "ReferentialAction",
    "Relationship",
    "SchemaModel",
    "Severity",
    "Table",
    "CanonicalType",
    "is_compatible",
]
