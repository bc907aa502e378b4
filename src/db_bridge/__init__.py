"""db-bridge: Cross-dialect schema discovery, comparison and migration.

Reads SQLite and PostgreSQL schemas into one canonical model, compares them,
plans the DDL and data copy that bring a target in line with a source, and
executes the plan with locking, batching and dry-run support. An index
advisor turns observed query statistics into index recommendations.

Usage:
    from db_bridge import AsyncEngineHandle, MigrationOptions, compare, migrate
    from db_bridge import IndexAdvisor, load_config, create_handle
"""

__version__ = "0.1.0"

# Adapters
from db_bridge.adapters.async_engine import AsyncEngineHandle
from db_bridge.adapters.base import DatabaseHandle, DatabaseSession

# Advisor
from db_bridge.advisor.index_advisor import IndexAdvisor, IndexAnalysis, IndexRecommendation

# Config
from db_bridge.config.loader import load_config
from db_bridge.config.models import BridgeConfig, DatabaseProfile

# Errors
from db_bridge.errors import (
    BridgeError,
    DiscoveryError,
    LockAcquisitionError,
    MigrationExecutionError,
    PlanningError,
    UnsupportedDialectError,
)

# Factory
from db_bridge.factory import ProfileNotFoundError, create_handle, get_profile, resolve_url

# Migration
from db_bridge.migration.models import MigrationOptions, MigrationPlan, MigrationResult
from db_bridge.migration.service import compare, discover, migrate, plan

# Schema
from db_bridge.schema.capabilities import Dialect, get_capabilities
from db_bridge.schema.discovery import DiscoveryConfig
from db_bridge.schema.models import ComparisonResult, SchemaModel

__all__ = [
    # Adapters
    "AsyncEngineHandle",
    "DatabaseHandle",
    "DatabaseSession",
    # Advisor
    "IndexAdvisor",
    "IndexAnalysis",
    "IndexRecommendation",
    # Config
    "load_config",
    "BridgeConfig",
    "DatabaseProfile",
    # Errors
    "BridgeError",
    "DiscoveryError",
    "LockAcquisitionError",
    "MigrationExecutionError",
    "PlanningError",
    "UnsupportedDialectError",
    # Factory
    "ProfileNotFoundError",
    "create_handle",
    "get_profile",
    "resolve_url",
    # Migration
    "MigrationOptions",
    "MigrationPlan",
    "MigrationResult",
    "compare",
    "discover",
    "migrate",
    "plan",
    # Schema
    "Dialect",
    "get_capabilities",
    "DiscoveryConfig",
    "ComparisonResult",
    "SchemaModel",
]
