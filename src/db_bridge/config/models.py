"""Pydantic models for db-bridge configuration."""

from pydantic import BaseModel, Field

from db_bridge.migration.models import MigrationOptions
from db_bridge.schema.discovery import DiscoveryConfig


# ============================================================================
# Configuration Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution


class BridgeConfig(BaseModel):
    """Complete db-bridge configuration from db.toml.

    Attributes:
        profiles: Named connection profiles.
        discovery: Filters and type overrides applied to every discovery.
        migration: Default migration options (CLI flags override them).
    """

    profiles: dict[str, DatabaseProfile] = Field(default_factory=dict)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    migration: MigrationOptions = Field(default_factory=MigrationOptions)
