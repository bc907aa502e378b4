"""Database handle factory.

Turns db.toml profiles into ``AsyncEngineHandle`` instances.

Usage:
    from db_bridge.config import load_config
    from db_bridge.factory import create_handle, get_profile

    config = load_config()
    handle = create_handle(get_profile(config, "local"))
    try:
        rows = await handle.fetch("SELECT 1 AS ok")
    finally:
        await handle.close()
"""

import logging
from urllib.parse import quote

from db_bridge.adapters.async_engine import AsyncEngineHandle
from db_bridge.config.models import BridgeConfig, DatabaseProfile

logger = logging.getLogger(__name__)


# ============================================================================
# Profile Resolution
# ============================================================================


class ProfileNotFoundError(Exception):
    """Raised when a requested database profile is not configured."""

    pass


def get_profile(config: BridgeConfig, profile_name: str) -> DatabaseProfile:
    """Look up a profile by name.

    Raises:
        ProfileNotFoundError: If the profile is not in db.toml.
    """
    if profile_name not in config.profiles:
        available = ", ".join(sorted(config.profiles)) or "(none)"
        raise ProfileNotFoundError(
            f"Profile '{profile_name}' not found in db.toml. Available: {available}"
        )
    return config.profiles[profile_name]


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    Args:
        profile: Database profile from config

    Returns:
        Connection URL with password substituted

    Example:
        >>> resolve_url(DatabaseProfile(url="postgresql://u:[YOUR-PASSWORD]@h/db", db_password="p@ss"))
        'postgresql://u:p%40ss@h/db'
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


# ============================================================================
# Handle Creation
# ============================================================================


def create_handle(profile: DatabaseProfile, **engine_kwargs) -> AsyncEngineHandle:
    """Create a database handle for a profile.

    Args:
        profile: Database profile from config
        **engine_kwargs: Forwarded to the async engine

    Raises:
        ValueError: If the URL scheme is neither PostgreSQL nor SQLite.
    """
    handle = AsyncEngineHandle(resolve_url(profile), **engine_kwargs)
    logger.debug(f"Created {handle.dialect.value} handle ({profile.description or 'no description'})")
    return handle
