"""Configuration management: profiles, TOML loading, and config models.

Usage:
    >>> from db_bridge.config import load_config, BridgeConfig, DatabaseProfile
"""

from db_bridge.config.loader import load_config
from db_bridge.config.models import BridgeConfig, DatabaseProfile

__all__ = ["load_config", "BridgeConfig", "DatabaseProfile"]
