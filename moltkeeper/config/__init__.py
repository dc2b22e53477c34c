"""Configuration for moltkeeper."""

from .settings import GatewayEnvironment, KeeperSettings, get_settings

__all__ = ["GatewayEnvironment", "KeeperSettings", "get_settings"]
