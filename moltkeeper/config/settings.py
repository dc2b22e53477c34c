"""
moltkeeper Settings
===================

Central configuration for paths, ports, timeouts and intervals, plus a frozen
snapshot of the environment inputs the boot pipeline reacts to.

This module provides:
1. KeeperSettings dataclass - filesystem layout and tuning knobs, each field
   overridable through a KEEPER_* environment variable
2. GatewayEnvironment dataclass - the recognized gateway/provider/channel/
   object-store inputs, read once via from_env()
3. get_settings() - singleton access to KeeperSettings

Usage:
    from moltkeeper.config.settings import GatewayEnvironment, get_settings

    settings = get_settings()
    env = GatewayEnvironment.from_env()
    print(settings.config_file, env.r2_configured)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional


# =============================================================================
# Defaults
# =============================================================================

GATEWAY_PORT = 18789
DEFAULT_BUCKET_NAME = "moltbot-data"

PRODUCT_NAME = "openclaw"
LEGACY_PRODUCT_NAME = "clawdbot"
CONFIG_FILE_NAME = "openclaw.json"
LEGACY_CONFIG_FILE_NAME = "clawdbot.json"
SYNC_MARKER_NAME = ".last-sync"

AGENT_ID = "main"
TRACE_EXTENSION_ID = "trace-model"
TRUSTED_PROXIES = ("10.1.0.0",)


def _env_path(name: str, default: str) -> Path:
    return Path(os.getenv(name, default))


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


# =============================================================================
# KeeperSettings
# =============================================================================

@dataclass
class KeeperSettings:
    """
    Filesystem layout and tuning for the keeper.

    Paths default to the container layout the gateway expects; tests point
    them at a temporary directory through the constructor or KEEPER_* vars.
    """

    # Local state
    config_dir: Path = field(default_factory=lambda: _env_path("KEEPER_CONFIG_DIR", "/root/.openclaw"))
    legacy_config_dir: Path = field(default_factory=lambda: _env_path("KEEPER_LEGACY_CONFIG_DIR", "/root/.clawdbot"))
    workspace_dir: Path = field(default_factory=lambda: _env_path("KEEPER_WORKSPACE_DIR", "/root/clawd"))
    skills_dir: Optional[Path] = None
    runtime_dir: Path = field(default_factory=lambda: _env_path("KEEPER_RUNTIME_DIR", "/tmp"))
    rclone_config_file: Path = field(
        default_factory=lambda: _env_path("KEEPER_RCLONE_CONFIG", "/root/.config/rclone/rclone.conf")
    )
    extensions_source_dir: Path = field(
        default_factory=lambda: _env_path("KEEPER_EXTENSIONS_SRC", "/opt/moltkeeper/extensions")
    )
    assets_dir: Path = field(default_factory=lambda: _env_path("KEEPER_ASSETS_DIR", "/opt/moltkeeper/public"))

    # External binaries
    gateway_binary: str = field(default_factory=lambda: os.getenv("KEEPER_GATEWAY_BINARY", "openclaw"))
    rclone_binary: str = field(default_factory=lambda: os.getenv("KEEPER_RCLONE_BINARY", "rclone"))

    # Network
    gateway_port: int = field(default_factory=lambda: _env_int("KEEPER_GATEWAY_PORT", str(GATEWAY_PORT)))
    api_host: str = field(default_factory=lambda: os.getenv("KEEPER_API_HOST", "0.0.0.0"))
    api_port: int = field(default_factory=lambda: _env_int("KEEPER_API_PORT", "8080"))

    # Timeouts (seconds)
    health_probe_timeout: float = field(default_factory=lambda: _env_float("KEEPER_HEALTH_PROBE_TIMEOUT", "1.5"))
    gateway_start_timeout: float = field(default_factory=lambda: _env_float("KEEPER_GATEWAY_START_TIMEOUT", "180"))
    process_kill_timeout: float = field(default_factory=lambda: _env_float("KEEPER_PROCESS_KILL_TIMEOUT", "5"))
    cleanup_timeout: float = field(default_factory=lambda: _env_float("KEEPER_CLEANUP_TIMEOUT", "5"))
    store_command_timeout: float = field(default_factory=lambda: _env_float("KEEPER_STORE_TIMEOUT", "120"))
    cli_command_timeout: float = field(default_factory=lambda: _env_float("KEEPER_CLI_TIMEOUT", "60"))

    # Sync loop
    sync_initial_delay: float = field(default_factory=lambda: _env_float("KEEPER_SYNC_INITIAL_DELAY", "60"))
    sync_interval: float = field(default_factory=lambda: _env_float("KEEPER_SYNC_INTERVAL", "30"))
    sync_missing_config_retry: float = field(default_factory=lambda: _env_float("KEEPER_SYNC_RETRY", "30"))

    # Integrity
    min_free_disk_mb: int = field(default_factory=lambda: _env_int("KEEPER_MIN_FREE_DISK_MB", "500"))
    disk_check_path: Path = field(default_factory=lambda: _env_path("KEEPER_DISK_CHECK_PATH", "/"))

    def __post_init__(self) -> None:
        self.config_dir = Path(self.config_dir)
        self.legacy_config_dir = Path(self.legacy_config_dir)
        self.workspace_dir = Path(self.workspace_dir)
        self.runtime_dir = Path(self.runtime_dir)
        if self.skills_dir is None:
            self.skills_dir = self.workspace_dir / "skills"
        self.skills_dir = Path(self.skills_dir)

    # -------------------------------------------------------------------------
    # Derived paths
    # -------------------------------------------------------------------------

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILE_NAME

    @property
    def legacy_config_file(self) -> Path:
        return self.legacy_config_dir / LEGACY_CONFIG_FILE_NAME

    @property
    def local_sync_marker(self) -> Path:
        return self.config_dir / SYNC_MARKER_NAME

    @property
    def agent_dir(self) -> Path:
        return self.config_dir / "agents" / AGENT_ID / "agent"

    @property
    def auth_store_file(self) -> Path:
        return self.agent_dir / "auth-profiles.json"

    @property
    def oauth_store_file(self) -> Path:
        """Legacy OAuth import file; its presence enables the CLI refresh stage."""
        return self.config_dir / "credentials" / "oauth.json"

    @property
    def extensions_dir(self) -> Path:
        return self.config_dir / "extensions"

    @property
    def auth_state_file(self) -> Path:
        return self.runtime_dir / "openclaw-auth-state.json"

    @property
    def degraded_marker_file(self) -> Path:
        return self.runtime_dir / "openclaw-auth-degraded"

    @property
    def auth_reconcile_log(self) -> Path:
        return self.runtime_dir / "openclaw-auth-reconcile.log"

    @property
    def gateway_log_file(self) -> Path:
        return self.runtime_dir / "openclaw-gateway.log"

    @property
    def gateway_lock_files(self) -> tuple:
        return (
            self.runtime_dir / "openclaw-gateway.lock",
            self.config_dir / "gateway.lock",
        )


# =============================================================================
# GatewayEnvironment
# =============================================================================

def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class GatewayEnvironment:
    """
    Snapshot of the environment inputs the keeper recognizes.

    Blank values are normalized to None so callers only ever test for
    presence. Never log an instance: it carries secrets.
    """

    # Object store
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    cf_account_id: Optional[str] = None
    r2_bucket_name: str = DEFAULT_BUCKET_NAME

    # Gateway
    gateway_token: Optional[str] = None
    dev_mode: bool = False

    # Model gateway override
    ai_gateway_model: Optional[str] = None
    ai_gateway_account_id: Optional[str] = None
    ai_gateway_gateway_id: Optional[str] = None
    ai_gateway_api_key: Optional[str] = None

    # Direct provider credentials
    anthropic_api_key: Optional[str] = None
    anthropic_oauth_token: Optional[str] = None
    openai_api_key: Optional[str] = None

    # Chat platforms
    telegram_bot_token: Optional[str] = None
    telegram_dm_policy: Optional[str] = None
    telegram_dm_allow_from: Optional[str] = None
    discord_bot_token: Optional[str] = None
    discord_dm_policy: Optional[str] = None
    slack_bot_token: Optional[str] = None
    slack_app_token: Optional[str] = None

    # Diagnostics
    debug_routes: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GatewayEnvironment":
        """Read the recognized inputs from os.environ (or the given mapping)."""
        env = os.environ if environ is None else environ
        get = lambda key: _clean(env.get(key))  # noqa: E731

        return cls(
            r2_access_key_id=get("R2_ACCESS_KEY_ID"),
            r2_secret_access_key=get("R2_SECRET_ACCESS_KEY"),
            cf_account_id=get("CF_ACCOUNT_ID"),
            r2_bucket_name=get("R2_BUCKET_NAME") or DEFAULT_BUCKET_NAME,
            gateway_token=get("OPENCLAW_GATEWAY_TOKEN"),
            dev_mode=get("OPENCLAW_DEV_MODE") == "true",
            ai_gateway_model=get("CF_AI_GATEWAY_MODEL"),
            ai_gateway_account_id=get("CF_AI_GATEWAY_ACCOUNT_ID"),
            ai_gateway_gateway_id=get("CF_AI_GATEWAY_GATEWAY_ID"),
            ai_gateway_api_key=get("CLOUDFLARE_AI_GATEWAY_API_KEY"),
            anthropic_api_key=get("ANTHROPIC_API_KEY"),
            anthropic_oauth_token=get("ANTHROPIC_OAUTH_TOKEN"),
            openai_api_key=get("OPENAI_API_KEY"),
            telegram_bot_token=get("TELEGRAM_BOT_TOKEN"),
            telegram_dm_policy=get("TELEGRAM_DM_POLICY"),
            telegram_dm_allow_from=get("TELEGRAM_DM_ALLOW_FROM"),
            discord_bot_token=get("DISCORD_BOT_TOKEN"),
            discord_dm_policy=get("DISCORD_DM_POLICY"),
            slack_bot_token=get("SLACK_BOT_TOKEN"),
            slack_app_token=get("SLACK_APP_TOKEN"),
            debug_routes=get("DEBUG_ROUTES") == "true",
        )

    @property
    def r2_configured(self) -> bool:
        return bool(self.r2_access_key_id and self.r2_secret_access_key and self.cf_account_id)

    @property
    def remote_root(self) -> str:
        return f"r2:{self.r2_bucket_name}"

    def has_provider_credential(self, provider: Optional[str]) -> bool:
        """Whether a direct env credential exists that the gateway resolves for this provider."""
        p = (provider or "").lower()
        if p == "anthropic":
            return bool(self.anthropic_oauth_token or self.anthropic_api_key)
        if p == "openai":
            return bool(self.openai_api_key)
        return False


# =============================================================================
# Singleton Access
# =============================================================================

_settings_instance: Optional[KeeperSettings] = None


def get_settings() -> KeeperSettings:
    """Get the process-wide KeeperSettings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = KeeperSettings()
    return _settings_instance


def _reset_settings() -> None:
    """Drop the cached instance so the next get_settings() re-reads the environment."""
    global _settings_instance
    _settings_instance = None


__all__ = [
    "GATEWAY_PORT",
    "DEFAULT_BUCKET_NAME",
    "PRODUCT_NAME",
    "LEGACY_PRODUCT_NAME",
    "CONFIG_FILE_NAME",
    "LEGACY_CONFIG_FILE_NAME",
    "SYNC_MARKER_NAME",
    "AGENT_ID",
    "TRACE_EXTENSION_ID",
    "TRUSTED_PROXIES",
    "KeeperSettings",
    "GatewayEnvironment",
    "get_settings",
    "_reset_settings",
]
