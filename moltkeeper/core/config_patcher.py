"""
Gateway Config Patcher
======================

Merges environment-derived settings into the gateway configuration document.
The gateway's own onboarding covers provider/model setup; this fills in what
it does not:

- gateway network and auth (port, bind, trusted proxies, bearer token,
  insecure control-UI auth for development)
- an AI-gateway model override (CF_AI_GATEWAY_MODEL=provider/model-id)
- chat channel credentials (Telegram, Discord, Slack)
- local extension registration

patch_config is pure and idempotent. Channel subtrees are replaced wholesale,
never field-merged: older backups carry keys the gateway's strict schema
validation rejects.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config.settings import (
    GATEWAY_PORT,
    TRACE_EXTENSION_ID,
    TRUSTED_PROXIES,
    GatewayEnvironment,
)
from ..exceptions import ConfigWriteError
from .fileio import atomic_write_json, read_text, parse_json

logger = logging.getLogger(__name__)

AI_GATEWAY_BASE = "https://gateway.ai.cloudflare.com/v1"
WORKERS_AI_BASE = "https://api.cloudflare.com/client/v4/accounts"
AI_GATEWAY_PROVIDER_PREFIX = "cf-ai-gw-"
DEFAULT_CONTEXT_WINDOW = 131072
DEFAULT_MAX_TOKENS = 8192
DEFAULT_DM_POLICY = "pairing"


def _subtree(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    """Return parent[key] as a dict, replacing any non-dict value."""
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


# =============================================================================
# Sections
# =============================================================================

def _patch_gateway(config: Dict[str, Any], env: GatewayEnvironment) -> None:
    gateway = _subtree(config, "gateway")
    gateway["port"] = GATEWAY_PORT
    gateway["mode"] = "local"
    gateway["bind"] = "lan"
    gateway["trustedProxies"] = list(TRUSTED_PROXIES)

    if env.gateway_token:
        _subtree(gateway, "auth")["token"] = env.gateway_token

    if env.dev_mode:
        _subtree(gateway, "controlUi")["allowInsecureAuth"] = True


def _patch_plugins(config: Dict[str, Any], extensions_dir: str) -> None:
    plugins = _subtree(config, "plugins")
    load = _subtree(plugins, "load")
    paths = load.get("paths")
    if not isinstance(paths, list):
        paths = []
        load["paths"] = paths
    if extensions_dir not in paths:
        paths.append(extensions_dir)

    entries = _subtree(plugins, "entries")
    _subtree(entries, TRACE_EXTENSION_ID)["enabled"] = True


def build_ai_gateway_base_url(provider: str, env: GatewayEnvironment) -> Optional[str]:
    """Base URL for a model served through the AI gateway, or None if it cannot be built."""
    if env.ai_gateway_account_id and env.ai_gateway_gateway_id:
        base_url = f"{AI_GATEWAY_BASE}/{env.ai_gateway_account_id}/{env.ai_gateway_gateway_id}/{provider}"
        if provider == "workers-ai":
            base_url += "/v1"
        return base_url
    if provider == "workers-ai" and env.cf_account_id:
        return f"{WORKERS_AI_BASE}/{env.cf_account_id}/ai/v1"
    return None


def _patch_model_override(config: Dict[str, Any], env: GatewayEnvironment) -> None:
    raw = env.ai_gateway_model
    if not raw:
        return

    provider, sep, model_id = raw.partition("/")
    if not sep or not provider or not model_id:
        logger.warning(f"CF_AI_GATEWAY_MODEL must look like provider/model-id, got {raw!r}; skipping override")
        return

    base_url = build_ai_gateway_base_url(provider, env)
    if not base_url or not env.ai_gateway_api_key:
        logger.warning(
            "CF_AI_GATEWAY_MODEL set but missing required config (account ID, gateway ID, or API key)"
        )
        return

    api = "anthropic-messages" if provider == "anthropic" else "openai-completions"
    provider_name = f"{AI_GATEWAY_PROVIDER_PREFIX}{provider}"

    providers = _subtree(_subtree(config, "models"), "providers")
    providers[provider_name] = {
        "baseUrl": base_url,
        "apiKey": env.ai_gateway_api_key,
        "api": api,
        "models": [
            {
                "id": model_id,
                "name": model_id,
                "contextWindow": DEFAULT_CONTEXT_WINDOW,
                "maxTokens": DEFAULT_MAX_TOKENS,
            }
        ],
    }
    defaults = _subtree(_subtree(config, "agents"), "defaults")
    defaults["model"] = {"primary": f"{provider_name}/{model_id}"}
    logger.info(f"AI Gateway model override: provider={provider_name} model={model_id} via {base_url}")


def _split_allow_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _patch_channels(config: Dict[str, Any], env: GatewayEnvironment) -> None:
    channels = _subtree(config, "channels")

    if env.telegram_bot_token:
        dm_policy = env.telegram_dm_policy or DEFAULT_DM_POLICY
        telegram: Dict[str, Any] = {
            "botToken": env.telegram_bot_token,
            "enabled": True,
            "dmPolicy": dm_policy,
        }
        if env.telegram_dm_allow_from:
            telegram["allowFrom"] = _split_allow_list(env.telegram_dm_allow_from)
        elif dm_policy == "open":
            telegram["allowFrom"] = ["*"]
        channels["telegram"] = telegram

    # Discord nests its DM settings under "dm".
    if env.discord_bot_token:
        dm_policy = env.discord_dm_policy or DEFAULT_DM_POLICY
        dm: Dict[str, Any] = {"policy": dm_policy}
        if dm_policy == "open":
            dm["allowFrom"] = ["*"]
        channels["discord"] = {
            "token": env.discord_bot_token,
            "enabled": True,
            "dm": dm,
        }

    if env.slack_bot_token and env.slack_app_token:
        channels["slack"] = {
            "botToken": env.slack_bot_token,
            "appToken": env.slack_app_token,
            "enabled": True,
        }


# =============================================================================
# Public API
# =============================================================================

def patch_config(doc: Any, env: GatewayEnvironment, extensions_dir: str) -> Dict[str, Any]:
    """
    Return a patched copy of the configuration document.

    Args:
        doc: Current document; anything other than a dict is treated as empty
        env: Environment snapshot
        extensions_dir: Directory holding local extensions, added to the plugin search path

    Returns:
        New document; the input is never mutated
    """
    config = copy.deepcopy(doc) if isinstance(doc, dict) else {}

    _patch_plugins(config, extensions_dir)
    _patch_gateway(config, env)
    _patch_model_override(config, env)
    _patch_channels(config, env)
    return config


def apply_config_patch(config_file: Path, env: GatewayEnvironment, extensions_dir: Path) -> Dict[str, Any]:
    """
    Read, patch and atomically rewrite the config file.

    Raises:
        ConfigWriteError: the patched document could not be written
    """
    logger.info(f"Patching config at: {config_file}")
    doc = parse_json(read_text(config_file))
    if not isinstance(doc, dict):
        logger.info("Starting with empty config")
        doc = {}

    patched = patch_config(doc, env, str(extensions_dir))
    try:
        atomic_write_json(config_file, patched)
    except OSError as e:
        raise ConfigWriteError(f"Failed to write config {config_file}: {e}") from e

    logger.info("Configuration patched successfully")
    return patched
