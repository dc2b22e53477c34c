"""
First-boot onboarding and local extension install.

Onboarding runs the gateway's own non-interactive setup when no config file
exists after restore. Extensions are copied into the config directory after
restore so an older backup can never overwrite the bundled copies.
"""

import logging
import shutil
from typing import List

from ..config.settings import GatewayEnvironment, KeeperSettings
from .commands import CommandResult, run_command

logger = logging.getLogger(__name__)


def build_auth_args(env: GatewayEnvironment) -> List[str]:
    """Provider auth flags: AI gateway, else Anthropic key, else OpenAI key, else none."""
    if env.ai_gateway_api_key and env.ai_gateway_account_id and env.ai_gateway_gateway_id:
        return [
            "--auth-choice", "cloudflare-ai-gateway-api-key",
            "--cloudflare-ai-gateway-account-id", env.ai_gateway_account_id,
            "--cloudflare-ai-gateway-gateway-id", env.ai_gateway_gateway_id,
            "--cloudflare-ai-gateway-api-key", env.ai_gateway_api_key,
        ]
    if env.anthropic_api_key:
        return ["--auth-choice", "apiKey", "--anthropic-api-key", env.anthropic_api_key]
    if env.openai_api_key:
        return ["--auth-choice", "openai-api-key", "--openai-api-key", env.openai_api_key]
    return []


def build_onboard_command(settings: KeeperSettings, env: GatewayEnvironment) -> List[str]:
    return [
        settings.gateway_binary,
        "onboard",
        "--non-interactive",
        "--accept-risk",
        "--mode", "local",
        *build_auth_args(env),
        "--gateway-port", str(settings.gateway_port),
        "--gateway-bind", "lan",
        "--skip-channels",
        "--skip-skills",
        "--skip-health",
    ]


async def run_onboarding(settings: KeeperSettings, env: GatewayEnvironment) -> bool:
    """Run onboarding if the config file is missing. Returns True when onboarding ran and succeeded."""
    if settings.config_file.exists():
        logger.info("Using existing config")
        return False

    logger.info("No existing config found, running onboard...")
    result: CommandResult = await run_command(
        build_onboard_command(settings, env),
        timeout=settings.cli_command_timeout,
    )
    if not result.success:
        logger.warning(f"Onboard failed (exit {result.returncode}): {result.details[:500]}")
        return False

    logger.info("Onboard completed")
    return True


def install_extensions(settings: KeeperSettings) -> List[str]:
    """Copy every bundled extension directory into <configDir>/extensions/. Returns installed ids."""
    source = settings.extensions_source_dir
    if not source.is_dir():
        logger.debug(f"No bundled extensions at {source}")
        return []

    installed = []
    target_base = settings.extensions_dir
    target_base.mkdir(parents=True, exist_ok=True)
    for entry in sorted(source.iterdir()):
        if not entry.is_dir():
            continue
        try:
            shutil.copytree(entry, target_base / entry.name, dirs_exist_ok=True)
            installed.append(entry.name)
        except (OSError, shutil.Error) as e:
            logger.warning(f"Could not install extension {entry.name}: {e}")

    if installed:
        logger.info(f"Installed local extension(s): {', '.join(installed)}")
    return installed
