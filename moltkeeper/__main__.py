"""
moltkeeper command-line entry point.

    python -m moltkeeper boot        # full boot, gateway, sync loop, HTTP surface
    python -m moltkeeper serve       # HTTP surface only
    python -m moltkeeper sync        # one-shot backup, prints the SyncResult
    python -m moltkeeper auth-state  # sanitized auth summary
    python -m moltkeeper verify      # integrity checklist
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from .api.server import create_app, shutdown_server, start_server
from .config.settings import AGENT_ID, GatewayEnvironment, KeeperSettings, get_settings
from .core.auth_state import summarize_auth_state
from .core.boot import BootPipeline
from .core.fileio import read_text
from .core.integrity import IntegrityVerifier
from .core.sync_loop import sync_to_remote
from .exceptions import KeeperError

logger = logging.getLogger("moltkeeper")

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, os.getenv("KEEPER_LOG_LEVEL", "INFO").upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for logger_name in ("asyncio", "aiohttp.access"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="moltkeeper",
        description="Boot-time keeper for a sandboxed agent gateway",
    )
    parser.add_argument("--env-file", help="Load environment variables from this file first")

    sub = parser.add_subparsers(dest="command", required=True)

    boot = sub.add_parser("boot", help="Restore, reconcile and start the gateway, then serve")
    boot.add_argument("--no-serve", action="store_true", help="Exit after the gateway is healthy")

    sub.add_parser("serve", help="Serve the HTTP surface only")
    sub.add_parser("sync", help="Back up local state to the object store once")
    sub.add_parser("auth-state", help="Print the sanitized auth summary")
    sub.add_parser("verify", help="Run the integrity checklist")

    return parser.parse_args(argv)


async def _serve_forever(settings: KeeperSettings, env: GatewayEnvironment, store=None, supervisor=None) -> None:
    app = create_app(settings, env, supervisor=supervisor, store=store)
    runner = await start_server(app, settings.api_host, settings.api_port)
    try:
        await asyncio.Event().wait()
    finally:
        await shutdown_server(runner)


async def run_boot(settings: KeeperSettings, env: GatewayEnvironment, serve: bool = True) -> int:
    pipeline = BootPipeline(settings, env)
    try:
        ctx = await pipeline.run()
    except KeeperError as e:
        logger.error(f"Boot failed: {e}")
        return 1

    if ctx.already_running:
        return 0

    if ctx.auth is not None and ctx.auth.degraded:
        logger.warning("Gateway started in degraded auth mode")
    if not serve:
        return 0

    sync_loop = pipeline.sync_loop(ctx)
    if sync_loop is not None:
        sync_loop.start()
    try:
        await _serve_forever(settings, env, store=ctx.store, supervisor=pipeline.supervisor)
    finally:
        if sync_loop is not None:
            await sync_loop.stop()
    return 0


async def run_sync(settings: KeeperSettings, env: GatewayEnvironment) -> int:
    result = await sync_to_remote(settings, env)
    print(json.dumps(result.model_dump(exclude_none=True), indent=2))
    return 0 if result.success else 1


def run_auth_state(settings: KeeperSettings) -> int:
    summary = summarize_auth_state(
        read_text(settings.config_file),
        read_text(settings.auth_store_file),
        oauth_file_present=settings.oauth_store_file.exists(),
        agent_id=AGENT_ID,
    )
    print(json.dumps(summary.model_dump(), indent=2))
    return 0


def run_verify(settings: KeeperSettings) -> int:
    report = IntegrityVerifier(settings).verify()
    print(json.dumps(report.to_dict(), indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.env_file:
        load_dotenv(args.env_file, override=True)
    setup_logging()

    settings = get_settings()
    env = GatewayEnvironment.from_env()

    try:
        if args.command == "boot":
            return asyncio.run(run_boot(settings, env, serve=not args.no_serve))
        if args.command == "serve":
            asyncio.run(_serve_forever(settings, env))
            return 0
        if args.command == "sync":
            return asyncio.run(run_sync(settings, env))
        if args.command == "auth-state":
            return run_auth_state(settings)
        if args.command == "verify":
            return run_verify(settings)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 130
    return 2


if __name__ == "__main__":
    sys.exit(main())
