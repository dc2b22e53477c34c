"""
Keeper HTTP Surface
===================

Thin aiohttp layer over the ProcessSupervisor and the sync/diagnostic
operations. Unauthenticated: it is meant to sit behind the edge that fronts
the container.

Routes:
    GET  /sandbox-health         liveness of the keeper itself
    GET  /api/status             gateway status
    POST /api/start              ensure the gateway is running
    POST /api/force-restart      kill every gateway process
    POST /api/sync               one-shot backup to the object store
    GET  /debug/auth-state       sanitized auth summary (DEBUG_ROUTES=true only)
    GET  /logo.png, /logo-small.png, /_admin/assets/{path}   static passthrough
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from aiohttp import web

from ..config.settings import AGENT_ID, GatewayEnvironment, KeeperSettings
from ..core.auth_state import summarize_auth_state
from ..core.fileio import read_text
from ..core.object_store import ObjectStore
from ..core.supervisor import ProcessSupervisor
from ..core.sync_loop import sync_to_remote

logger = logging.getLogger(__name__)

FORCE_RESTART_MESSAGE = "All processes killed. Gateway will restart on next request."
SERVICE_NAME = "moltbot-sandbox"


# =============================================================================
# Middleware
# =============================================================================

@web.middleware
async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Add CORS headers and handle preflight requests."""
    if request.method == "OPTIONS":
        response = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            response = e

    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return response


@web.middleware
async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Turn unhandled errors into a JSON body with a 500 status."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(f"[API] Unhandled error on {request.method} {request.path}")
        return web.json_response({"ok": False, "error": str(e) or "Unknown error"}, status=500)


# =============================================================================
# Route Handlers
# =============================================================================

async def sandbox_health(request: web.Request) -> web.Response:
    settings: KeeperSettings = request.app["settings"]
    return web.json_response({
        "status": "ok",
        "service": SERVICE_NAME,
        "gateway_port": settings.gateway_port,
    })


async def gateway_status(request: web.Request) -> web.Response:
    supervisor: ProcessSupervisor = request.app["supervisor"]
    status = await supervisor.status()
    return web.json_response(status.model_dump(exclude_none=True))


async def start_gateway(request: web.Request) -> web.Response:
    supervisor: ProcessSupervisor = request.app["supervisor"]
    try:
        logger.info("[API/START] Starting gateway...")
        await supervisor.ensure_running()
        logger.info("[API/START] Gateway started successfully")
        handle = await supervisor.find_existing()
        return web.json_response({
            "ok": True,
            "status": "running",
            "processId": handle.id if handle else "untracked",
        })
    except Exception as e:
        logger.error(f"[API/START] Failed to start gateway: {e}")
        return web.json_response({"ok": False, "error": str(e) or "Unknown error"}, status=500)


async def force_restart(request: web.Request) -> web.Response:
    supervisor: ProcessSupervisor = request.app["supervisor"]
    try:
        killed = await supervisor.force_restart()
        return web.json_response({"ok": True, "killed": killed, "message": FORCE_RESTART_MESSAGE})
    except Exception as e:
        logger.error(f"[FORCE-RESTART] Failed: {e}")
        return web.json_response({"ok": False, "error": str(e) or "Unknown error"}, status=500)


async def sync_now(request: web.Request) -> web.Response:
    result = await sync_to_remote(request.app["settings"], request.app["env"], request.app.get("store"))
    if result.success:
        logger.info(f"[sync] Manual sync completed at {result.last_sync}")
    else:
        logger.warning(f"[sync] Manual sync failed: {result.error}")
    return web.json_response(result.model_dump(exclude_none=True), status=200 if result.success else 500)


async def debug_auth_state(request: web.Request) -> web.Response:
    env: GatewayEnvironment = request.app["env"]
    if not env.debug_routes:
        raise web.HTTPNotFound()

    settings: KeeperSettings = request.app["settings"]
    summary = summarize_auth_state(
        read_text(settings.config_file),
        read_text(settings.auth_store_file),
        oauth_file_present=settings.oauth_store_file.exists(),
        agent_id=AGENT_ID,
    )
    return web.json_response(summary.model_dump())


def _safe_asset(base: Path, relative: str) -> Optional[Path]:
    """Resolve relative under base, rejecting traversal."""
    if not relative or ".." in relative.split("/") or relative.startswith("/"):
        return None
    base = base.resolve()
    candidate = (base / relative).resolve()
    if base != candidate and base not in candidate.parents:
        return None
    return candidate


async def serve_logo(request: web.Request) -> web.StreamResponse:
    settings: KeeperSettings = request.app["settings"]
    resolved = _safe_asset(settings.assets_dir, request.path.lstrip("/"))
    if resolved is None or not resolved.is_file():
        return web.Response(text="Not found", status=404)
    return web.FileResponse(resolved)


async def serve_admin_asset(request: web.Request) -> web.StreamResponse:
    settings: KeeperSettings = request.app["settings"]
    filename = request.match_info.get("path", "")
    resolved = _safe_asset(settings.assets_dir / "assets", filename)
    if resolved is None:
        return web.Response(text="Invalid path", status=400)
    if not resolved.is_file():
        return web.Response(text=f"File not found: {filename}", status=404)
    return web.FileResponse(resolved)


# =============================================================================
# Application Lifecycle
# =============================================================================

async def on_startup(app: web.Application):
    await app["supervisor"].start()


async def on_shutdown(app: web.Application):
    await app["supervisor"].close()


def create_app(
    settings: KeeperSettings,
    env: GatewayEnvironment,
    supervisor: Optional[ProcessSupervisor] = None,
    store: Optional[ObjectStore] = None,
) -> web.Application:
    """Create and configure the application."""
    app = web.Application(middlewares=[cors_middleware, error_middleware])

    app.router.add_get("/sandbox-health", sandbox_health)
    app.router.add_get("/api/status", gateway_status)
    app.router.add_post("/api/start", start_gateway)
    app.router.add_post("/api/force-restart", force_restart)
    app.router.add_post("/api/sync", sync_now)
    app.router.add_get("/debug/auth-state", debug_auth_state)

    app.router.add_get("/logo.png", serve_logo)
    app.router.add_get("/logo-small.png", serve_logo)
    app.router.add_get("/_admin/assets/{path:.*}", serve_admin_asset)

    app.on_startup.append(on_startup)
    app.on_shutdown.append(on_shutdown)

    app["settings"] = settings
    app["env"] = env
    app["supervisor"] = supervisor or ProcessSupervisor(settings, env)
    app["store"] = store
    return app


async def start_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Start serving app; returns the runner for shutdown."""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"{'=' * 60}")
    logger.info(f" moltkeeper HTTP surface: http://{host}:{port}")
    logger.info(f"   GET  /api/status   POST /api/start   POST /api/force-restart")
    logger.info(f"   POST /api/sync     GET  /sandbox-health")
    logger.info(f"{'=' * 60}")
    return runner


async def shutdown_server(runner: web.AppRunner):
    await runner.cleanup()
    logger.info("Server stopped")
