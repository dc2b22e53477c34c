"""
Background backup to the object store.

SyncLoop pushes local state to the remote every interval, best-effort: a
failed step is logged and the next iteration tries again. sync_to_remote is
the one-shot variant behind POST /api/sync and `moltkeeper sync`; it reports
hard failures in its SyncResult instead of raising.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Optional

from pydantic import BaseModel

from ..config.settings import (
    CONFIG_FILE_NAME,
    LEGACY_CONFIG_FILE_NAME,
    PRODUCT_NAME,
    SYNC_MARKER_NAME,
    GatewayEnvironment,
    KeeperSettings,
)
from ..exceptions import ObjectStoreConfigError
from .object_store import ObjectStore, RcloneObjectStore, configure_rclone
from .timestamps import utc_now_iso

logger = logging.getLogger(__name__)

CONFIG_EXCLUDES = (".git/**", "*.lock", "*.log", "*.tmp")
WORKSPACE_EXCLUDES = ("skills/**", ".git/**")


class SyncResult(BaseModel):
    success: bool
    last_sync: Optional[str] = None
    error: Optional[str] = None
    details: Optional[str] = None


def select_config_dir(settings: KeeperSettings) -> Optional[Path]:
    """Current config dir if it holds openclaw.json, else the legacy one, else None."""
    if (settings.config_dir / CONFIG_FILE_NAME).is_file():
        return settings.config_dir
    if (settings.legacy_config_dir / LEGACY_CONFIG_FILE_NAME).is_file():
        return settings.legacy_config_dir
    return None


async def _sync_workspace(store: ObjectStore, settings: KeeperSettings) -> None:
    if settings.workspace_dir.is_dir():
        result = await store.sync(settings.workspace_dir, "workspace/", excludes=WORKSPACE_EXCLUDES)
        if not result.success:
            logger.warning(f"[sync] Workspace sync failed: {result.details}")


async def _sync_skills(store: ObjectStore, settings: KeeperSettings) -> None:
    if settings.skills_dir.is_dir():
        result = await store.sync(settings.skills_dir, "skills/")
        if not result.success:
            logger.warning(f"[sync] Skills sync failed: {result.details}")


async def _write_remote_marker(store: ObjectStore) -> Optional[str]:
    stamp = utc_now_iso()
    result = await store.put(SYNC_MARKER_NAME, stamp + "\n")
    if not result.success:
        logger.warning(f"[sync] Could not write remote sync marker: {result.details}")
        return None
    return stamp


async def sync_to_remote(
    settings: KeeperSettings,
    env: GatewayEnvironment,
    store: Optional[ObjectStore] = None,
) -> SyncResult:
    """
    Push config, workspace and skills to the remote once.

    Config sync is the only step whose failure fails the result; workspace
    and skills are best-effort.
    """
    if not env.r2_configured:
        return SyncResult(success=False, error="R2 storage is not configured")

    try:
        configure_rclone(settings, env)
    except ObjectStoreConfigError as e:
        return SyncResult(success=False, error="Failed to create rclone config", details=e.details)

    if store is None:
        store = RcloneObjectStore.from_settings(settings, env)

    config_dir = select_config_dir(settings)
    if config_dir is None:
        return SyncResult(
            success=False,
            error="Sync aborted: no config file found",
            details=f"Neither {CONFIG_FILE_NAME} nor {LEGACY_CONFIG_FILE_NAME} found in config directory.",
        )

    result = await store.sync(config_dir, f"{PRODUCT_NAME}/", excludes=CONFIG_EXCLUDES)
    if not result.success:
        return SyncResult(success=False, error="Config sync failed", details=result.details)

    await _sync_workspace(store, settings)
    await _sync_skills(store, settings)
    await _write_remote_marker(store)
    return SyncResult(success=True, last_sync=utc_now_iso())


class SyncLoop:
    """Periodic best-effort backup; runs as a background task after the gateway starts."""

    def __init__(self, store: ObjectStore, settings: KeeperSettings):
        self.store = store
        self.settings = settings
        self._task: Optional[asyncio.Task] = None
        self.iterations = 0

    async def run_once(self) -> bool:
        """One sync pass. Returns False when there was no config to sync."""
        config_dir = select_config_dir(self.settings)
        if config_dir is None:
            logger.debug("[sync] No config file yet, retrying later")
            return False

        await self._guarded("config", self._sync_config(config_dir))
        await self._guarded("workspace", _sync_workspace(self.store, self.settings))
        await self._guarded("skills", _sync_skills(self.store, self.settings))
        await self._guarded("marker", _write_remote_marker(self.store))
        self.iterations += 1
        return True

    async def _guarded(self, step: str, coro: Awaitable) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(f"[sync] {step} step failed: {e}")

    async def _sync_config(self, config_dir: Path) -> None:
        result = await self.store.sync(config_dir, f"{PRODUCT_NAME}/", excludes=CONFIG_EXCLUDES)
        if not result.success:
            logger.warning(f"[sync] Config sync failed: {result.details}")

    async def run_forever(self) -> None:
        await asyncio.sleep(self.settings.sync_initial_delay)
        logger.info("[sync] Background sync started")
        while True:
            synced = await self.run_once()
            if synced:
                await asyncio.sleep(self.settings.sync_interval)
            else:
                await asyncio.sleep(self.settings.sync_missing_config_retry)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
