"""
Backup Restore
==============

Copies the remote backup onto local state when the latched RestoreDecision
says the remote copy is newer.

Three remote layout generations are recognized, probed in order:

    CURRENT        <remote>/openclaw/openclaw.json
    LEGACY_NESTED  <remote>/clawdbot/clawdbot.json
    LEGACY_FLAT    <remote>/clawdbot.json   (bucket root)

The first layout found is copied into the config directory. Legacy layouts
leave a clawdbot.json behind, which is renamed to openclaw.json unless a
current-named file already exists. Workspace and skills trees are restored
independently. Everything here is best-effort: a failed copy is logged and
the boot continues as a fresh start.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from ..config.settings import (
    CONFIG_FILE_NAME,
    LEGACY_CONFIG_FILE_NAME,
    LEGACY_PRODUCT_NAME,
    PRODUCT_NAME,
    SYNC_MARKER_NAME,
    KeeperSettings,
)
from .fileio import atomic_write_text
from .object_store import ObjectStore
from .timestamps import RestoreDecision

logger = logging.getLogger(__name__)


class BackupLayout(Enum):
    """Historical remote backup layouts, newest first."""
    CURRENT = "current"
    LEGACY_NESTED = "legacy_nested"
    LEGACY_FLAT = "legacy_flat"

    @property
    def probe_path(self) -> str:
        return {
            BackupLayout.CURRENT: f"{PRODUCT_NAME}/{CONFIG_FILE_NAME}",
            BackupLayout.LEGACY_NESTED: f"{LEGACY_PRODUCT_NAME}/{LEGACY_CONFIG_FILE_NAME}",
            BackupLayout.LEGACY_FLAT: LEGACY_CONFIG_FILE_NAME,
        }[self]

    @property
    def source_prefix(self) -> str:
        return {
            BackupLayout.CURRENT: f"{PRODUCT_NAME}/",
            BackupLayout.LEGACY_NESTED: f"{LEGACY_PRODUCT_NAME}/",
            BackupLayout.LEGACY_FLAT: "",
        }[self]

    @property
    def includes(self) -> Tuple[str, ...]:
        # The flat layout shares the bucket root with workspace/ and skills/.
        if self is BackupLayout.LEGACY_FLAT:
            return (LEGACY_CONFIG_FILE_NAME, "*.db", SYNC_MARKER_NAME)
        return ()

    @property
    def is_legacy(self) -> bool:
        return self is not BackupLayout.CURRENT


@dataclass
class RestoreOutcome:
    """What the restore step actually put on disk."""
    restored_config: bool = False
    restored_workspace: bool = False
    restored_skills: bool = False
    layout: Optional[BackupLayout] = None


class BackupRestorer:
    """Restores config, workspace and skills trees from the object store."""

    def __init__(self, store: Optional[ObjectStore], settings: KeeperSettings):
        self.store = store
        self.settings = settings

    async def restore(self, decision: RestoreDecision) -> RestoreOutcome:
        outcome = RestoreOutcome()
        if self.store is None or not decision.should_restore:
            return outcome

        self.settings.config_dir.mkdir(parents=True, exist_ok=True)

        layout = await self._detect_layout()
        if layout is None:
            logger.info("[Restore] R2 accessible but no backup data found")
        else:
            outcome.layout = layout
            outcome.restored_config = await self._restore_config(layout)

        outcome.restored_workspace = await self._restore_tree(
            "workspace/", self.settings.workspace_dir, "workspace"
        )
        outcome.restored_skills = await self._restore_tree(
            "skills/", self.settings.skills_dir, "skills"
        )
        return outcome

    async def _detect_layout(self) -> Optional[BackupLayout]:
        for layout in BackupLayout:
            try:
                if await self.store.exists(layout.probe_path):
                    return layout
            except Exception as e:
                logger.warning(f"[Restore] Probe failed for {layout.value} layout: {e}")
        return None

    async def _restore_config(self, layout: BackupLayout) -> bool:
        config_dir = self.settings.config_dir
        logger.info(f"[Restore] Restoring config from R2 ({layout.value} layout)...")

        try:
            result = await self.store.copy(layout.source_prefix, config_dir, includes=layout.includes)
        except Exception as e:
            logger.warning(f"[Restore] Config copy raised: {e}")
            return False
        if not result.success:
            logger.warning(f"[Restore] Config copy failed: {result.details}")
            return False

        if layout is not BackupLayout.LEGACY_FLAT:
            await self._copy_remote_marker()

        if layout.is_legacy:
            self._migrate_legacy_config_name()

        logger.info(f"[Restore] Restored config from R2 backup ({layout.value})")
        return True

    async def _copy_remote_marker(self) -> None:
        try:
            marker = await self.store.cat(SYNC_MARKER_NAME)
        except Exception as e:
            logger.warning(f"[Restore] Could not read remote sync marker: {e}")
            return
        if not marker:
            return
        try:
            atomic_write_text(self.settings.local_sync_marker, marker)
        except OSError as e:
            logger.warning(f"[Restore] Could not write local sync marker: {e}")

    def _migrate_legacy_config_name(self) -> None:
        legacy = self.settings.config_dir / LEGACY_CONFIG_FILE_NAME
        current = self.settings.config_file
        if legacy.is_file() and not current.exists():
            try:
                legacy.rename(current)
                logger.info(f"[Restore] Migrated {legacy.name} -> {current.name}")
            except OSError as e:
                logger.warning(f"[Restore] Could not rename legacy config: {e}")

    async def _restore_tree(self, remote_prefix: str, local_dir: Path, label: str) -> bool:
        try:
            entries = await self.store.list(remote_prefix)
        except Exception as e:
            logger.warning(f"[Restore] Could not list remote {label}: {e}")
            return False
        if not entries:
            return False

        logger.info(f"[Restore] Restoring {label} from R2...")
        try:
            result = await self.store.copy(remote_prefix, local_dir)
        except Exception as e:
            logger.warning(f"[Restore] {label} copy raised: {e}")
            return False
        if not result.success:
            logger.warning(f"[Restore] {label} copy failed: {result.details}")
            return False

        logger.info(f"[Restore] Restored {label} from R2 backup")
        return True
