"""
Boot Pipeline
=============

Reconstructs consistent local state in a freshly recycled container and
starts the gateway. Phases run strictly in order on one event loop and each
records its typed result on the BootContext for the phases after it:

    already-running check -> object store setup -> restore decision
    -> restore -> onboarding -> extension install -> config patch
    -> auth reconcile -> integrity check -> gateway start

The restore decision is computed once, before the restore copies the remote
marker over the local one, and every later phase reads the latched value.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config.settings import GatewayEnvironment, KeeperSettings
from .auth_reconciler import AuthReconciler, ReconcileOutcome
from .backup_restore import BackupRestorer, RestoreOutcome
from .config_patcher import apply_config_patch
from .integrity import IntegrityReport, IntegrityVerifier
from .object_store import ObjectStore, RcloneObjectStore, configure_rclone
from .onboarding import install_extensions, run_onboarding
from .supervisor import ProcessHandle, ProcessSupervisor
from .sync_loop import SyncLoop
from .timestamps import RestoreDecision, resolve_restore_decision

logger = logging.getLogger(__name__)


@dataclass
class BootContext:
    """Accumulated phase results for one boot."""
    settings: KeeperSettings
    env: GatewayEnvironment
    already_running: bool = False
    store: Optional[ObjectStore] = None
    decision: Optional[RestoreDecision] = None
    restore: Optional[RestoreOutcome] = None
    onboarded: bool = False
    extensions: List[str] = field(default_factory=list)
    config: Optional[Dict[str, Any]] = None
    auth: Optional[ReconcileOutcome] = None
    integrity: Optional[IntegrityReport] = None
    gateway: Optional[ProcessHandle] = None


class BootPipeline:
    """Runs the boot phases once."""

    def __init__(
        self,
        settings: KeeperSettings,
        env: GatewayEnvironment,
        supervisor: Optional[ProcessSupervisor] = None,
        store: Optional[ObjectStore] = None,
    ):
        self.settings = settings
        self.env = env
        self.supervisor = supervisor or ProcessSupervisor(settings, env)
        self._store = store

    async def run(self, start_gateway: bool = True) -> BootContext:
        ctx = BootContext(settings=self.settings, env=self.env)

        if await self._check_already_running(ctx):
            return ctx

        self.settings.config_dir.mkdir(parents=True, exist_ok=True)

        ctx.store = self._setup_store()
        ctx.decision = await resolve_restore_decision(ctx.store, self.settings)
        ctx.restore = await BackupRestorer(ctx.store, self.settings).restore(ctx.decision)

        ctx.onboarded = await run_onboarding(self.settings, self.env)
        ctx.extensions = install_extensions(self.settings)
        ctx.config = apply_config_patch(self.settings.config_file, self.env, self.settings.extensions_dir)

        reconciler = AuthReconciler(self.settings, self.env, ctx.store)
        ctx.auth = await reconciler.reconcile(ctx.decision)

        ctx.integrity = IntegrityVerifier(self.settings).verify()

        if start_gateway:
            ctx.gateway = await self.supervisor.ensure_running()
        return ctx

    async def _check_already_running(self, ctx: BootContext) -> bool:
        existing = await self.supervisor.find_existing()
        if existing is None:
            return False
        logger.info(f"Gateway is already running (pid {existing.pid}), nothing to do")
        ctx.already_running = True
        ctx.gateway = existing
        return True

    def _setup_store(self) -> Optional[ObjectStore]:
        if self._store is not None:
            return self._store
        if not configure_rclone(self.settings, self.env):
            return None
        return RcloneObjectStore.from_settings(self.settings, self.env)

    def sync_loop(self, ctx: BootContext) -> Optional[SyncLoop]:
        """Background sync for this boot, or None when there is no object store."""
        if ctx.store is None:
            return None
        return SyncLoop(ctx.store, self.settings)
