"""
moltkeeper core: restore, reconcile and supervise.
"""

from .auth_reconciler import AuthReconciler, AuthReconcileState, ReconcileOutcome
from .backup_restore import BackupLayout, BackupRestorer, RestoreOutcome
from .boot import BootContext, BootPipeline
from .config_patcher import apply_config_patch, patch_config
from .integrity import IntegrityReport, IntegrityVerifier
from .supervisor import GatewayStatus, ProcessHandle, ProcessStatus, ProcessSupervisor
from .sync_loop import SyncLoop, SyncResult, sync_to_remote
from .timestamps import RestoreDecision, resolve_restore_decision, should_restore

__all__ = [
    "AuthReconciler",
    "AuthReconcileState",
    "ReconcileOutcome",
    "BackupLayout",
    "BackupRestorer",
    "RestoreOutcome",
    "BootContext",
    "BootPipeline",
    "apply_config_patch",
    "patch_config",
    "IntegrityReport",
    "IntegrityVerifier",
    "GatewayStatus",
    "ProcessHandle",
    "ProcessStatus",
    "ProcessSupervisor",
    "SyncLoop",
    "SyncResult",
    "sync_to_remote",
    "RestoreDecision",
    "resolve_restore_decision",
    "should_restore",
]
