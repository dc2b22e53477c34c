"""
Auth Reconciler
===============

Self-heals a mismatch between the configured primary model's provider and
the credentials actually available, before the gateway is started.

State transitions:
    CONSISTENT                               (no mismatch on first check)
    MISMATCH_DETECTED -> RECOVERING_FROM_STORE
                      -> RECOVERING_FROM_ENVIRONMENT
                      -> RECOVERING_FROM_REMOTE     (only when a restore ran this boot)
                      -> RECOVERING_VIA_REFRESH     (only when an OAuth import file exists)
                      -> RESOLVED                   (first stage after which the check passes)
                      -> DEGRADED                   (every stage exhausted)

Each stage is one distinct attempt followed by a fresh re-evaluation from
disk; nothing is retried. DEGRADED writes a marker file for diagnostics and
the gateway is started anyway: serving in a possibly non-functional state is
preferred over refusing to start.
Whatever the outcome, the openai-codex fallback profile is bootstrapped again
after the last stage, since a remote restore replaces the whole store.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from ..config.settings import (
    AGENT_ID,
    PRODUCT_NAME,
    GatewayEnvironment,
    KeeperSettings,
)
from .auth_profiles import (
    CODEX_PROVIDER,
    AuthProfileStore,
    StoreShape,
    TokenCredential,
    classify_store,
    is_jwt,
    jwt_expiry_ms,
    load_raw_store,
    migrate_store,
    now_ms,
    save_store,
)
from .auth_state import AuthStateSnapshot, evaluate, get_model_refs, write_state_cache
from .commands import run_command
from .fileio import atomic_write_text, parse_json, read_json, read_text
from .object_store import ObjectStore
from .timestamps import RestoreDecision, utc_now_iso

logger = logging.getLogger(__name__)

TAG = "[AUTH-RECONCILE]"
AUTH_STORE_REMOTE_PATHS = (
    f"{PRODUCT_NAME}/agents/{AGENT_ID}/agent/auth-profiles.json",
    f"agents/{AGENT_ID}/agent/auth-profiles.json",
)


class AuthReconcileState(Enum):
    CONSISTENT = "consistent"
    MISMATCH_DETECTED = "mismatch_detected"
    RECOVERING_FROM_STORE = "recovering_from_store"
    RECOVERING_FROM_ENVIRONMENT = "recovering_from_environment"
    RECOVERING_FROM_REMOTE = "recovering_from_remote"
    RECOVERING_VIA_REFRESH = "recovering_via_refresh"
    DEGRADED = "degraded"
    RESOLVED = "resolved"


@dataclass
class ReconcileOutcome:
    state: AuthReconcileState
    snapshot: AuthStateSnapshot
    history: List[AuthReconcileState] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.state is AuthReconcileState.DEGRADED


class AuthReconciler:
    """Runs the staged recovery once per boot."""

    def __init__(
        self,
        settings: KeeperSettings,
        env: GatewayEnvironment,
        store: Optional[ObjectStore] = None,
    ):
        self.settings = settings
        self.env = env
        self.store = store
        self._history: List[AuthReconcileState] = []

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def check(self) -> AuthStateSnapshot:
        """Re-read config and auth store from disk and evaluate."""
        config = read_json(self.settings.config_file)
        snapshot = evaluate(config, read_text(self.settings.auth_store_file), self.env)
        write_state_cache(self.settings.auth_state_file, snapshot)
        logger.info(
            f"{TAG} primary_model={snapshot.primary_model or 'none'}"
            f" primary_provider={snapshot.primary_provider or 'none'}"
            f" auth_profiles_present={str(snapshot.auth_profiles_present).lower()}"
            f" has_required_provider={str(snapshot.has_required_provider).lower()}"
        )
        return snapshot

    def _enter(self, state: AuthReconcileState) -> None:
        self._history.append(state)
        logger.debug(f"{TAG} -> {state.value}")

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def reconcile(self, decision: Optional[RestoreDecision] = None) -> ReconcileOutcome:
        self._history = []
        snapshot = self.check()

        if not snapshot.mismatch:
            self._enter(AuthReconcileState.CONSISTENT)
            logger.info(f"{TAG} Provider/auth profile state is consistent")
            self.bootstrap_fallback_provider()
            self.clear_degraded_marker()
            return ReconcileOutcome(AuthReconcileState.CONSISTENT, snapshot, list(self._history))

        self._enter(AuthReconcileState.MISMATCH_DETECTED)
        logger.warning(f"{TAG} Provider/auth profile mismatch detected")
        restored = bool(decision and decision.should_restore)
        if restored:
            logger.warning(f"{TAG} Restore integrity warning: config restored but provider profile missing")

        stages: List[tuple] = [
            (AuthReconcileState.RECOVERING_FROM_STORE, self._recover_from_store),
            (AuthReconcileState.RECOVERING_FROM_ENVIRONMENT, self._recover_from_environment),
        ]
        if restored and self.store is not None:
            stages.append((AuthReconcileState.RECOVERING_FROM_REMOTE, self._recover_from_remote))
        if self.settings.oauth_store_file.exists():
            stages.append((AuthReconcileState.RECOVERING_VIA_REFRESH, self._recover_via_refresh))

        for state, stage in stages:
            self._enter(state)
            snapshot = await self._run_stage(state, stage, snapshot)
            if not snapshot.mismatch:
                self._enter(AuthReconcileState.RESOLVED)
                logger.info(f"{TAG} Reconciled provider/auth profile mismatch ({state.value})")
                self._reinstall_fallback_provider()
                self.clear_degraded_marker()
                return ReconcileOutcome(AuthReconcileState.RESOLVED, snapshot, list(self._history))

        self._enter(AuthReconcileState.DEGRADED)
        self._reinstall_fallback_provider()
        self.write_degraded_marker(snapshot.primary_provider)
        return ReconcileOutcome(AuthReconcileState.DEGRADED, snapshot, list(self._history))

    async def _run_stage(
        self,
        state: AuthReconcileState,
        stage: Callable[[], Awaitable[bool]],
        previous: AuthStateSnapshot,
    ) -> AuthStateSnapshot:
        try:
            changed = await stage()
        except Exception as e:
            logger.warning(f"{TAG} Stage {state.value} failed: {e}")
            return previous
        if not changed:
            return previous
        return self.check()

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _recover_from_store(self) -> bool:
        return self.migrate_legacy_store()

    async def _recover_from_environment(self) -> bool:
        return self.bootstrap_fallback_provider()

    async def _recover_from_remote(self) -> bool:
        for remote_path in AUTH_STORE_REMOTE_PATHS:
            text = await self.store.cat(remote_path)
            if not text or not text.strip():
                continue
            if parse_json(text) is None:
                logger.warning(f"{TAG} Ignoring malformed auth-profiles backup at {remote_path}")
                continue
            atomic_write_text(self.settings.auth_store_file, text, mode=0o600)
            logger.info(f"{TAG} Restored auth profiles from R2 backup ({remote_path})")
            return True
        logger.info(f"{TAG} No auth-profiles backup found in R2")
        return False

    async def _recover_via_refresh(self) -> bool:
        logger.info(f"{TAG} OAuth credentials detected, running non-interactive auth refresh")
        binary = self.settings.gateway_binary
        timeout = self.settings.cli_command_timeout
        log_lines = []

        for cmd in ([binary, "models", "list", "--json"], [binary, "doctor", "--non-interactive"]):
            result = await run_command(cmd, timeout=timeout)
            log_lines.append(f"$ {' '.join(cmd)} (exit {result.returncode})\n{result.stdout}{result.stderr}")
            if result.success:
                break

        try:
            self.settings.auth_reconcile_log.parent.mkdir(parents=True, exist_ok=True)
            with open(self.settings.auth_reconcile_log, "a", encoding="utf-8") as handle:
                handle.write("\n".join(log_lines) + "\n")
        except OSError as e:
            logger.debug(f"Could not write {self.settings.auth_reconcile_log}: {e}")
        return True

    def _reinstall_fallback_provider(self) -> None:
        # A remote restore replaces the whole store, dropping a profile bootstrapped earlier.
        try:
            self.bootstrap_fallback_provider()
        except OSError as e:
            logger.warning(f"{TAG} Could not bootstrap {CODEX_PROVIDER} auth profile: {e}")

    # -------------------------------------------------------------------------
    # Store repair
    # -------------------------------------------------------------------------

    def migrate_legacy_store(self) -> bool:
        """Rewrite a legacy flat store in the versioned shape. Returns True if a migration was written."""
        path = self.settings.auth_store_file
        raw = load_raw_store(path)
        if classify_store(raw) is not StoreShape.LEGACY:
            return False

        store = migrate_store(raw)
        if not store.profiles:
            logger.info(f"{TAG} Legacy auth-profiles.json had no usable credentials")
            return False
        save_store(path, store)
        logger.info(f"{TAG} Migrated legacy auth-profiles.json to modern store format")
        return True

    def bootstrap_fallback_provider(self) -> bool:
        """
        Install an openai-codex token profile from OPENAI_API_KEY.

        The gateway does not read OPENAI_API_KEY for openai-codex; it must be in
        the auth store. Only done when a model reference uses openai-codex, the
        key is a JWT that has not expired, and no valid profile exists yet.
        """
        token = self.env.openai_api_key
        if not token:
            return False

        config = read_json(self.settings.config_file)
        if not any(ref.startswith(f"{CODEX_PROVIDER}/") for ref in get_model_refs(config)):
            return False

        path = self.settings.auth_store_file
        raw = load_raw_store(path)
        store: AuthProfileStore = migrate_store(raw)
        migrated = classify_store(raw) is StoreShape.LEGACY and bool(store.profiles)

        if not store.has_valid_token(CODEX_PROVIDER):
            if not is_jwt(token):
                logger.info(f"{TAG} OPENAI_API_KEY does not look like an OAuth/JWT token; cannot bootstrap {CODEX_PROVIDER}")
            else:
                expires = jwt_expiry_ms(token)
                if expires and now_ms() >= expires:
                    logger.info(f"{TAG} OPENAI_API_KEY OAuth/JWT token is expired; cannot bootstrap {CODEX_PROVIDER}")
                else:
                    store.profiles[f"{CODEX_PROVIDER}:default"] = TokenCredential(
                        provider=CODEX_PROVIDER, token=token, expires=expires
                    ).to_dict()
                    save_store(path, store)
                    logger.info(f"{TAG} Bootstrapped {CODEX_PROVIDER} auth profile from OPENAI_API_KEY")
                    return True

        if migrated:
            save_store(path, store)
            logger.info(f"{TAG} Migrated legacy auth-profiles.json to modern store format")
            return True
        return False

    # -------------------------------------------------------------------------
    # Degraded marker
    # -------------------------------------------------------------------------

    def write_degraded_marker(self, provider: Optional[str]) -> None:
        provider = provider or "unknown"
        try:
            atomic_write_text(
                self.settings.degraded_marker_file,
                f"{utc_now_iso()} primary_provider={provider} status=degraded\n",
            )
        except OSError as e:
            logger.warning(f"{TAG} Could not write degraded marker: {e}")
        logger.error(f"{TAG} No auth profile found for provider '{provider}'. Gateway will start in degraded mode.")
        logger.error(f"{TAG} Resolve via: openclaw agents add main (or restore auth-profiles.json), then restart.")

    def clear_degraded_marker(self) -> None:
        try:
            self.settings.degraded_marker_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"{TAG} Could not remove degraded marker: {e}")
