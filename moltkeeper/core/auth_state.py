"""
Auth State Evaluation
=====================

Derives which model provider the gateway will use and whether a credential
for it is available.

Two views are produced from the same inputs:

- AuthStateSnapshot: the boot-time check driving the reconciler. Reads the
  config and auth store structurally.
- AuthStateSummary: the sanitized diagnostic served over HTTP. Collects every
  provider mentioned in the store, and falls back to a token-boundary scan
  of the raw text when the store is not valid JSON, so a truncated file
  still reports the providers it visibly contains. It never carries
  credential values.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel

from ..config.settings import AGENT_ID, GatewayEnvironment
from .auth_profiles import store_has_provider
from .fileio import atomic_write_json, parse_json

logger = logging.getLogger(__name__)

MODEL_PROVIDER_RE = re.compile(r"^([a-z0-9][a-z0-9._-]*)/(\S+)$", re.IGNORECASE)
SIMPLE_PROVIDER_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$", re.IGNORECASE)
PROVIDER_KEYS = {"provider", "providername", "providerid"}


# =============================================================================
# Model references
# =============================================================================

def get_primary_model(config: Any) -> Optional[str]:
    """agents.defaults.model as a bare string or {"primary": "..."}."""
    if not isinstance(config, dict):
        return None
    agents = config.get("agents")
    defaults = agents.get("defaults") if isinstance(agents, dict) else None
    model = defaults.get("model") if isinstance(defaults, dict) else None
    if isinstance(model, str):
        return model
    if isinstance(model, dict) and isinstance(model.get("primary"), str):
        return model["primary"]
    return None


def get_model_refs(config: Any) -> List[str]:
    """Primary plus fallback model references."""
    refs = []
    primary = get_primary_model(config)
    if primary:
        refs.append(primary)
    try:
        fallbacks = config["agents"]["defaults"]["model"]["fallbacks"]
    except (KeyError, TypeError):
        fallbacks = None
    if isinstance(fallbacks, list):
        refs.extend(ref for ref in fallbacks if isinstance(ref, str))
    return refs


def provider_from_model_ref(model_ref: Optional[str]) -> Optional[str]:
    """Lowercased provider segment of "<provider>/<model>"; URLs and slash-less refs yield None."""
    if not model_ref or not isinstance(model_ref, str):
        return None
    trimmed = model_ref.strip()
    if not trimmed or trimmed.startswith("http://") or trimmed.startswith("https://"):
        return None
    match = MODEL_PROVIDER_RE.match(trimmed)
    if not match:
        return None
    return match.group(1).lower()


# =============================================================================
# Boot-time snapshot
# =============================================================================

def provider_prefix(model_ref: Optional[str]) -> Optional[str]:
    """Lowercased text before the first slash; the boot check accepts any provider spelling."""
    if not model_ref or not isinstance(model_ref, str):
        return None
    trimmed = model_ref.strip()
    if not trimmed or trimmed.startswith("http://") or trimmed.startswith("https://"):
        return None
    slash = trimmed.find("/")
    if slash <= 0:
        return None
    return trimmed[:slash].lower()


@dataclass(frozen=True)
class AuthStateSnapshot:
    primary_model: Optional[str]
    primary_provider: Optional[str]
    auth_profiles_present: bool
    has_required_provider: bool
    mismatch: bool

    def to_dict(self) -> dict:
        return {
            "primaryModel": self.primary_model,
            "primaryProvider": self.primary_provider,
            "authProfilesPresent": self.auth_profiles_present,
            "hasRequiredProvider": self.has_required_provider,
            "mismatch": self.mismatch,
        }


def evaluate(config: Any, auth_text: Optional[str], env: GatewayEnvironment) -> AuthStateSnapshot:
    """
    Check whether the primary model's provider has a usable credential.

    Args:
        config: Parsed config document (anything non-dict means no primary model)
        auth_text: Raw auth store text, or None when the file is missing; unparsable text counts as absent
        env: Environment snapshot for direct provider credentials
    """
    primary_model = get_primary_model(config)
    primary_provider = provider_prefix(primary_model)
    auth_obj = parse_json(auth_text)

    if primary_provider:
        has_required = env.has_provider_credential(primary_provider) or store_has_provider(
            auth_obj, primary_provider
        )
    else:
        has_required = True

    return AuthStateSnapshot(
        primary_model=primary_model,
        primary_provider=primary_provider,
        auth_profiles_present=auth_obj is not None,
        has_required_provider=has_required,
        mismatch=bool(primary_provider) and not has_required,
    )


def write_state_cache(path: Path, snapshot: AuthStateSnapshot) -> None:
    """Diagnostic cache only; failures are not interesting enough to surface."""
    try:
        atomic_write_json(path, snapshot.to_dict())
    except OSError as e:
        logger.debug(f"Could not write auth state cache {path}: {e}")


# =============================================================================
# Sanitized diagnostic summary
# =============================================================================

class AuthStateSummary(BaseModel):
    """Provider/credential summary safe to expose over HTTP."""
    primary_model: Optional[str] = None
    primary_provider: Optional[str] = None
    agent_id: str = AGENT_ID
    auth_profiles_present: bool = False
    providers_with_profiles: List[str] = []
    has_legacy_oauth_import_file: bool = False
    mismatch_detected: bool = False


def _add_provider(out: List[str], candidate: Optional[str]) -> None:
    if not candidate:
        return
    normalized = candidate.strip().lower()
    if normalized and SIMPLE_PROVIDER_RE.match(normalized) and normalized not in out:
        out.append(normalized)


def collect_providers(value: Any, out: List[str], parent_key: str = "", seen: Optional[set] = None) -> None:
    """Walk a JSON value collecting provider ids from provider-ish keys and model references."""
    if seen is None:
        seen = set()

    if isinstance(value, str):
        if parent_key in PROVIDER_KEYS:
            _add_provider(out, value)
        _add_provider(out, provider_from_model_ref(value))
        return

    if not isinstance(value, (dict, list)):
        return
    if id(value) in seen:
        return
    seen.add(id(value))

    if isinstance(value, list):
        for item in value:
            collect_providers(item, out, parent_key, seen)
        return

    for key, child in value.items():
        _add_provider(out, provider_from_model_ref(str(key)))
        collect_providers(child, out, str(key).lower(), seen)


def has_provider_token(raw: Optional[str], provider: Optional[str]) -> bool:
    """Whether provider appears in raw as a whole token (not part of a longer id)."""
    if not raw or not provider:
        return False
    pattern = re.compile(r"(^|[^a-z0-9._-])" + re.escape(provider) + r"([^a-z0-9._-]|$)", re.IGNORECASE)
    return bool(pattern.search(raw))


def summarize_auth_state(
    config_text: Optional[str],
    auth_profiles_text: Optional[str],
    oauth_file_present: bool = False,
    agent_id: Optional[str] = None,
) -> AuthStateSummary:
    config_obj = parse_json(config_text)
    auth_obj = parse_json(auth_profiles_text)

    primary_model = get_primary_model(config_obj)
    primary_provider = provider_from_model_ref(primary_model)

    providers: List[str] = []
    collect_providers(auth_obj, providers)
    if primary_provider and has_provider_token(auth_profiles_text, primary_provider):
        _add_provider(providers, primary_provider)

    has_primary = primary_provider in providers if primary_provider else True

    return AuthStateSummary(
        primary_model=primary_model,
        primary_provider=primary_provider,
        agent_id=agent_id or AGENT_ID,
        auth_profiles_present=bool(auth_profiles_text and auth_profiles_text.strip()),
        providers_with_profiles=providers,
        has_legacy_oauth_import_file=bool(oauth_file_present),
        mismatch_detected=bool(primary_provider) and not has_primary,
    )
