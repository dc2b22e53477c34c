"""
Auth Profile Store
==================

Per-agent credential store in the versioned shape the gateway reads:

    {"version": 1, "profiles": {"<provider>:<label>": {"type": ..., "provider": ..., ...}}}

Credentials are a tagged variant on "type":

    token    {provider, token, expires?}   expires is epoch milliseconds
    api_key  {provider, key}
    oauth    {provider, ...}               passed through untouched

Older keepers wrote a flat legacy map {"<id>": {"provider", "apiKey"}} that
the gateway no longer reads. classify_store() names the shape explicitly and
migrate_store() is total: every shape maps into the versioned store, and
migrating a versioned store is a no-op.
"""

import base64
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from .fileio import atomic_write_json, parse_json, read_text

logger = logging.getLogger(__name__)

STORE_VERSION = 1
CODEX_PROVIDER = "openai-codex"
PASSTHROUGH_KEYS = ("order", "lastGood", "usageStats")

JWT_RE = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")


# =============================================================================
# JWT helpers
# =============================================================================

def is_jwt(token: Optional[str]) -> bool:
    return bool(token) and bool(JWT_RE.match(token))


def decode_jwt_payload(token: str) -> Optional[Dict[str, Any]]:
    """Decode the (unverified) payload segment of a JWT."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def jwt_expiry_ms(token: str) -> Optional[int]:
    """Expiry of a JWT in epoch milliseconds, from its exp claim."""
    if not is_jwt(token):
        return None
    payload = decode_jwt_payload(token) or {}
    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)) or exp <= 0:
        return None
    return int(exp * 1000)


def now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Credentials
# =============================================================================

@dataclass
class TokenCredential:
    provider: str
    token: str
    expires: Optional[int] = None
    type: str = field(default="token", init=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": "token", "provider": self.provider, "token": self.token}
        if self.expires:
            data["expires"] = self.expires
        return data


@dataclass
class ApiKeyCredential:
    provider: str
    key: str
    type: str = field(default="api_key", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "api_key", "provider": self.provider, "key": self.key}


@dataclass
class OAuthCredential:
    provider: str
    data: Dict[str, Any] = field(default_factory=dict)
    type: str = field(default="oauth", init=False)

    @property
    def expires(self) -> Optional[int]:
        value = self.data.get("expires")
        return value if isinstance(value, int) else None

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.data)
        out["type"] = "oauth"
        out["provider"] = self.provider
        return out


Credential = Union[TokenCredential, ApiKeyCredential, OAuthCredential]


def credential_from_dict(raw: Any) -> Optional[Credential]:
    """Decode one stored credential; unknown or malformed entries yield None."""
    if not isinstance(raw, dict):
        return None
    kind = str(raw.get("type") or "")
    provider = str(raw.get("provider") or "")
    if kind == "token" and isinstance(raw.get("token"), str):
        expires = raw.get("expires")
        return TokenCredential(
            provider=provider,
            token=raw["token"],
            expires=expires if isinstance(expires, int) and not isinstance(expires, bool) else None,
        )
    if kind == "api_key" and isinstance(raw.get("key"), str):
        return ApiKeyCredential(provider=provider, key=raw["key"])
    if kind == "oauth":
        data = {k: v for k, v in raw.items() if k not in ("type", "provider")}
        return OAuthCredential(provider=provider, data=data)
    return None


def is_expired(credential: Credential, at_ms: Optional[int] = None) -> bool:
    expires = getattr(credential, "expires", None)
    if not isinstance(expires, int) or expires <= 0:
        return False
    return (now_ms() if at_ms is None else at_ms) >= expires


# =============================================================================
# Store
# =============================================================================

class StoreShape(Enum):
    """On-disk auth store variants."""
    VERSIONED = "versioned"
    LEGACY = "legacy"
    EMPTY = "empty"


def classify_store(raw: Any) -> StoreShape:
    if isinstance(raw, dict) and isinstance(raw.get("profiles"), dict):
        return StoreShape.VERSIONED
    if isinstance(raw, dict) and "profiles" not in raw and any(isinstance(v, dict) for v in raw.values()):
        return StoreShape.LEGACY
    return StoreShape.EMPTY


@dataclass
class AuthProfileStore:
    """Versioned auth store. Profiles are kept as raw dicts so unknown fields survive a rewrite."""
    version: int = STORE_VERSION
    profiles: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": self.version, "profiles": self.profiles}
        for key in PASSTHROUGH_KEYS:
            if self.extras.get(key) is not None:
                data[key] = self.extras[key]
        return data

    def profile_ids_for(self, provider: str) -> Iterable[str]:
        prefix = provider.lower() + ":"
        return [pid for pid in self.profiles if pid.lower().startswith(prefix)]

    def has_provider(self, provider: Optional[str]) -> bool:
        return store_has_provider(self.to_dict(), provider)

    def has_valid_token(self, provider: str) -> bool:
        """An unexpired token/oauth credential stored for provider."""
        for pid in self.profile_ids_for(provider):
            cred = credential_from_dict(self.profiles.get(pid))
            if not isinstance(cred, (TokenCredential, OAuthCredential)):
                continue
            if cred.provider.lower() != provider.lower():
                continue
            if not is_expired(cred):
                return True
        return False


def _versioned_from_raw(raw: Dict[str, Any]) -> AuthProfileStore:
    version = raw.get("version")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        version = STORE_VERSION
    profiles = {str(k): v for k, v in raw["profiles"].items() if isinstance(v, dict)}
    extras = {k: raw[k] for k in PASSTHROUGH_KEYS if k in raw}
    return AuthProfileStore(version=version, profiles=profiles, extras=extras)


def _migrate_legacy(raw: Dict[str, Any], at_ms: Optional[int] = None) -> AuthProfileStore:
    store = AuthProfileStore()
    for entry_id, cred in raw.items():
        if not isinstance(cred, dict):
            continue
        provider = str(cred.get("provider") or str(entry_id).split(":")[0] or "").strip()
        if not provider:
            continue
        secret = str(cred.get("apiKey") or cred.get("key") or cred.get("token") or "").strip()
        if not secret:
            continue

        profile_id = f"{provider}:default"
        if provider == CODEX_PROVIDER:
            token = TokenCredential(provider=provider, token=secret, expires=jwt_expiry_ms(secret))
            if is_expired(token, at_ms):
                logger.info(f"[AUTH-RECONCILE] Skipping expired legacy credential for {provider}")
                continue
            store.profiles[profile_id] = token.to_dict()
        else:
            store.profiles[profile_id] = ApiKeyCredential(provider=provider, key=secret).to_dict()
    return store


def migrate_store(raw: Any, at_ms: Optional[int] = None) -> AuthProfileStore:
    """Map any on-disk shape into the versioned store."""
    shape = classify_store(raw)
    if shape is StoreShape.VERSIONED:
        return _versioned_from_raw(raw)
    if shape is StoreShape.LEGACY:
        return _migrate_legacy(raw, at_ms)
    return AuthProfileStore()


def store_has_provider(raw: Any, provider: Optional[str]) -> bool:
    """
    Whether a raw store (either shape) holds a profile for provider.

    Matches on the credential's provider field or the profile-id prefix,
    case-insensitively.
    """
    if not provider or not isinstance(raw, dict):
        return False
    p = provider.lower()

    entries = raw["profiles"] if isinstance(raw.get("profiles"), dict) else raw
    for entry_id, cred in entries.items():
        if not isinstance(cred, dict):
            continue
        if str(cred.get("provider") or "").lower() == p:
            return True
        if str(entry_id).lower().startswith(p + ":"):
            return True
    return False


# =============================================================================
# Persistence
# =============================================================================

def load_raw_store(path: Path) -> Any:
    return parse_json(read_text(path))


def save_store(path: Path, store: AuthProfileStore) -> None:
    atomic_write_json(path, store.to_dict(), mode=0o600)
