"""
Backup freshness resolution.

The restore decision compares the remote ".last-sync" marker with the local
one. It must be computed once per boot, before any restore step copies the
remote marker over the local marker, and then latched in a RestoreDecision.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..config.settings import SYNC_MARKER_NAME, KeeperSettings
from .fileio import read_text
from .object_store import ObjectStore

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Current time as an ISO-8601 second-precision timestamp with offset."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def parse_epoch(value: Optional[str]) -> float:
    """Seconds since the epoch for an ISO-8601 marker; unparsable values are 0."""
    raw = (value or "").strip()
    if not raw:
        return 0.0
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def should_restore(remote_marker: Optional[str], local_marker: Optional[str]) -> bool:
    """True iff a remote marker exists and is strictly newer than the local one (or there is none)."""
    if not remote_marker or not remote_marker.strip():
        return False
    if not local_marker or not local_marker.strip():
        return True
    return parse_epoch(remote_marker) > parse_epoch(local_marker)


@dataclass(frozen=True)
class RestoreDecision:
    """Latched boot-time restore decision."""
    should_restore: bool
    remote_marker: Optional[str] = None
    local_marker: Optional[str] = None
    reason: str = ""
    store_available: bool = False


async def resolve_restore_decision(store: Optional[ObjectStore], settings: KeeperSettings) -> RestoreDecision:
    """Read both markers and decide once. Call this exactly once per boot."""
    if store is None:
        logger.info("R2 not configured, starting fresh")
        return RestoreDecision(should_restore=False, reason="store_unavailable")

    remote_marker = await store.cat(SYNC_MARKER_NAME)
    remote_marker = remote_marker.strip() if remote_marker else None
    if not remote_marker:
        logger.info("No R2 sync timestamp found, skipping restore")
        return RestoreDecision(should_restore=False, reason="no_remote_marker", store_available=True)

    local_marker = read_text(settings.local_sync_marker)
    local_marker = local_marker.strip() if local_marker else None
    if not local_marker:
        logger.info("No local sync timestamp, will restore from R2")
        return RestoreDecision(
            should_restore=True,
            remote_marker=remote_marker,
            reason="no_local_marker",
            store_available=True,
        )

    logger.info(f"R2 last sync: {remote_marker}")
    logger.info(f"Local last sync: {local_marker}")
    decision = should_restore(remote_marker, local_marker)
    if not decision:
        logger.info("Local data is current, skipping restore")
    return RestoreDecision(
        should_restore=decision,
        remote_marker=remote_marker,
        local_marker=local_marker,
        reason="remote_newer" if decision else "local_current",
        store_available=True,
    )
