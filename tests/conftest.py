"""
Pytest configuration and shared fixtures for moltkeeper tests.

This file contains:
- Project root on sys.path
- KeeperSettings pointed at a temporary directory
- An in-memory ObjectStore stand-in
"""

import fnmatch
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from moltkeeper.config.settings import GatewayEnvironment, KeeperSettings, _reset_settings  # noqa: E402
from moltkeeper.core.commands import CommandResult  # noqa: E402
from moltkeeper.core.object_store import ObjectStore  # noqa: E402


class FakeObjectStore(ObjectStore):
    """Remote namespace held in a dict of path -> text."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, str] = dict(files or {})
        self.sync_calls: List[tuple] = []
        self.copy_calls: List[tuple] = []
        self.failing_syncs: Set[str] = set()
        self.fail_copies = False

    def _under(self, prefix: str) -> List[str]:
        prefix = prefix.lstrip("/")
        if prefix and not prefix.endswith("/"):
            return [key for key in self.files if key == prefix]
        return [key for key in self.files if key.startswith(prefix)]

    async def list(self, path: str) -> List[str]:
        return [key[len(path.lstrip("/")):] or key for key in self._under(path)]

    async def exists(self, path: str) -> bool:
        return bool(self._under(path))

    async def copy(self, remote_path: str, local_dir: Path, includes: Sequence[str] = ()) -> CommandResult:
        self.copy_calls.append((remote_path, Path(local_dir), tuple(includes)))
        if self.fail_copies:
            return CommandResult(success=False, returncode=1, stderr="copy failed")
        for key in self._under(remote_path):
            relative = key[len(remote_path):]
            if includes and not any(fnmatch.fnmatch(Path(relative).name, pattern) for pattern in includes):
                continue
            target = Path(local_dir) / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(self.files[key], encoding="utf-8")
        return CommandResult(success=True, returncode=0)

    async def cat(self, path: str) -> Optional[str]:
        return self.files.get(path.lstrip("/"))

    async def put(self, path: str, text: str) -> CommandResult:
        self.files[path.lstrip("/")] = text
        return CommandResult(success=True, returncode=0)

    async def sync(self, local_dir: Path, remote_path: str, excludes: Sequence[str] = ()) -> CommandResult:
        self.sync_calls.append((Path(local_dir), remote_path, tuple(excludes)))
        if remote_path in self.failing_syncs:
            return CommandResult(success=False, returncode=1, stderr=f"sync to {remote_path} failed")
        return CommandResult(success=True, returncode=0)


@pytest.fixture(autouse=True)
def _fresh_settings_singleton():
    _reset_settings()
    yield
    _reset_settings()


@pytest.fixture
def settings(tmp_path: Path) -> KeeperSettings:
    """KeeperSettings rooted entirely under tmp_path."""
    runtime = tmp_path / "tmp"
    runtime.mkdir()
    return KeeperSettings(
        config_dir=tmp_path / "openclaw",
        legacy_config_dir=tmp_path / "clawdbot",
        workspace_dir=tmp_path / "clawd",
        runtime_dir=runtime,
        rclone_config_file=tmp_path / "rclone" / "rclone.conf",
        extensions_source_dir=tmp_path / "extensions-src",
        assets_dir=tmp_path / "public",
        health_probe_timeout=0.2,
        gateway_start_timeout=2.0,
        process_kill_timeout=0.5,
        cleanup_timeout=1.0,
        store_command_timeout=5.0,
        cli_command_timeout=5.0,
        sync_initial_delay=0.0,
        sync_interval=0.0,
        sync_missing_config_retry=0.0,
        min_free_disk_mb=0,
        disk_check_path=tmp_path,
    )


@pytest.fixture
def r2_env() -> GatewayEnvironment:
    return GatewayEnvironment.from_env({
        "R2_ACCESS_KEY_ID": "test-access-key",
        "R2_SECRET_ACCESS_KEY": "test-secret-key",
        "CF_ACCOUNT_ID": "test-account",
    })


@pytest.fixture
def fake_store() -> FakeObjectStore:
    return FakeObjectStore()
