"""
Object Store Capability
=======================

The remote namespace holding backups is only touched through the ObjectStore
interface: list, exists, copy (remote -> local), cat, put and sync
(local -> remote). RcloneObjectStore implements it on top of the rclone CLI
configured with an S3-compatible R2 remote.

Paths passed to the store are relative to the bucket root, e.g.
"openclaw/openclaw.json" or "workspace/".
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence

from ..config.settings import GatewayEnvironment, KeeperSettings
from ..exceptions import ObjectStoreConfigError
from .commands import CommandResult, run_command
from .fileio import atomic_write_text

logger = logging.getLogger(__name__)

RCLONE_REMOTE_NAME = "r2"
TRANSFER_FLAGS = ("--transfers=8", "--fast-list")


class ObjectStore(ABC):
    """Capability over a remote namespace."""

    @abstractmethod
    async def list(self, path: str) -> List[str]:
        """Entry names under path; empty when missing or unreachable."""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Whether a remote object or non-empty prefix exists at path."""

    @abstractmethod
    async def copy(self, remote_path: str, local_dir: Path, includes: Sequence[str] = ()) -> CommandResult:
        """Copy remote_path (file or prefix) into local_dir."""

    @abstractmethod
    async def cat(self, path: str) -> Optional[str]:
        """Contents of a remote object, or None."""

    @abstractmethod
    async def put(self, path: str, text: str) -> CommandResult:
        """Write text to a remote object."""

    @abstractmethod
    async def sync(self, local_dir: Path, remote_path: str, excludes: Sequence[str] = ()) -> CommandResult:
        """Make remote_path mirror local_dir."""


class RcloneObjectStore(ObjectStore):
    """ObjectStore backed by the rclone CLI."""

    def __init__(
        self,
        remote_root: str,
        rclone_binary: str = "rclone",
        timeout: float = 120.0,
        config_file: Optional[Path] = None,
    ):
        self.remote_root = remote_root.rstrip("/")
        self.rclone_binary = rclone_binary
        self.timeout = timeout
        self.config_file = config_file

    @classmethod
    def from_settings(cls, settings: KeeperSettings, env: GatewayEnvironment) -> "RcloneObjectStore":
        return cls(
            remote_root=f"{RCLONE_REMOTE_NAME}:{env.r2_bucket_name}",
            rclone_binary=settings.rclone_binary,
            timeout=settings.store_command_timeout,
            config_file=settings.rclone_config_file,
        )

    def remote(self, path: str = "") -> str:
        path = path.lstrip("/")
        return f"{self.remote_root}/{path}" if path else f"{self.remote_root}/"

    async def _rclone(self, *args: str, input_text: Optional[str] = None) -> CommandResult:
        cmd = [self.rclone_binary, *args]
        if self.config_file is not None:
            cmd.extend(["--config", str(self.config_file)])
        return await run_command(cmd, timeout=self.timeout, input_text=input_text)

    async def list(self, path: str) -> List[str]:
        result = await self._rclone("lsf", self.remote(path), "--fast-list")
        if not result.success:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def exists(self, path: str) -> bool:
        return bool(await self.list(path))

    async def copy(self, remote_path: str, local_dir: Path, includes: Sequence[str] = ()) -> CommandResult:
        Path(local_dir).mkdir(parents=True, exist_ok=True)
        args = ["copy", self.remote(remote_path), f"{local_dir}/", *TRANSFER_FLAGS]
        for pattern in includes:
            args.extend(["--include", pattern])
        return await self._rclone(*args)

    async def cat(self, path: str) -> Optional[str]:
        result = await self._rclone("cat", self.remote(path))
        if not result.success:
            return None
        return result.stdout

    async def put(self, path: str, text: str) -> CommandResult:
        return await self._rclone("rcat", self.remote(path), input_text=text)

    async def sync(self, local_dir: Path, remote_path: str, excludes: Sequence[str] = ()) -> CommandResult:
        args = ["sync", f"{local_dir}/", self.remote(remote_path), *TRANSFER_FLAGS, "--s3-no-check-bucket"]
        for pattern in excludes:
            args.extend(["--exclude", pattern])
        return await self._rclone(*args)


# =============================================================================
# rclone configuration
# =============================================================================

def render_rclone_config(env: GatewayEnvironment) -> str:
    return "\n".join([
        f"[{RCLONE_REMOTE_NAME}]",
        "type = s3",
        "provider = Cloudflare",
        f"access_key_id = {env.r2_access_key_id}",
        f"secret_access_key = {env.r2_secret_access_key}",
        f"endpoint = https://{env.cf_account_id}.r2.cloudflarestorage.com",
        "acl = private",
        "",
    ])


def configure_rclone(settings: KeeperSettings, env: GatewayEnvironment) -> bool:
    """
    Write the rclone remote definition.

    Returns:
        False when R2 credentials are not configured (store unavailable)

    Raises:
        ObjectStoreConfigError: the config file could not be written
    """
    if not env.r2_configured:
        logger.info("R2 credentials not set, skipping rclone setup")
        return False

    try:
        atomic_write_text(settings.rclone_config_file, render_rclone_config(env), mode=0o600)
    except OSError as e:
        raise ObjectStoreConfigError("Failed to create rclone config", details=str(e)) from e

    logger.info(f"rclone configured for R2 bucket: {env.r2_bucket_name}")
    return True
