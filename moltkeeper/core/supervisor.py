"""
Gateway Process Supervisor
==========================

Keeps at most one gateway process alive and reachable.

Discovery prefers the process this supervisor spawned itself and falls back
to scanning the process table (psutil), so a gateway started by an earlier
keeper or by hand is adopted instead of duplicated. Health is an HTTP GET
against the gateway port: any response at all counts as reachable.

ensure_running() is serialized by an asyncio.Lock; force_restart() is not,
so an operator can always break a start that is stuck waiting.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence

import aiohttp
import psutil
from pydantic import BaseModel

from ..config.settings import GatewayEnvironment, KeeperSettings
from ..exceptions import GatewayStartError

logger = logging.getLogger(__name__)

# Command-line fragments identifying a running gateway.
GATEWAY_PATTERNS = ("openclaw gateway", "openclaw-gateway")
# Everything force_restart may reap: gateway, its boot script, and the bare CLI.
BOOT_SCRIPT_PATTERN = "/usr/local/bin/start-openclaw.sh"
CLI_PROCESS_NAME = "openclaw"

START_POLL_INTERVAL = 1.0
LOG_TAIL_CHARS = 2000


class ProcessStatus(Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


@dataclass
class ProcessHandle:
    """Reference to a gateway process. Never persisted."""
    pid: int
    command: str = ""
    status: ProcessStatus = ProcessStatus.STARTING
    exit_code: Optional[int] = None
    spawned: bool = False
    process: Optional[Any] = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return str(self.pid)

    def refresh(self) -> "ProcessHandle":
        """Pick up the exit code of a process spawned by this supervisor."""
        if self.process is not None and self.process.returncode is not None:
            if self.status not in (ProcessStatus.KILLED, ProcessStatus.FAILED, ProcessStatus.COMPLETED):
                self.exit_code = self.process.returncode
                self.status = ProcessStatus.COMPLETED if self.exit_code == 0 else ProcessStatus.FAILED
        return self

    @property
    def alive(self) -> bool:
        self.refresh()
        return self.status in (ProcessStatus.STARTING, ProcessStatus.RUNNING)


class GatewayStatus(BaseModel):
    """Body of GET /api/status."""
    ok: bool
    status: str
    processId: Optional[str] = None
    error: Optional[str] = None


def _cmdline_text(info: dict) -> str:
    cmdline = info.get("cmdline") or []
    return " ".join(cmdline)


def is_gateway_process(info: dict) -> bool:
    text = _cmdline_text(info)
    return any(pattern in text for pattern in GATEWAY_PATTERNS)


def is_reapable_process(info: dict) -> bool:
    """Gateway, boot script, or the CLI itself (exact name match)."""
    if is_gateway_process(info):
        return True
    if BOOT_SCRIPT_PATTERN in _cmdline_text(info):
        return True
    return info.get("name") == CLI_PROCESS_NAME


class ProcessSupervisor:
    """Single-instance gateway supervision."""

    def __init__(self, settings: KeeperSettings, env: GatewayEnvironment):
        self.settings = settings
        self.env = env
        self._lock = asyncio.Lock()
        self._spawned: Optional[ProcessHandle] = None
        self._session: Optional[aiohttp.ClientSession] = None

    # =========================================================================
    # Lifecycle of the probe session
    # =========================================================================

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.health_probe_timeout)
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    # =========================================================================
    # Discovery
    # =========================================================================

    def _scan(self, predicate) -> List[ProcessHandle]:
        own_pid = os.getpid()
        found = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                info = proc.info
                if info.get("pid") == own_pid:
                    continue
                if predicate(info):
                    found.append(
                        ProcessHandle(
                            pid=info["pid"],
                            command=_cmdline_text(info),
                            status=ProcessStatus.RUNNING,
                        )
                    )
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return found

    async def find_existing(self) -> Optional[ProcessHandle]:
        """The gateway process this supervisor spawned, else any matching process."""
        if self._spawned is not None and self._spawned.alive:
            return self._spawned

        loop = asyncio.get_running_loop()
        matches = await loop.run_in_executor(None, self._scan, is_gateway_process)
        if not matches:
            return None
        logger.debug(f"[Supervisor] Found untracked gateway process(es): {[m.pid for m in matches]}")
        return matches[0]

    # =========================================================================
    # Health
    # =========================================================================

    async def probe_health(self, timeout: Optional[float] = None) -> bool:
        """GET the gateway root. Any HTTP response is reachable; never raises."""
        url = f"http://127.0.0.1:{self.settings.gateway_port}/"
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.settings.health_probe_timeout)
        try:
            if self._session is not None and not self._session.closed:
                async with self._session.get(url, timeout=client_timeout):
                    return True
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(url):
                    return True
        except asyncio.TimeoutError:
            return False
        except aiohttp.ClientError:
            return False
        except Exception as e:
            logger.debug(f"[Supervisor] Health probe error: {e}")
            return False

    # =========================================================================
    # Start
    # =========================================================================

    def build_command(self) -> List[str]:
        cmd = [
            self.settings.gateway_binary,
            "gateway",
            "--port", str(self.settings.gateway_port),
            "--verbose",
            "--allow-unconfigured",
            "--bind", "lan",
        ]
        if self.env.gateway_token:
            cmd.extend(["--token", self.env.gateway_token])
        return cmd

    def _remove_stale_locks(self) -> None:
        for lock_file in self.settings.gateway_lock_files:
            try:
                lock_file.unlink()
                logger.info(f"[Supervisor] Removed stale lock file {lock_file}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"[Supervisor] Could not remove lock file {lock_file}: {e}")

    async def _launch(self, cmd: Sequence[str]):
        log_path = self.settings.gateway_log_file
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "ab") as log_handle:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_handle,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )

    def _log_tail(self) -> str:
        try:
            with open(self.settings.gateway_log_file, "rb") as handle:
                handle.seek(0, os.SEEK_END)
                size = handle.tell()
                handle.seek(max(0, size - LOG_TAIL_CHARS))
                return handle.read().decode("utf-8", errors="replace")
        except OSError:
            return ""

    async def _wait_until_healthy(self, handle: ProcessHandle) -> None:
        deadline = time.monotonic() + self.settings.gateway_start_timeout
        while True:
            if not handle.alive:
                raise GatewayStartError(
                    f"Gateway exited before becoming healthy (exit code {handle.exit_code})",
                    stderr=self._log_tail(),
                    exit_code=handle.exit_code,
                )
            if await self.probe_health():
                handle.status = ProcessStatus.RUNNING
                return
            if time.monotonic() >= deadline:
                raise GatewayStartError(
                    f"Gateway did not become healthy within {self.settings.gateway_start_timeout:.0f}s",
                    stderr=self._log_tail(),
                )
            await asyncio.sleep(START_POLL_INTERVAL)

    async def ensure_running(self) -> ProcessHandle:
        """
        Return a healthy gateway, starting one if needed.

        Raises:
            GatewayStartError: the spawned process exited early or never became healthy
        """
        async with self._lock:
            existing = await self.find_existing()
            if existing is not None:
                if await self.probe_health():
                    existing.status = ProcessStatus.RUNNING
                    logger.info(f"[Supervisor] Gateway already running (pid {existing.pid})")
                    return existing
                logger.warning(f"[Supervisor] Gateway pid {existing.pid} is not responding, terminating")
                await self._terminate(existing)

            self._remove_stale_locks()

            cmd = self.build_command()
            mode = "token auth" if self.env.gateway_token else "device pairing"
            logger.info(f"[Supervisor] Starting gateway on port {self.settings.gateway_port} ({mode})")
            try:
                process = await self._launch(cmd)
            except OSError as e:
                raise GatewayStartError(f"Failed to launch gateway: {e}") from e

            handle = ProcessHandle(
                pid=process.pid,
                command=" ".join(cmd[:2]),
                status=ProcessStatus.STARTING,
                spawned=True,
                process=process,
            )
            self._spawned = handle

            await self._wait_until_healthy(handle)
            logger.info(f"[Supervisor] Gateway is healthy (pid {handle.pid})")
            return handle

    # =========================================================================
    # Termination
    # =========================================================================

    def _terminate_pid(self, pid: int) -> bool:
        """terminate -> wait -> kill. Returns True if the process was signalled."""
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=self.settings.process_kill_timeout)
            except psutil.TimeoutExpired:
                proc.kill()
                logger.warning(f"[Supervisor] Force killed unresponsive pid {pid}")
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as e:
            logger.warning(f"[Supervisor] Not allowed to kill pid {pid}: {e}")
            return False

    async def _terminate(self, handle: ProcessHandle) -> bool:
        if handle.process is not None:
            if handle.process.returncode is not None:
                handle.refresh()
                return False
            try:
                handle.process.terminate()
                try:
                    await asyncio.wait_for(handle.process.wait(), timeout=self.settings.process_kill_timeout)
                except asyncio.TimeoutError:
                    handle.process.kill()
                    await handle.process.wait()
            except ProcessLookupError:
                return False
            handle.status = ProcessStatus.KILLED
            handle.exit_code = handle.process.returncode
            return True

        loop = asyncio.get_running_loop()
        killed = await loop.run_in_executor(None, self._terminate_pid, handle.pid)
        if killed:
            handle.status = ProcessStatus.KILLED
        return killed

    def _cleanup_pass(self) -> int:
        """SIGKILL anything left that looks like a gateway or its boot script."""
        reaped = 0
        for handle in self._scan(is_reapable_process):
            try:
                psutil.Process(handle.pid).kill()
                reaped += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return reaped

    async def force_restart(self) -> int:
        """Kill every tracked gateway process. Returns how many were killed."""
        killed = 0
        seen = set()

        if self._spawned is not None and self._spawned.alive:
            seen.add(self._spawned.pid)
            if await self._terminate(self._spawned):
                killed += 1

        loop = asyncio.get_running_loop()
        for handle in await loop.run_in_executor(None, self._scan, is_reapable_process):
            if handle.pid in seen:
                continue
            seen.add(handle.pid)
            try:
                if await self._terminate(handle):
                    killed += 1
            except Exception as e:
                logger.warning(f"[FORCE-RESTART] Failed to kill pid {handle.pid}: {e}")

        logger.info(f"[FORCE-RESTART] Killed {killed} process(es)")

        try:
            reaped = await asyncio.wait_for(
                loop.run_in_executor(None, self._cleanup_pass),
                timeout=self.settings.cleanup_timeout,
            )
            if reaped:
                logger.info(f"[FORCE-RESTART] Cleanup pass reaped {reaped} straggler(s)")
        except asyncio.TimeoutError:
            logger.warning(f"[FORCE-RESTART] Cleanup pass timed out after {self.settings.cleanup_timeout}s")
        except Exception as e:
            logger.warning(f"[FORCE-RESTART] Cleanup pass failed: {e}")

        return killed

    # =========================================================================
    # Status
    # =========================================================================

    async def status(self) -> GatewayStatus:
        try:
            handle = await self.find_existing()
            if await self.probe_health():
                return GatewayStatus(ok=True, status="running", processId=handle.id if handle else "untracked")
            if handle is None:
                return GatewayStatus(ok=False, status="not_running")
            return GatewayStatus(ok=False, status="not_responding", processId=handle.id)
        except Exception as e:
            return GatewayStatus(ok=False, status="error", error=str(e) or "Unknown error")
