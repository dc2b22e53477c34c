"""
Bounded external command execution.

Every interaction with an external CLI (rclone, the gateway's own CLI) goes
through run_command, which enforces a timeout and reports failure as a
CommandResult instead of raising.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command."""
    success: bool
    returncode: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def details(self) -> str:
        if self.timed_out:
            return "timed out"
        return self.stderr.strip() or self.stdout.strip()


async def run_command(
    cmd: Sequence[str],
    timeout: float,
    input_text: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run cmd, capturing output, killing it if it outlives timeout.

    Args:
        cmd: Argument vector; never passed through a shell
        timeout: Seconds before the process is killed
        input_text: Optional text written to stdin
        env: Extra environment variables layered over os.environ
    """
    proc_env = None
    if env:
        proc_env = dict(os.environ)
        proc_env.update(env)

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
        )
    except (FileNotFoundError, PermissionError) as e:
        return CommandResult(success=False, stderr=str(e))

    data = input_text.encode("utf-8") if input_text is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(data), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        logger.warning(f"Command timed out after {timeout}s: {cmd[0]} {cmd[1] if len(cmd) > 1 else ''}")
        return CommandResult(success=False, returncode=process.returncode, timed_out=True)

    return CommandResult(
        success=process.returncode == 0,
        returncode=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
        stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
    )
