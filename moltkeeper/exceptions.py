"""
Exception hierarchy for moltkeeper.

Only hard precondition failures are raised. Best-effort work (restore copies,
sync steps, cleanup kills) logs and continues instead.
"""

from typing import Optional


class KeeperError(Exception):
    """Base class for all moltkeeper errors."""


class ConfigWriteError(KeeperError):
    """The gateway configuration document could not be written."""


class ObjectStoreConfigError(KeeperError):
    """The object-store client configuration could not be created."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.details = details


class GatewayStartError(KeeperError):
    """The gateway process failed to start or exited before becoming healthy."""

    def __init__(self, message: str, stderr: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.stderr:
            return f"{base}: {self.stderr.strip()}"
        return base
