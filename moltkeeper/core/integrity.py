"""
Post-reconciliation integrity pass.

Every check is a warning: failures are counted and logged, never raised.
"""

import logging
from dataclasses import dataclass, field
from typing import List

import psutil

from ..config.settings import KeeperSettings

logger = logging.getLogger(__name__)

IDENTITY_FILES = ("IDENTITY.md", "MEMORY.md", "USER.md")


@dataclass
class IntegrityReport:
    checks_run: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    @property
    def ok(self) -> bool:
        return not self.warnings

    def to_dict(self) -> dict:
        return {
            "checks_run": self.checks_run,
            "warning_count": self.warning_count,
            "warnings": list(self.warnings),
        }


class IntegrityVerifier:
    """Sanity checklist over workspace, skills, config and disk."""

    def __init__(self, settings: KeeperSettings):
        self.settings = settings

    def verify(self) -> IntegrityReport:
        report = IntegrityReport()
        logger.info("[INTEGRITY] Running post-restore integrity checks...")

        self._check_workspace(report)
        self._check_identity_files(report)
        self._check_skills(report)
        self._check_config(report)
        self._check_disk(report)

        if report.ok:
            logger.info(f"[INTEGRITY] All {report.checks_run} checks passed")
        else:
            logger.warning(
                f"[INTEGRITY] {report.warning_count} warning(s) out of {report.checks_run} checks"
            )
        return report

    def _warn(self, report: IntegrityReport, message: str) -> None:
        report.warnings.append(message)
        logger.warning(f"[INTEGRITY] {message}")

    def _check_workspace(self, report: IntegrityReport) -> None:
        report.checks_run += 1
        workspace = self.settings.workspace_dir
        if workspace.is_dir():
            return
        self._warn(report, f"Workspace directory missing: {workspace} (creating)")
        try:
            workspace.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"[INTEGRITY] Could not create workspace: {e}")

    def _check_identity_files(self, report: IntegrityReport) -> None:
        for name in IDENTITY_FILES:
            report.checks_run += 1
            if not (self.settings.workspace_dir / name).is_file():
                self._warn(report, f"{name} missing from workspace")

    def _check_skills(self, report: IntegrityReport) -> None:
        report.checks_run += 1
        skills = self.settings.skills_dir
        if not skills.is_dir():
            self._warn(report, f"Skills directory missing: {skills}")
            return
        count = sum(1 for entry in skills.iterdir() if entry.is_dir())
        if count == 0:
            self._warn(report, "Skills directory has no skills")
        else:
            logger.info(f"[INTEGRITY] {count} skill(s) present")

    def _check_config(self, report: IntegrityReport) -> None:
        report.checks_run += 1
        if not self.settings.config_file.is_file():
            self._warn(report, f"Config file missing: {self.settings.config_file}")

    def _check_disk(self, report: IntegrityReport) -> None:
        report.checks_run += 1
        try:
            usage = psutil.disk_usage(str(self.settings.disk_check_path))
        except OSError as e:
            self._warn(report, f"Could not read disk usage: {e}")
            return
        free_mb = usage.free // (1024 * 1024)
        if free_mb < self.settings.min_free_disk_mb:
            self._warn(
                report,
                f"Low disk space: {free_mb}MB free (minimum {self.settings.min_free_disk_mb}MB)",
            )
