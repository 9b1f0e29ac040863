"""Systemd provider for the services phppark depends on."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..errors import NotFoundError, StorageError
from ..exit_codes import ExitCode
from ..results import OperationReport
from ..runner import CommandRunner, SubprocessRunner, format_command


class SystemdError(StorageError):
    """Raised when systemd operations fail."""

    exit_code = ExitCode.PROVIDER


@dataclass(slots=True)
class SystemdProvider:
    """Query and change the state of units such as ``nginx`` or ``php8.2-fpm``."""

    runner: CommandRunner = field(default_factory=SubprocessRunner)
    systemctl_bin: str = "systemctl"

    def is_active(self, unit: str) -> bool:
        """Return True when ``systemctl is-active`` reports ``active``."""
        try:
            result = self._systemctl("is-active", unit, check=False)
        except SystemdError:
            return False
        return (result.stdout or "").strip() == "active"

    def start(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl("start", unit)

    def enable(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Enable *unit* at boot."""
        return self._systemctl("enable", unit)

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit)

    def ensure_running(self, unit: str) -> OperationReport:
        """Start *unit* if it is inactive, then try to enable it.

        Failing to start raises :class:`SystemdError`; failing to enable is
        recorded as an advisory step.
        """
        report = OperationReport(operation=f"ensure {unit}")
        if self.is_active(unit):
            report.skipped(f"start {unit}", "already active")
            return report
        report.ok(f"start {unit}", format_command(self.start(unit)))
        report.changed = 1
        try:
            report.ok(f"enable {unit}", format_command(self.enable(unit)))
        except SystemdError as exc:
            report.advisory(f"enable {unit}", str(exc))
        return report

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(args, check=check, error_prefix=f"{self.systemctl_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = self.runner.run(args)
        except NotFoundError as exc:
            raise SystemdError(str(exc)) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
