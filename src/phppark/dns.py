"""Wildcard DNS for the development domain via dnsmasq.

dnsmasq answers ``*.<domain>`` with ``127.0.0.1``. On hosts running
systemd-resolved the stub listener already owns port 53, so phppark can
disable just the stub (systemd-resolved keeps managing upstream servers),
point dnsmasq at systemd-resolved's upstream list and route
``/etc/resolv.conf`` through dnsmasq. :meth:`DnsResolverManager.revert_stub`
undoes each of those changes.
"""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import StubState, SystemConfig
from .errors import NotFoundError, PrivilegeError, StorageError
from .exit_codes import ExitCode
from .providers.systemd import SystemdError, SystemdProvider
from .results import OperationReport
from .runner import CommandRunner, SubprocessRunner
from .templates import write_if_changed

LOGGER = logging.getLogger(__name__)

MARKER_NAME = "phppark.conf"
MANAGED_HEADER = "# Managed by PHPark\n"
STUB_DIRECTIVE = "DNSStubListener"
FALLBACK_SERVERS = ("8.8.8.8", "1.1.1.1")
RESOLVED_UNIT = "systemd-resolved"
DNSMASQ_UNIT = "dnsmasq"


class DnsError(StorageError):
    """Raised when DNS configuration cannot be applied."""

    exit_code = ExitCode.PROVIDER


def set_stub_listener(content: str, value: str | None) -> str:
    """Return resolved.conf *content* with the stub directive set to *value*.

    ``None`` removes every active ``DNSStubListener=`` line. Otherwise an
    active line is replaced, or the setting is inserted right after the
    ``[Resolve]`` header, or a new ``[Resolve]`` section is appended.
    Commented-out directives are left untouched.
    """
    lines = content.split("\n")

    def _is_directive(line: str) -> bool:
        return line.strip().startswith(f"{STUB_DIRECTIVE}=")

    if value is None:
        return "\n".join(line for line in lines if not _is_directive(line))

    setting = f"{STUB_DIRECTIVE}={value}"
    if any(_is_directive(line) for line in lines):
        return "\n".join(setting if _is_directive(line) else line for line in lines)

    for index, line in enumerate(lines):
        if line.strip() == "[Resolve]":
            lines.insert(index + 1, setting)
            return "\n".join(lines)

    if content and not content.endswith("\n"):
        content += "\n"
    return f"{content}\n[Resolve]\n{setting}\n"


@dataclass(frozen=True, slots=True)
class StubStatus:
    """Recorded versus on-disk view of the stub listener."""

    recorded: StubState
    marker_present: bool

    @property
    def disabled(self) -> bool:
        """True when either source says phppark disabled the stub."""
        return self.marker_present or self.recorded is StubState.DISABLED

    @property
    def consistent(self) -> bool:
        """True when the persisted state agrees with the marker file."""
        return self.marker_present == (self.recorded is StubState.DISABLED)

    def describe(self) -> str:
        """Return a human-readable summary for warnings."""
        marker = "present" if self.marker_present else "absent"
        return f"recorded stub state is '{self.recorded.value}' but the marker file is {marker}"


@dataclass(slots=True)
class DnsResolverManager:
    """Configure dnsmasq and the systemd-resolved stub listener."""

    system: SystemConfig = field(default_factory=SystemConfig)
    runner: CommandRunner = field(default_factory=SubprocessRunner)
    services: SystemdProvider | None = None
    which: Callable[[str], str | None] = shutil.which

    def __post_init__(self) -> None:
        """Share the command runner with the service provider."""
        if self.services is None:
            self.services = SystemdProvider(
                runner=self.runner, systemctl_bin=self.system.systemctl_bin
            )

    # Paths -------------------------------------------------------------
    def fragment_path(self, domain: str) -> Path:
        """Return the dnsmasq fragment serving *domain*."""
        return self.system.dnsmasq_dir / domain

    @property
    def marker_path(self) -> Path:
        """Marker written when the stub listener is disabled."""
        return self.system.dnsmasq_dir / MARKER_NAME

    # Domain ------------------------------------------------------------
    def is_installed(self) -> bool:
        """Return True when dnsmasq is on ``PATH``."""
        return self.which("dnsmasq") is not None

    def is_domain_configured(self, domain: str) -> bool:
        """Return True when the dnsmasq fragment for *domain* exists."""
        return self.fragment_path(domain).exists()

    def require_installed(self) -> None:
        """Raise :class:`NotFoundError` with an install hint when dnsmasq is missing."""
        if not self.is_installed():
            raise NotFoundError("dnsmasq not installed. Install with: sudo apt install dnsmasq")

    def setup_domain(self, domain: str) -> OperationReport:
        """Answer ``*.<domain>`` locally and restart dnsmasq."""
        self.require_installed()
        report = OperationReport(operation=f"dns setup {domain}")
        fragment = self.fragment_path(domain)
        _write(fragment, f"address=/.{domain}/127.0.0.1\n")
        report.ok("write dnsmasq fragment", str(fragment))
        self._restart(DNSMASQ_UNIT)
        report.ok("restart dnsmasq")
        report.changed = 1
        return report

    def remove_domain(self, domain: str, recorded: StubState) -> OperationReport:
        """Remove the fragment and revert the stub listener if phppark changed it."""
        report = OperationReport(operation=f"dns remove {domain}")
        fragment = self.fragment_path(domain)
        if _unlink(fragment):
            report.ok("remove dnsmasq fragment", str(fragment))
            report.changed = 1
        else:
            report.skipped("remove dnsmasq fragment", "not present")

        status = self.stub_status(recorded)
        if status.disabled:
            try:
                report.extend(self.revert_stub())
                report.data["stub_state"] = StubState.ENABLED.value
            except (StorageError, PrivilegeError) as exc:
                report.advisory(
                    "revert stub listener",
                    f"{exc}. You may want to run: sudo systemctl restart {RESOLVED_UNIT}",
                )
        else:
            report.skipped("revert stub listener", "stub listener untouched")

        try:
            self._restart(DNSMASQ_UNIT)
            report.ok("restart dnsmasq")
        except DnsError as exc:
            report.advisory("restart dnsmasq", str(exc))
        return report

    # Stub listener -----------------------------------------------------
    def stub_conflict(self) -> bool:
        """Return True when systemd-resolved is active and holds port 53."""
        assert self.services is not None
        return self.services.is_active(RESOLVED_UNIT)

    def stub_already_disabled(self) -> bool:
        """Return True when the marker exists or resolved.conf disables the stub."""
        if self.marker_path.exists():
            return True
        try:
            content = self.system.resolved_conf.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot read {self.system.resolved_conf}: {exc}") from exc
        except OSError as exc:
            raise DnsError(f"Cannot read {self.system.resolved_conf}: {exc}") from exc
        setting = f"{STUB_DIRECTIVE}=no"
        return any(line.strip() == setting for line in content.splitlines())

    def stub_status(self, recorded: StubState) -> StubStatus:
        """Compare the persisted stub state with the marker file."""
        return StubStatus(recorded=recorded, marker_present=self.marker_path.exists())

    def upstream_config(self) -> str:
        """Return the marker content pointing dnsmasq at real upstreams."""
        if self.system.resolved_upstream.exists():
            return f"{MANAGED_HEADER}resolv-file={self.system.resolved_upstream}\n"
        servers = "".join(f"server={server}\n" for server in FALLBACK_SERVERS)
        return f"{MANAGED_HEADER}{servers}"

    def disable_stub(self) -> OperationReport:
        """Free port 53 for dnsmasq.

        Skipped when systemd-resolved is not active, or when the stub is
        already off (marker present or ``DNSStubListener=no`` active); the
        latter still reports ``StubState.DISABLED``. There is no automatic
        rollback: the first failing step raises and earlier steps stay
        applied. Callers record ``StubState.DISABLED`` from
        ``report.data["stub_state"]``.
        """
        report = OperationReport(operation="dns disable stub")
        if not self.stub_conflict():
            report.skipped("disable stub listener", f"{RESOLVED_UNIT} is not active")
            return report
        if self.stub_already_disabled():
            report.skipped("disable stub listener", "stub listener already disabled")
            report.data["stub_state"] = StubState.DISABLED.value
            return report

        self._edit_resolved_conf("no")
        report.ok("set DNSStubListener=no", str(self.system.resolved_conf))
        self._restart(RESOLVED_UNIT)
        report.ok(f"restart {RESOLVED_UNIT}")
        _write(self.marker_path, self.upstream_config())
        report.ok("write dnsmasq upstream config", str(self.marker_path))

        resolv_conf = self.system.resolv_conf
        if _points_into_systemd(resolv_conf):
            _write(resolv_conf, f"{MANAGED_HEADER}nameserver 127.0.0.1\n")
            report.ok("route resolv.conf through dnsmasq", str(resolv_conf))
        else:
            report.skipped("route resolv.conf through dnsmasq", "not a systemd symlink")

        report.changed = 1
        report.data["stub_state"] = StubState.DISABLED.value
        return report

    def revert_stub(self) -> OperationReport:
        """Undo :meth:`disable_stub` and restore the stub ``resolv.conf`` link."""
        report = OperationReport(operation="dns revert stub")
        self._edit_resolved_conf(None)
        report.ok("remove DNSStubListener", str(self.system.resolved_conf))
        self._restart(RESOLVED_UNIT)
        report.ok(f"restart {RESOLVED_UNIT}")
        _unlink(self.marker_path)
        report.ok("remove dnsmasq upstream config", str(self.marker_path))

        resolv_conf = self.system.resolv_conf
        _unlink(resolv_conf)
        try:
            resolv_conf.symlink_to(self.system.resolved_stub)
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot restore {resolv_conf}: {exc}") from exc
        except OSError as exc:
            raise DnsError(f"Cannot restore {resolv_conf}: {exc}") from exc
        report.ok("restore resolv.conf symlink", str(self.system.resolved_stub))
        report.changed = 1
        report.data["stub_state"] = StubState.ENABLED.value
        return report

    # Resolution --------------------------------------------------------
    def test_resolution(self, hostname: str) -> bool:
        """Return True when ``nslookup`` resolves *hostname* to 127.0.0.1."""
        try:
            result = self.runner.run(["nslookup", hostname])
        except NotFoundError:
            return False
        if result.returncode != 0:
            return False
        output = (result.stdout or "") + (result.stderr or "")
        return "127.0.0.1" in output

    # ------------------------------------------------------------------
    def _edit_resolved_conf(self, value: str | None) -> None:
        path = self.system.resolved_conf
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            content = ""
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot read {path}: {exc}") from exc
        except OSError as exc:
            raise DnsError(f"Cannot read {path}: {exc}") from exc
        _write(path, set_stub_listener(content, value))

    def _restart(self, unit: str) -> None:
        assert self.services is not None
        try:
            self.services.restart(unit)
        except SystemdError as exc:
            raise DnsError(f"Failed to restart {unit}: {exc}") from exc


def _points_into_systemd(path: Path) -> bool:
    if not path.is_symlink():
        return False
    try:
        return "systemd" in str(path.readlink())
    except OSError:
        return False


def _write(path: Path, content: str) -> None:
    write_if_changed(path, content, mode=0o644)


def _unlink(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except PermissionError as exc:
        raise PrivilegeError(f"Cannot remove {path}: {exc}") from exc
    except OSError as exc:
        raise DnsError(f"Cannot remove {path}: {exc}") from exc
    return True


__all__ = [
    "DnsError",
    "DnsResolverManager",
    "StubStatus",
    "set_stub_listener",
]
