"""Nginx provider deploying staged vhost files into the system layout."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import NotFoundError, PrivilegeError, StorageError, ValidationError
from ..exit_codes import ExitCode
from ..results import OperationReport
from ..runner import CommandRunner, SubprocessRunner, format_command


class NginxError(StorageError):
    """Raised when nginx operations fail."""

    exit_code = ExitCode.PROVIDER


class NginxValidationError(NginxError, ValidationError):
    """Raised when ``nginx -t`` rejects the configuration."""


@dataclass(slots=True)
class NginxProvider:
    """Manage ``sites-available``/``sites-enabled`` entries for phppark sites."""

    runner: CommandRunner = field(default_factory=SubprocessRunner)
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    systemctl_bin: str = "systemctl"

    def site_name(self, site: str) -> str:
        """Return the file name used for *site*."""
        return f"{site}.conf"

    def site_path(self, site: str) -> Path:
        """Return the path to the configuration in sites-available."""
        return self.sites_available / self.site_name(site)

    def enabled_path(self, site: str) -> Path:
        """Return the path of the symlink in sites-enabled for *site*."""
        return self.sites_enabled / self.site_name(site)

    def deploy(self, site: str, rendered: Path) -> OperationReport:
        """Install *rendered* as the config of *site*, validate and reload.

        When ``nginx -t`` fails the previous configuration is restored and
        :class:`NginxValidationError` is raised; nginx is never reloaded with
        a configuration that did not validate.
        """
        report = OperationReport(operation=f"deploy {site}")
        destination = self.site_path(site)
        previous = _snapshot(destination)

        self._copy(rendered, destination)
        report.ok("copy", str(destination))
        self.enable(site)
        report.ok("enable", str(self.enabled_path(site)))

        default_site = self.sites_enabled / "default"
        try:
            if default_site.exists() or default_site.is_symlink():
                default_site.unlink()
                report.ok("disable default site", str(default_site))
        except OSError as exc:
            report.advisory("disable default site", str(exc))

        try:
            validation = self.test_config()
        except NginxValidationError:
            self._restore(site, destination, previous)
            raise
        report.ok("validate", format_command(validation))

        report.ok("reload", format_command(self.reload()))
        report.changed = 1
        return report

    def enable(self, site: str) -> None:
        """Point the sites-enabled symlink at the site configuration."""
        source = self.site_path(site)
        target = self.enabled_path(site)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists() or target.is_symlink():
                target.unlink()
            target.symlink_to(source)
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot enable {target}: {exc}") from exc
        except OSError as exc:
            raise NginxError(f"Cannot enable {target}: {exc}") from exc

    def disable(self, site: str) -> None:
        """Remove the sites-enabled symlink."""
        _unlink(self.enabled_path(site))

    def remove(self, site: str) -> OperationReport:
        """Remove both the symlink and configuration, then validate and reload."""
        report = OperationReport(operation=f"remove {site}")
        self.disable(site)
        _unlink(self.site_path(site))
        report.ok("remove", str(self.site_path(site)))
        report.ok("validate", format_command(self.test_config()))
        report.ok("reload", format_command(self.reload()))
        report.changed = 1
        return report

    def is_installed(self) -> bool:
        """Return True when the nginx binary is on ``PATH``."""
        return shutil.which(self.nginx_bin) is not None

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        result = self._run_nginx(["-t"])
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxValidationError(f"nginx configuration test failed: {message}")
        return result

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx through systemd, falling back to ``nginx -s reload``."""
        try:
            result = self.runner.run([self.systemctl_bin, "reload", "nginx"])
        except NotFoundError:
            result = None
        if result is not None and result.returncode == 0:
            return result
        fallback = self._run_nginx(["-s", "reload"])
        if fallback.returncode != 0:
            message = (fallback.stderr or fallback.stdout or "no output").strip()
            raise NginxError(
                f"{self.nginx_bin} -s reload failed (exit {fallback.returncode}): {message}"
            )
        return fallback

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return self.runner.run([self.nginx_bin, *args])

    def _copy(self, source: Path, destination: Path) -> None:
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, destination)
            destination.chmod(0o644)
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot write {destination}: {exc}") from exc
        except OSError as exc:
            raise NginxError(f"Cannot copy {source} to {destination}: {exc}") from exc

    def _restore(self, site: str, destination: Path, previous: tuple[str, int] | None) -> None:
        if previous is None:
            self.disable(site)
            _unlink(destination)
            return
        content, mode = previous
        destination.write_text(content, encoding="utf-8")
        destination.chmod(mode)


def _snapshot(path: Path) -> tuple[str, int] | None:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8"), path.stat().st_mode & 0o777


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except PermissionError as exc:
        raise PrivilegeError(f"Cannot remove {path}: {exc}") from exc
    except OSError as exc:
        raise NginxError(f"Cannot remove {path}: {exc}") from exc


__all__ = ["NginxError", "NginxProvider", "NginxValidationError"]
