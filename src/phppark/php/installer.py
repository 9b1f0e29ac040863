"""Installer for PHP-FPM packages from the ondrej/php PPA."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..errors import NotFoundError, StorageError
from ..exit_codes import ExitCode
from ..runner import CommandRunner, SubprocessRunner
from .version import normalize_version

LOGGER = logging.getLogger(__name__)

PPA = "ppa:ondrej/php"
EXTENSIONS = ("cli", "common", "mysql", "curl", "mbstring", "xml", "zip")


class InstallError(StorageError):
    """Raised when a required installation step fails."""

    exit_code = ExitCode.PROVIDER


@dataclass(frozen=True, slots=True)
class InstallResult:
    """Outcome of installing a PHP version."""

    version: str
    packages: list[str]
    failed_extensions: list[str]

    @property
    def complete(self) -> bool:
        """True when every extension package installed."""
        return not self.failed_extensions


@dataclass(slots=True)
class PhpInstaller:
    """Install ``php{X.Y}-fpm`` and common extensions with apt."""

    runner: CommandRunner = field(default_factory=SubprocessRunner)
    apt_bin: str = "apt-get"
    add_repository_bin: str = "add-apt-repository"
    extensions: Sequence[str] = EXTENSIONS

    def install(self, version: str) -> InstallResult:
        """Install *version*.

        Adding the PPA, refreshing the index and installing the FPM package
        are required and abort on failure. Extension packages are installed
        one at a time and failures are only reported.
        """
        normalized = normalize_version(version)
        fpm_package = f"php{normalized}-fpm"

        self._required([self.add_repository_bin, "-y", PPA], "adding PHP repository")
        self._required([self.apt_bin, "update"], "updating package index")
        self._required([self.apt_bin, "install", "-y", fpm_package], f"installing {fpm_package}")

        packages = [fpm_package]
        failed: list[str] = []
        for extension in self.extensions:
            package = f"php{normalized}-{extension}"
            try:
                result = self.runner.run([self.apt_bin, "install", "-y", package])
            except NotFoundError as exc:
                LOGGER.warning("could not install %s: %s", package, exc)
                failed.append(package)
                continue
            if result.returncode != 0:
                LOGGER.warning("could not install %s (exit %s)", package, result.returncode)
                failed.append(package)
                continue
            packages.append(package)

        return InstallResult(version=normalized, packages=packages, failed_extensions=failed)

    def _required(self, args: Sequence[str], description: str) -> subprocess.CompletedProcess[str]:
        try:
            result = self.runner.run(args)
        except NotFoundError as exc:
            raise InstallError(f"Failed {description}: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise InstallError(f"Failed {description} (exit {result.returncode}): {message}")
        return result


__all__ = ["EXTENSIONS", "InstallError", "InstallResult", "PhpInstaller"]
