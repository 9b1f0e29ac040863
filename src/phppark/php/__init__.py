"""PHP runtime discovery and installation."""
from __future__ import annotations

from .detector import PhpVersion, PhpVersionDetector, default_version
from .installer import InstallError, InstallResult, PhpInstaller
from .version import normalize_version, parse_version_output, socket_path

__all__ = [
    "InstallError",
    "InstallResult",
    "PhpInstaller",
    "PhpVersion",
    "PhpVersionDetector",
    "default_version",
    "normalize_version",
    "parse_version_output",
    "socket_path",
]
