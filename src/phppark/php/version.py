"""Version string helpers shared by the detector and the vhost generator."""
from __future__ import annotations

import re

from packaging.version import Version

from ..errors import ParseError

FALLBACK_VERSION = "8.2"
SOCKET_TEMPLATE = "/var/run/php/php{version}-fpm.sock"
FPM_UNIT_TEMPLATE = "php{version}-fpm"

_VERSION_OUTPUT_RE = re.compile(r"PHP (\d+\.\d+)")
_VERSION_RE = re.compile(r"^\d+\.\d+$")


def normalize_version(value: str) -> str:
    """Return *value* trimmed to ``major.minor`` (``8.2.15`` -> ``8.2``).

    Raises :class:`ParseError` when *value* does not start with two numeric
    components.
    """
    text = value.strip()
    if text.lower().startswith("php"):
        text = text[3:].strip()
    parts = text.split(".")
    if len(parts) >= 2:
        text = f"{parts[0]}.{parts[1]}"
    if not _VERSION_RE.match(text):
        raise ParseError(f"Invalid PHP version '{value}'; expected MAJOR.MINOR (e.g. 8.2).")
    return text


def parse_version_output(output: str) -> str:
    """Extract the first ``PHP X.Y`` token from ``php -v`` output."""
    match = _VERSION_OUTPUT_RE.search(output)
    if match is None:
        raise ParseError("Could not parse PHP version from output.")
    return normalize_version(match.group(1))


def version_key(version: str) -> Version:
    """Sort key comparing versions numerically (``8.10`` > ``8.9``)."""
    return Version(normalize_version(version))


def socket_path(version: str | None) -> str:
    """Return the PHP-FPM pool socket for *version*.

    This is the single definition used by both detection and vhost rendering.
    """
    return SOCKET_TEMPLATE.format(version=normalize_version(version or FALLBACK_VERSION))


def fpm_unit(version: str) -> str:
    """Return the systemd unit name of the pool for *version*."""
    return FPM_UNIT_TEMPLATE.format(version=normalize_version(version))


__all__ = [
    "FALLBACK_VERSION",
    "fpm_unit",
    "normalize_version",
    "parse_version_output",
    "socket_path",
    "version_key",
]
