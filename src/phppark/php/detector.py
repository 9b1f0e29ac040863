"""Discovery of installed PHP interpreters."""
from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import NotFoundError, ParseError, StorageError
from ..runner import CommandRunner, SubprocessRunner
from .version import normalize_version, parse_version_output, socket_path, version_key

LOGGER = logging.getLogger(__name__)

DEFAULT_SEARCH_PATHS = (Path("/usr/bin"), Path("/usr/local/bin"))

# php8.2, php83, php8 ... but not php-fpm8.2, phpize or php-config.
_BINARY_NAME_RE = re.compile(r"^php\d+(\.\d+)*$")


@dataclass(frozen=True, slots=True)
class PhpVersion:
    """An installed PHP interpreter."""

    version: str
    binary: Path
    socket: str
    is_default: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "binary": str(self.binary),
            "socket": self.socket,
            "is_default": self.is_default,
        }


@dataclass(slots=True)
class PhpVersionDetector:
    """Scan well-known binary directories for versioned PHP interpreters."""

    runner: CommandRunner = field(default_factory=SubprocessRunner)
    search_paths: Sequence[Path] = DEFAULT_SEARCH_PATHS
    which: Callable[[str], str | None] = shutil.which

    def detect(self) -> list[PhpVersion]:
        """Return installed versions, newest first.

        The first binary found for a given ``X.Y`` wins. The interpreter that
        ``php`` resolves to on ``PATH`` is flagged as the default.
        """
        found: dict[str, Path] = {}
        for binary in self._candidates():
            version = self._query_version(binary)
            if version is None or version in found:
                continue
            found[version] = binary

        default = self._path_default()
        versions = [
            PhpVersion(
                version=version,
                binary=binary,
                socket=socket_path(version),
                is_default=version == default,
            )
            for version, binary in found.items()
        ]
        versions.sort(key=lambda item: version_key(item.version), reverse=True)
        return versions

    def validate(self, version: str, versions: Iterable[PhpVersion] | None = None) -> bool:
        """Return True when *version* (normalised) is installed."""
        wanted = normalize_version(version)
        candidates = self.detect() if versions is None else versions
        return any(item.version == wanted for item in candidates)

    def require(self, version: str, versions: Iterable[PhpVersion] | None = None) -> str:
        """Return the normalised *version* or raise listing what is installed."""
        wanted = normalize_version(version)
        candidates = list(self.detect() if versions is None else versions)
        if any(item.version == wanted for item in candidates):
            return wanted
        available = ", ".join(item.version for item in candidates) or "none"
        raise NotFoundError(f"PHP {wanted} is not installed. Available versions: {available}.")

    # ------------------------------------------------------------------
    def _candidates(self) -> list[Path]:
        binaries: list[Path] = []
        for directory in self.search_paths:
            try:
                names = sorted(os.listdir(directory))
            except OSError:
                continue
            binaries.extend(
                Path(directory) / name for name in names if _BINARY_NAME_RE.match(name)
            )
        return binaries

    def _query_version(self, binary: Path) -> str | None:
        try:
            result = self.runner.run([str(binary), "-v"])
        except (NotFoundError, StorageError, OSError) as exc:
            LOGGER.debug("skipping %s: %s", binary, exc)
            return None
        if result.returncode != 0:
            return None
        try:
            return parse_version_output(result.stdout or "")
        except ParseError:
            return None

    def _path_default(self) -> str | None:
        located = self.which("php")
        if not located:
            return None
        return self._query_version(Path(located))


def default_version(versions: Sequence[PhpVersion]) -> PhpVersion | None:
    """Return the entry flagged default, else the newest, else None."""
    for item in versions:
        if item.is_default:
            return item
    return versions[0] if versions else None


__all__ = [
    "DEFAULT_SEARCH_PATHS",
    "PhpVersion",
    "PhpVersionDetector",
    "default_version",
    "normalize_version",
    "parse_version_output",
    "socket_path",
]
