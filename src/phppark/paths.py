"""On-disk layout of the phppark home directory."""
from __future__ import annotations

import logging
import os
import pwd
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import PrivilegeError, StorageError

LOGGER = logging.getLogger(__name__)

HOME_ENV_VAR = "PHPPARK_HOME"
DEFAULT_HOME_NAME = ".phppark"
SUDO_USER_ENV_VAR = "SUDO_USER"


def invoking_home(env: Mapping[str, str] | None = None) -> Path:
    """Return the home of the user behind ``sudo``, else the current home.

    Commands run as root through sudo still manage the calling user's
    projects and ``~/.phppark``.
    """
    resolved_env = os.environ if env is None else env
    user = resolved_env.get(SUDO_USER_ENV_VAR, "").strip()
    if user and user != "root":
        try:
            return Path(pwd.getpwnam(user).pw_dir)
        except KeyError:
            LOGGER.debug("unknown %s %r; using current home", SUDO_USER_ENV_VAR, user)
    return Path.home()


@dataclass(frozen=True, slots=True)
class PathLayout:
    """Fixed set of files and directories owned by phppark."""

    home: Path

    @classmethod
    def discover(cls, env: Mapping[str, str] | None = None) -> PathLayout:
        """Return the layout rooted at ``$PHPPARK_HOME`` or the invoking user's ``~/.phppark``."""
        resolved_env = os.environ if env is None else env
        override = resolved_env.get(HOME_ENV_VAR, "").strip()
        if override:
            return cls(Path(override).expanduser())
        return cls(invoking_home(resolved_env) / DEFAULT_HOME_NAME)

    @property
    def config_file(self) -> Path:
        """Global settings document."""
        return self.home / "config.yaml"

    @property
    def sites_file(self) -> Path:
        """Site registry document."""
        return self.home / "sites.yaml"

    @property
    def nginx_dir(self) -> Path:
        """Staging directory holding generated virtual-host files."""
        return self.home / "nginx"

    @property
    def certificates_dir(self) -> Path:
        """Directory of per-site certificate/key pairs."""
        return self.home / "certificates"

    @property
    def logs_dir(self) -> Path:
        """Structured operation logs."""
        return self.home / "logs"

    @property
    def runtime_dir(self) -> Path:
        """Lock files."""
        return self.home / "run"

    @property
    def templates_dir(self) -> Path:
        """Optional template overrides."""
        return self.home / "templates"

    def is_installed(self) -> bool:
        """Return True once ``install`` has written the config file."""
        return self.config_file.exists()

    def ensure(self) -> None:
        """Create every directory of the layout."""
        for directory in (
            self.home,
            self.nginx_dir,
            self.certificates_dir,
            self.logs_dir,
            self.runtime_dir,
        ):
            try:
                directory.mkdir(mode=0o755, parents=True, exist_ok=True)
            except PermissionError as exc:
                raise PrivilegeError(f"Cannot create {directory}: {exc}") from exc
            except OSError as exc:
                raise StorageError(f"Cannot create {directory}: {exc}") from exc


__all__ = ["HOME_ENV_VAR", "PathLayout", "invoking_home"]
