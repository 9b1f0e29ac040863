"""Make project trees readable by the nginx/PHP-FPM worker user."""
from __future__ import annotations

import errno
import logging
import os
from pathlib import Path

from .errors import PrivilegeError, StorageError

LOGGER = logging.getLogger(__name__)

DIR_MODE = 0o755
FILE_MODE = 0o644


def _chmod(path: Path, mode: int) -> None:
    try:
        os.chmod(path, mode)
    except OSError as exc:
        if exc.errno in (errno.EPERM, errno.EACCES):
            raise PrivilegeError(f"Cannot chmod {path}: {exc}") from exc
        raise StorageError(f"Cannot chmod {path}: {exc}") from exc


def open_ancestors(path: Path, home: Path) -> list[Path]:
    """Chmod *path* and each ancestor up to *home* to 0755.

    Only *path* itself is changed when it does not live below *home*.
    Returns the directories changed, innermost first.
    """
    current = Path(os.path.abspath(path))
    stop = Path(os.path.abspath(home))
    if current != stop and stop not in current.parents:
        _chmod(current, DIR_MODE)
        return [current]
    changed: list[Path] = []
    while True:
        _chmod(current, DIR_MODE)
        changed.append(current)
        if current == stop:
            break
        current = current.parent
    return changed


def normalize_tree(root: Path) -> int:
    """Set directories to 0755 and files to 0644 below *root*.

    Symlinks are neither followed nor modified. Returns the number of entries
    visited.
    """
    count = 0

    def _raise(exc: OSError) -> None:
        if exc.errno in (errno.EPERM, errno.EACCES):
            raise PrivilegeError(f"Cannot read {exc.filename}: {exc}") from exc
        raise StorageError(f"Cannot read {exc.filename}: {exc}") from exc

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise, followlinks=False):
        directory = Path(dirpath)
        _chmod(directory, DIR_MODE)
        count += 1
        for name in filenames:
            entry = directory / name
            if entry.is_symlink():
                continue
            _chmod(entry, FILE_MODE)
            count += 1
        dirnames[:] = [name for name in dirnames if not (directory / name).is_symlink()]
    return count


def fix_site_permissions(path: Path, home: Path | None = None) -> int:
    """Open the ancestors of *path* up to *home* and normalise the tree."""
    home_dir = home if home is not None else Path.home()
    open_ancestors(path, home_dir)
    count = normalize_tree(path)
    LOGGER.debug("normalised %s entries under %s", count, path)
    return count


__all__ = ["fix_site_permissions", "normalize_tree", "open_ancestors"]
