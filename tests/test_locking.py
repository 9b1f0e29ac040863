"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from phppark.errors import PrivilegeError
from phppark.locking import LockManager, LockTimeoutError


def test_mutate_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring the global lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "phppark.lock"
    with manager.mutate() as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert "acquired_at" in data

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.mutate(timeout=0.2):
        pass


def test_mutate_lock_timeout(tmp_path: Path) -> None:
    """A second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    other = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate():
        with pytest.raises(LockTimeoutError, match="another phppark command"):
            with other.mutate(timeout=0.1):
                pass


def test_lock_rejects_non_positive_timeout(tmp_path: Path) -> None:
    """Timeouts must be positive."""
    manager = LockManager(tmp_path / "run")

    with pytest.raises(ValueError):
        with manager.mutate(timeout=0):
            pass


def test_lock_released_after_exception(tmp_path: Path) -> None:
    """Errors inside the locked block release the lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with pytest.raises(RuntimeError):
        with manager.mutate():
            raise RuntimeError("boom")

    with manager.mutate(timeout=0.2):
        pass


def test_unwritable_lock_directory_raises_privilege_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Permission failures opening the lock file map to PrivilegeError."""
    manager = LockManager(tmp_path / "run")

    def deny(self: Path, *args: object, **kwargs: object) -> object:
        raise PermissionError("read-only")

    monkeypatch.setattr(Path, "open", deny)

    with pytest.raises(PrivilegeError, match="lock file"):
        with manager.mutate():
            pass
