"""Advisory file locks serialising mutating phppark commands."""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from .errors import PhpParkError, PrivilegeError, StorageError

GLOBAL_LOCK_NAME = "phppark.lock"
POLL_INTERVAL = 0.05


class LockTimeoutError(PhpParkError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Details about a held lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire ``fcntl`` locks under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout in seconds."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    @property
    def global_lock_path(self) -> Path:
        """Path of the lock guarding registry and config mutation."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    @contextmanager
    def mutate(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock for the duration of the context."""
        with self._acquire(self.global_lock_path, timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        effective_timeout = self.default_timeout if timeout is None else timeout
        if effective_timeout <= 0:
            raise ValueError(f"timeout must be positive (got {effective_timeout})")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = path.open("a+", encoding="utf-8")
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot open lock file {path}: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Cannot open lock file {path}: {exc}") from exc

        start = time.monotonic()
        acquired = False
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    acquired = True
                    break
                except OSError:
                    if time.monotonic() - start >= effective_timeout:
                        raise LockTimeoutError(
                            f"Could not acquire lock {path} within {effective_timeout}s. "
                            "Is another phppark command running?"
                        ) from None
                    time.sleep(POLL_INTERVAL)

            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(handle, path)
            yield LockHandle(path=path, wait_ms=wait_ms)
        finally:
            try:
                if acquired:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            finally:
                handle.close()


def _write_metadata(handle: IO[str], path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    handle.seek(0)
    handle.truncate()
    handle.write(json.dumps(payload))
    handle.flush()


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
