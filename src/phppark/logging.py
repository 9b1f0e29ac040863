"""Structured operation logging.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which appends
one JSON object per operation to ``~/.phppark/logs/operations.jsonl``. Logging
is best-effort: if the directory or file cannot be written the logger disables
itself instead of failing the command.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class OperationScope:
    """Collects steps and the final result of a single operation."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start a scope for operation *name*."""
        self.name = name
        self.operation_id = uuid.uuid4().hex[:12]
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now()
        self._started = time.monotonic()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "ok", detail: object | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self.result = {"status": "success", "message": message, "changed": changed}
        if context:
            self.result["context"] = dict(context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as finished with warnings."""
        self.result = {
            "status": "warning",
            "message": message,
            "changed": changed,
            "warnings": list(warnings or [message]),
            "errors": list(errors or []),
        }
        if context:
            self.result["context"] = dict(context)

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self.result = {
            "status": "error",
            "message": message,
            "errors": list(errors or [message]),
        }
        if rc is not None:
            self.result["rc"] = rc
        if context:
            self.result["context"] = dict(context)

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for the operation."""
        duration_ms = int((time.monotonic() - self._started) * 1000)
        record = {
            "id": self.operation_id,
            "operation": self.name,
            "started_at": self.started_at,
            "finished_at": _now(),
            "duration_ms": duration_ms,
            "pid": os.getpid(),
            "args": self.args,
            "target": self.target,
            "steps": self.steps,
            "result": self.result or {"status": "unknown"},
        }
        return _sanitize(record)  # type: ignore[return-value]


class StructuredLogger:
    """Append operation records to a JSON-lines file."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*, disabling the logger if it is not writable."""
        self.log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self.log_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("operation log disabled: %s", exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Location of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope whose record is written when the context exits.

        Exceptions escaping a scope without a result are recorded as errors
        and re-raised.
        """
        scope = OperationScope(name, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__, rc=getattr(exc, "exit_code", None))
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.debug("operation log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
