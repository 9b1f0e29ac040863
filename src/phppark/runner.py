"""Child-process execution shared by every provider.

Providers never call :mod:`subprocess` directly; they receive a
:class:`CommandRunner` so reconciliation logic can be exercised with fakes.
"""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from .errors import NotFoundError

LOGGER = logging.getLogger(__name__)


class CommandRunner(Protocol):
    """Callable capability executing a command and waiting for completion."""

    def run(
        self,
        args: Sequence[str],
        *,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* to completion and return the captured result."""


@dataclass(slots=True)
class SubprocessRunner:
    """Run commands with :func:`subprocess.run`, capturing text output."""

    def run(
        self,
        args: Sequence[str],
        *,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args*; a missing executable raises :class:`NotFoundError`."""
        command = [str(arg) for arg in args]
        LOGGER.debug("exec: %s", " ".join(command))
        try:
            return subprocess.run(  # noqa: S603
                command,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise NotFoundError(f"{command[0]} not found: {exc}") from exc


def format_command(result: subprocess.CompletedProcess[str]) -> str:
    """Return a human-readable detail string for *result*."""
    args = result.args
    if isinstance(args, (list, tuple)):
        command = " ".join(str(item) for item in args)
    else:
        command = str(args)
    return f"command={command} rc={result.returncode}"


__all__ = [
    "CommandRunner",
    "SubprocessRunner",
    "format_command",
]
