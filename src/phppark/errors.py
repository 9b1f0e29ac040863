"""Error taxonomy shared by every phppark component.

Components raise a subclass of one of the category errors below so the CLI
can translate failures into exit codes without knowing which provider failed.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class PhpParkError(RuntimeError):
    """Base class for all phppark failures."""

    exit_code: ExitCode = ExitCode.ENVIRONMENT


class StorageError(PhpParkError):
    """Filesystem or child-process I/O failed."""


class ParseError(PhpParkError):
    """A persisted document or version string could not be parsed."""


class ValidationError(PhpParkError):
    """Input or generated configuration failed validation."""

    exit_code = ExitCode.VALIDATION


class NotFoundError(PhpParkError):
    """A named site, version or binary does not exist."""

    exit_code = ExitCode.VALIDATION


class PrivilegeError(PhpParkError):
    """The operation needs privileges the process does not hold."""


__all__ = [
    "NotFoundError",
    "ParseError",
    "PhpParkError",
    "PrivilegeError",
    "StorageError",
    "ValidationError",
]
