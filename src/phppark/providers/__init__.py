"""Provider interfaces for phppark."""
from __future__ import annotations

from .nginx import NginxError, NginxProvider, NginxValidationError
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "NginxError",
    "NginxProvider",
    "NginxValidationError",
    "SystemdError",
    "SystemdProvider",
]
