"""phppark: serve local PHP projects through nginx, PHP-FPM and dnsmasq.

Only the version lives here; the CLI and workflows import their modules
directly.
"""
from __future__ import annotations

__all__ = ["__version__"]

# Keep in sync with ``pyproject.toml``.
__version__ = "0.1.0"
