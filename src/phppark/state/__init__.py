"""State management helpers for phppark."""
from __future__ import annotations

from .registry import Site, SiteKind, SiteRegistry, SiteStore, validate_site_name

__all__ = ["Site", "SiteKind", "SiteRegistry", "SiteStore", "validate_site_name"]
