"""Site registry backed by ``~/.phppark/sites.yaml``.

The registry is loaded whole, mutated in memory and rewritten atomically
(temporary file plus :func:`os.replace`) so a crash never leaves a truncated
document behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from ..errors import NotFoundError, ParseError, PrivilegeError, StorageError, ValidationError


class SiteKind(str, Enum):
    """How a site entered the registry."""

    LINKED = "linked"
    PARKED = "parked"

    @classmethod
    def parse(cls, value: object) -> SiteKind:
        """Return the kind for *value*, accepting the legacy ``link``/``park``."""
        text = str(value or "").strip().lower()
        legacy = {"link": cls.LINKED, "park": cls.PARKED}
        if text in legacy:
            return legacy[text]
        try:
            return cls(text)
        except ValueError as exc:
            raise ParseError(f"Unknown site kind {value!r}.") from exc


def validate_site_name(name: str) -> str:
    """Return *name* stripped, raising :class:`ValidationError` if unusable."""
    candidate = name.strip()
    if not candidate:
        raise ValidationError("Site name must be a non-empty string.")
    if candidate in {".", ".."} or "/" in candidate or "\\" in candidate:
        raise ValidationError(f"Invalid site name '{name}'.")
    return candidate


@dataclass(frozen=True, slots=True)
class Site:
    """A project directory served as ``<name>.<domain>``."""

    name: str
    path: Path
    kind: SiteKind = SiteKind.LINKED
    php_version: str | None = None
    secured: bool = False

    def __post_init__(self) -> None:
        """Validate the name and require an absolute path."""
        object.__setattr__(self, "name", validate_site_name(self.name))
        path = Path(self.path).expanduser()
        if not path.is_absolute():
            raise ValidationError(f"Site path must be absolute: {self.path}")
        object.__setattr__(self, "path", path)
        if self.php_version is not None and not str(self.php_version).strip():
            object.__setattr__(self, "php_version", None)

    def server_name(self, domain: str) -> str:
        """Return the public host name of the site."""
        return f"{self.name}.{domain}"

    def with_changes(self, **changes: Any) -> Site:
        """Return a copy of the site with *changes* applied."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, object]:
        """Return the mapping persisted in ``sites.yaml``."""
        return {
            "name": self.name,
            "path": str(self.path),
            "kind": self.kind.value,
            "php_version": self.php_version or "",
            "secured": self.secured,
        }

    @classmethod
    def from_mapping(cls, entry: Mapping[str, object]) -> Site:
        """Build a site from a persisted mapping."""
        if not isinstance(entry, Mapping):
            raise ParseError("Site entry must be a mapping.")
        name = entry.get("name")
        path = entry.get("path")
        if not isinstance(name, str) or not name.strip():
            raise ParseError("Site entry missing 'name'.")
        if not isinstance(path, str) or not path.strip():
            raise ParseError(f"Site '{name}' missing 'path'.")
        secured = entry.get("secured", False)
        if not isinstance(secured, bool):
            raise ParseError(f"Site '{name}' has non-boolean 'secured'.")
        php_version = entry.get("php_version")
        try:
            return cls(
                name=name,
                path=Path(path),
                kind=SiteKind.parse(entry.get("kind", SiteKind.LINKED.value)),
                php_version=str(php_version) if php_version not in (None, "") else None,
                secured=secured,
            )
        except ValidationError as exc:
            raise ParseError(f"Invalid site entry '{name}': {exc}") from exc


@dataclass(slots=True)
class SiteRegistry:
    """Ordered, name-unique collection of :class:`Site` records."""

    sites: list[Site] = field(default_factory=list)

    def __iter__(self) -> Iterator[Site]:
        return iter(self.sites)

    def __len__(self) -> int:
        return len(self.sites)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.find(name) is not None

    def list(self) -> list[Site]:
        """Return the sites in insertion order."""
        return list(self.sites)

    def find(self, name: str) -> Site | None:
        """Return the site called *name*, if registered."""
        for site in self.sites:
            if site.name == name:
                return site
        return None

    def get(self, name: str) -> Site:
        """Return the site called *name* or raise :class:`NotFoundError`."""
        site = self.find(name)
        if site is None:
            raise NotFoundError(f"Site '{name}' not found.")
        return site

    def upsert(self, site: Site) -> None:
        """Replace the entry with the same name in place, else append."""
        for index, existing in enumerate(self.sites):
            if existing.name == site.name:
                self.sites[index] = site
                return
        self.sites.append(site)

    def remove(self, name: str) -> Site:
        """Remove and return the site called *name*."""
        for index, existing in enumerate(self.sites):
            if existing.name == name:
                return self.sites.pop(index)
        raise NotFoundError(f"Site '{name}' not found.")

    def to_dict(self) -> dict[str, object]:
        """Return the document persisted as ``sites.yaml``."""
        return {"sites": [site.to_dict() for site in self.sites]}

    @classmethod
    def from_sites(cls, sites: Iterable[Site]) -> SiteRegistry:
        """Build a registry, letting later duplicates replace earlier ones."""
        registry = cls()
        for site in sites:
            registry.upsert(site)
        return registry


@dataclass(frozen=True)
class SiteStore:
    """Load and persist a :class:`SiteRegistry` at *path*."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the path after initialisation."""
        object.__setattr__(self, "path", Path(self.path).expanduser())

    def exists(self) -> bool:
        """Return True when the registry document exists."""
        return self.path.exists()

    def load(self, *, allow_missing: bool = False) -> SiteRegistry:
        """Read the registry, returning an empty one only when *allow_missing*."""
        if not self.path.exists():
            if allow_missing:
                return SiteRegistry()
            raise StorageError(
                f"Site registry {self.path} not found. Run 'phppark install' first."
            )
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ParseError(f"Failed to parse site registry {self.path}: {exc}") from exc
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot read {self.path}: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Cannot read {self.path}: {exc}") from exc

        if data is None:
            return SiteRegistry()
        if not isinstance(data, Mapping):
            raise ParseError(f"Site registry {self.path} must contain a mapping.")
        raw_sites = data.get("sites") or []
        if not isinstance(raw_sites, list):
            raise ParseError(f"Site registry {self.path}: 'sites' must be a list.")
        return SiteRegistry.from_sites(Site.from_mapping(entry) for entry in raw_sites)

    def save(self, registry: SiteRegistry) -> None:
        """Atomically write *registry* to disk."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}."
            )
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot write {self.path}: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Cannot write {self.path}: {exc}") from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(registry.to_dict(), handle, sort_keys=False)
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o644)
        except OSError as exc:
            raise StorageError(f"Cannot write {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = ["Site", "SiteKind", "SiteRegistry", "SiteStore", "validate_site_name"]
