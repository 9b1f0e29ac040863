"""Virtual-host rendering for registered sites.

Rendering is pure: the same site, config and filesystem layout always produce
byte-identical text. Only :meth:`VhostGenerator.write` touches the disk.
"""
from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import ParkConfig
from .errors import PrivilegeError, StorageError, ValidationError
from .php.version import normalize_version, socket_path
from .state.registry import Site
from .templates import TemplateEngine, write_if_changed

TEMPLATE_NAME = "nginx/site.conf.j2"
PUBLIC_DIRS = ("public", "public_html", "web", "htdocs")
LISTEN_PORT = 80
SSL_PORT = 443

# Characters that would break out of an nginx directive value.
_UNSAFE_RE = re.compile(r"[\s;{}'\"\\$#]")


def document_root(path: Path, candidates: Sequence[str] = PUBLIC_DIRS) -> Path:
    """Return the first existing public directory under *path*, else *path*."""
    for name in candidates:
        candidate = path / name
        if candidate.is_dir():
            return candidate
    return path


def certificate_paths(certificates_dir: Path, site_name: str) -> tuple[Path, Path]:
    """Return the ``(certificate, key)`` pair for *site_name*."""
    return certificates_dir / f"{site_name}.crt", certificates_dir / f"{site_name}.key"


def _directive_value(label: str, value: str) -> str:
    if not value or _UNSAFE_RE.search(value):
        raise ValidationError(f"Unsafe {label} for nginx configuration: {value!r}")
    return value


@dataclass(slots=True)
class VhostGenerator:
    """Render and stage nginx server blocks."""

    templates: TemplateEngine
    certificates_dir: Path
    nginx_dir: Path

    def build_context(self, site: Site, config: ParkConfig) -> dict[str, object]:
        """Return the template context for *site*.

        An unset ``php_version`` binds to the current ``default_php``.
        """
        version = normalize_version(site.php_version or config.default_php)
        root = document_root(site.path)
        certificate, certificate_key = certificate_paths(self.certificates_dir, site.name)
        return {
            "site_name": _directive_value("site name", site.name),
            "server_name": _directive_value("server name", site.server_name(config.domain)),
            "root": _directive_value("document root", str(root)),
            "site_path": _directive_value("site path", str(site.path)),
            "php_version": version,
            "php_socket": socket_path(version),
            "secured": site.secured,
            "certificate": _directive_value("certificate path", str(certificate)),
            "certificate_key": _directive_value("key path", str(certificate_key)),
            "listen_port": LISTEN_PORT,
            "ssl_port": SSL_PORT,
        }

    def render(self, site: Site, config: ParkConfig) -> str:
        """Return the nginx configuration text for *site*."""
        return self.templates.render_to_string(TEMPLATE_NAME, self.build_context(site, config))

    def staged_path(self, site_name: str) -> Path:
        """Return the staging path of the rendered file."""
        return self.nginx_dir / f"{site_name}.conf"

    def write(self, site: Site, text: str) -> Path:
        """Write *text* to the staging directory (mode 0644)."""
        destination = self.staged_path(site.name)
        write_if_changed(destination, text, mode=0o644)
        return destination

    def remove(self, site_name: str) -> bool:
        """Delete the staged file; return False if it did not exist."""
        path = self.staged_path(site_name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except PermissionError as exc:
            raise PrivilegeError(f"Cannot remove {path}: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Cannot remove {path}: {exc}") from exc
        return True


__all__ = ["PUBLIC_DIRS", "VhostGenerator", "certificate_paths", "document_root"]
