"""Jinja2 template rendering with an optional override directory."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError as JinjaTemplateError,
)

from .errors import ParseError, PrivilegeError, StorageError


class TemplateError(ParseError):
    """Raised when a template is missing or fails to render."""


@dataclass(slots=True)
class TemplateEngine:
    """Render the templates shipped in ``phppark/templates``."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine where files in *override_dir* shadow built-ins."""
        loaders = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("phppark", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        return cls(environment=environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        try:
            template = self.environment.get_template(name)
            return template.render(**dict(context))
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render template {name}: {exc}") from exc


def write_if_changed(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Atomically write *content* unless the file already holds it."""
    try:
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            if (destination.stat().st_mode & 0o777) != mode:
                destination.chmod(mode)
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent), prefix=f".{destination.name}."
        )
    except PermissionError as exc:
        raise PrivilegeError(f"Cannot write {destination}: {exc}") from exc
    except OSError as exc:
        raise StorageError(f"Cannot write {destination}: {exc}") from exc

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    except OSError as exc:
        raise StorageError(f"Cannot write {destination}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["TemplateEngine", "TemplateError", "write_if_changed"]
