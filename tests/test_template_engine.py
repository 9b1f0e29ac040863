"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from phppark.templates import TemplateEngine, TemplateError, write_if_changed


def _context(**changes: object) -> dict[str, object]:
    context: dict[str, object] = {
        "site_name": "alpha",
        "site_path": "/home/dev/alpha",
        "server_name": "alpha.test",
        "root": "/home/dev/alpha/public",
        "php_version": "8.2",
        "php_socket": "/var/run/php/php8.2-fpm.sock",
        "secured": False,
        "certificate": "/home/dev/.phppark/certificates/alpha.crt",
        "certificate_key": "/home/dev/.phppark/certificates/alpha.key",
        "listen_port": 80,
        "ssl_port": 443,
    }
    context.update(changes)
    return context


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("nginx/site.conf.j2", _context())

    assert "server_name alpha.test;" in output
    assert "root /home/dev/alpha/public;" in output
    assert "fastcgi_pass unix:/var/run/php/php8.2-fpm.sock;" in output
    assert "ssl_certificate" not in output


def test_secured_template_redirects_and_listens_on_ssl() -> None:
    """Secured sites redirect HTTP and serve TLS with the certificate pair."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("nginx/site.conf.j2", _context(secured=True))

    assert "return 301 https://$host$request_uri;" in output
    assert "listen 443 ssl;" in output
    assert "ssl_certificate /home/dev/.phppark/certificates/alpha.crt;" in output
    assert "ssl_certificate_key /home/dev/.phppark/certificates/alpha.key;" in output


def test_missing_variable_raises_template_error() -> None:
    """Strict undefined variables surface as TemplateError."""
    engine = TemplateEngine.with_overrides(None)
    context = _context()
    del context["php_socket"]

    with pytest.raises(TemplateError, match="nginx/site.conf.j2"):
        engine.render_to_string("nginx/site.conf.j2", context)


def test_override_directory_shadows_builtin(tmp_path: Path) -> None:
    """Templates in the override directory take precedence."""
    override = tmp_path / "templates" / "nginx"
    override.mkdir(parents=True)
    (override / "site.conf.j2").write_text("custom {{ server_name }}\n", encoding="utf-8")
    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    assert engine.render_to_string("nginx/site.conf.j2", _context()) == "custom alpha.test\n"


def test_missing_override_directory_is_ignored(tmp_path: Path) -> None:
    """A non-existent override directory falls back to the built-ins."""
    engine = TemplateEngine.with_overrides(tmp_path / "absent")

    assert "server_name alpha.test;" in engine.render_to_string("nginx/site.conf.j2", _context())


def test_write_if_changed_repairs_mode_without_rewriting(tmp_path: Path) -> None:
    """Identical content only has its mode corrected."""
    destination = tmp_path / "file.conf"
    destination.write_text("same\n", encoding="utf-8")
    destination.chmod(0o600)

    assert write_if_changed(destination, "same\n", mode=0o644) is False
    assert destination.stat().st_mode & 0o777 == 0o644
    assert write_if_changed(destination, "different\n", mode=0o644) is True
    assert destination.read_text(encoding="utf-8") == "different\n"
