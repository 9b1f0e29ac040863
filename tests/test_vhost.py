"""Tests for virtual-host rendering and staging."""
from __future__ import annotations

from pathlib import Path

import pytest

from phppark.config import ParkConfig
from phppark.errors import ValidationError
from phppark.state import Site
from phppark.templates import TemplateEngine
from phppark.vhost import VhostGenerator, certificate_paths, document_root


@pytest.fixture
def generator(tmp_path: Path) -> VhostGenerator:
    """Return a generator staging into a temporary directory."""
    return VhostGenerator(
        templates=TemplateEngine.with_overrides(None),
        certificates_dir=tmp_path / "certificates",
        nginx_dir=tmp_path / "nginx",
    )


@pytest.fixture
def config(tmp_path: Path) -> ParkConfig:
    """Return a default configuration."""
    return ParkConfig(config_file=tmp_path / "config.yaml")


def test_document_root_candidates_checked_in_order(tmp_path: Path) -> None:
    """``public`` wins over later candidates; the project root is the fallback."""
    project = tmp_path / "project"
    project.mkdir()
    assert document_root(project) == project

    (project / "htdocs").mkdir()
    assert document_root(project) == project / "htdocs"

    (project / "web").mkdir()
    assert document_root(project) == project / "web"

    (project / "public").mkdir()
    assert document_root(project) == project / "public"


def test_document_root_ignores_files(tmp_path: Path) -> None:
    """A file named like a public directory is not a document root."""
    project = tmp_path / "project"
    project.mkdir()
    (project / "public").write_text("", encoding="utf-8")

    assert document_root(project) == project


def test_render_is_deterministic(
    tmp_path: Path, generator: VhostGenerator, config: ParkConfig
) -> None:
    """The same inputs always produce byte-identical output."""
    project = tmp_path / "alpha"
    (project / "public").mkdir(parents=True)
    site = Site(name="alpha", path=project)

    first = generator.render(site, config)
    second = generator.render(site, config)

    assert first == second
    assert f"root {project / 'public'};" in first
    assert "server_name alpha.test;" in first


def test_unset_version_binds_to_current_default(
    tmp_path: Path, generator: VhostGenerator, config: ParkConfig
) -> None:
    """Sites without an override follow the registry-wide default at render time."""
    site = Site(name="alpha", path=tmp_path)

    assert "php8.2-fpm.sock" in generator.render(site, config)
    assert "php8.3-fpm.sock" in generator.render(site, config.with_default_php("8.3"))

    pinned = site.with_changes(php_version="7.4")
    assert "php7.4-fpm.sock" in generator.render(pinned, config.with_default_php("8.3"))


def test_secured_site_references_certificates(
    tmp_path: Path, generator: VhostGenerator, config: ParkConfig
) -> None:
    """Secured sites point at their certificate pair."""
    site = Site(name="alpha", path=tmp_path, secured=True)
    certificate, key = certificate_paths(tmp_path / "certificates", "alpha")

    output = generator.render(site, config)

    assert f"ssl_certificate {certificate};" in output
    assert f"ssl_certificate_key {key};" in output
    assert "fastcgi_param HTTPS on;" in output


def test_unsafe_paths_rejected(
    tmp_path: Path, generator: VhostGenerator, config: ParkConfig
) -> None:
    """Paths that would break out of an nginx directive are refused."""
    site = Site(name="alpha", path=tmp_path / "my project")

    with pytest.raises(ValidationError, match="document root"):
        generator.render(site, config)


def test_write_and_remove_staged_file(
    tmp_path: Path, generator: VhostGenerator, config: ParkConfig
) -> None:
    """Staged files are written 0644 and removal reports whether one existed."""
    site = Site(name="alpha", path=tmp_path)

    staged = generator.write(site, generator.render(site, config))

    assert staged == tmp_path / "nginx" / "alpha.conf"
    assert staged.stat().st_mode & 0o777 == 0o644
    assert generator.remove("alpha") is True
    assert generator.remove("alpha") is False
