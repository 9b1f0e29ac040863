"""Command workflows reconciling the site registry with the host.

Every mutating workflow follows the same shape: load config and registry,
select or change sites, render their virtual hosts, deploy them, adjust
certificates and service state, then persist. Each returns an
:class:`~phppark.results.OperationReport`; only structural failures raise.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

from .config import ParkConfig, StubState, default_config, load_config, save_config
from .dns import DnsResolverManager
from .errors import NotFoundError, PhpParkError, StorageError, ValidationError
from .locking import LockManager
from .paths import PathLayout, invoking_home
from .permissions import fix_site_permissions
from .php.detector import PhpVersion, PhpVersionDetector, default_version
from .php.installer import PhpInstaller
from .php.version import fpm_unit, normalize_version
from .providers.nginx import NginxProvider
from .providers.systemd import SystemdProvider
from .results import OperationReport
from .runner import CommandRunner, SubprocessRunner
from .state.registry import Site, SiteKind, SiteRegistry, SiteStore
from .templates import TemplateEngine
from .tls import CertificateError, CertificateManager
from .vhost import VhostGenerator

LOGGER = logging.getLogger(__name__)

TRUST_TEST_LIMIT = 3


class Reconciler:
    """Run phppark workflows against injected collaborators."""

    def __init__(
        self,
        layout: PathLayout,
        config: ParkConfig,
        *,
        runner: CommandRunner,
        detector: PhpVersionDetector,
        installer: PhpInstaller,
        nginx: NginxProvider,
        services: SystemdProvider,
        dns: DnsResolverManager,
        certificates: CertificateManager,
        vhosts: VhostGenerator,
        locks: LockManager,
        home: Path | None = None,
    ) -> None:
        """Store collaborators; use :meth:`create` for the production wiring."""
        self.layout = layout
        self.config = config
        self.runner = runner
        self.detector = detector
        self.installer = installer
        self.nginx = nginx
        self.services = services
        self.dns = dns
        self.certificates = certificates
        self.vhosts = vhosts
        self.locks = locks
        self.home = home
        self.store = SiteStore(layout.sites_file)

    @classmethod
    def create(
        cls,
        layout: PathLayout,
        *,
        runner: CommandRunner | None = None,
        env: Mapping[str, str] | None = None,
        home: Path | None = None,
    ) -> Reconciler:
        """Wire real providers from the configuration under *layout*."""
        config = load_config(layout.config_file, env=env, allow_missing=True)
        system = config.system
        command_runner = runner or SubprocessRunner()
        services = SystemdProvider(runner=command_runner, systemctl_bin=system.systemctl_bin)
        templates = TemplateEngine.with_overrides(layout.templates_dir)
        return cls(
            layout,
            config,
            runner=command_runner,
            detector=PhpVersionDetector(
                runner=command_runner, search_paths=system.php_search_paths
            ),
            installer=PhpInstaller(runner=command_runner),
            nginx=NginxProvider(
                runner=command_runner,
                sites_available=system.sites_available,
                sites_enabled=system.sites_enabled,
                nginx_bin=system.nginx_bin,
                systemctl_bin=system.systemctl_bin,
            ),
            services=services,
            dns=DnsResolverManager(system=system, runner=command_runner, services=services),
            certificates=CertificateManager(layout.certificates_dir),
            vhosts=VhostGenerator(
                templates=templates,
                certificates_dir=layout.certificates_dir,
                nginx_dir=layout.nginx_dir,
            ),
            locks=LockManager(layout.runtime_dir, system.lock_timeout),
            home=home if home is not None else invoking_home(env),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_installed(self) -> None:
        if not self.layout.is_installed():
            raise StorageError("phppark is not installed. Run 'phppark install' first.")

    @contextmanager
    def _mutating(self) -> Iterator[SiteRegistry]:
        self._require_installed()
        with self.locks.mutate():
            yield self.store.load()

    def _save_config(self, change: Callable[[ParkConfig], ParkConfig]) -> None:
        # Environment overrides stay out of the persisted document.
        stored = load_config(self.layout.config_file, env={})
        save_config(change(stored), self.layout.config_file)
        self.config = change(self.config)

    def load_sites(self) -> SiteRegistry:
        """Return the persisted registry."""
        self._require_installed()
        return self.store.load()

    def apply_site(self, site: Site, *, strict: bool = False) -> OperationReport:
        """Render, stage and deploy *site*, then make sure its services run.

        Rendering and nginx deployment failures are advisory unless *strict*;
        permissions and service state are always best-effort.
        """
        report = OperationReport(operation=f"apply {site.name}")
        if site.secured and not self.certificates.exists(site.name):
            try:
                self.certificates.generate(site.name, self.config.domain)
                report.ok("certificate", f"generated for {site.server_name(self.config.domain)}")
            except PhpParkError as exc:
                if strict:
                    raise
                report.advisory("certificate", str(exc))

        try:
            text = self.vhosts.render(site, self.config)
            staged = self.vhosts.write(site, text)
        except PhpParkError as exc:
            if strict:
                raise
            report.advisory("render", f"{exc}. Site registered but nginx config not created.")
            return report
        report.ok("render", str(staged))

        try:
            fix_site_permissions(site.path, self.home)
            report.ok("permissions", str(site.path))
        except PhpParkError as exc:
            report.advisory("permissions", str(exc))

        try:
            report.extend(self.nginx.deploy(site.name, staged), prefix="nginx ")
        except PhpParkError as exc:
            if strict:
                raise
            report.advisory("nginx deploy", str(exc))

        version = normalize_version(site.php_version or self.config.default_php)
        for unit in (fpm_unit(version), "nginx"):
            try:
                report.extend(self.services.ensure_running(unit))
            except PhpParkError as exc:
                report.advisory(f"start {unit}", str(exc))
        report.changed = max(report.changed, 1)
        return report

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------
    def install(self) -> OperationReport:
        """Create the home layout, default config and empty registry."""
        report = OperationReport(operation="install")
        self.layout.ensure()
        if self.layout.is_installed():
            report.skipped("install", f"already installed at {self.layout.home}")
            return report

        with self.locks.mutate():
            versions = self.detector.detect()
            preferred = default_version(versions)
            document = default_config(
                self.layout.config_file,
                default_php=preferred.version if preferred is not None else None,
            )
            save_config(document, self.layout.config_file)
            config = self.config = self.config.with_default_php(document.default_php)
            report.ok("write config", str(self.layout.config_file))
            self.store.save(SiteRegistry())
            report.ok("write site registry", str(self.layout.sites_file))
            report.changed = 1

            for unit in ["nginx", *(fpm_unit(item.version) for item in versions)]:
                try:
                    report.extend(self.services.ensure_running(unit))
                except PhpParkError as exc:
                    report.advisory(f"start {unit}", str(exc))
        report.data["php_versions"] = [item.version for item in versions]
        report.data["default_php"] = config.default_php
        return report

    def park(self, path: Path | None = None) -> OperationReport:
        """Register every visible subdirectory of *path* as a parked site."""
        directory = Path(path or Path.cwd()).expanduser().resolve()
        if not directory.is_dir():
            raise ValidationError(f"{directory} is not a directory.")
        report = OperationReport(operation="park")
        report.data["path"] = str(directory)

        with self._mutating() as registry:
            added: list[Site] = []
            for entry in sorted(directory.iterdir()):
                if entry.name.startswith(".") or not entry.is_dir():
                    continue
                if entry.name in registry:
                    report.skipped(entry.name, "already registered")
                    continue
                site = Site(
                    name=entry.name,
                    path=directory / entry.name,
                    kind=SiteKind.PARKED,
                    secured=self.config.use_https,
                )
                registry.upsert(site)
                added.append(site)

            if not added:
                report.skipped("park", "no new sites found")
                return report

            self.store.save(registry)
            report.changed = len(added)
            for site in added:
                report.ok(site.name, site.server_name(self.config.domain))
                report.extend(self.apply_site(site), prefix=f"{site.name}: ")
        report.data["added"] = [site.name for site in added]
        return report

    def link(self, name: str | None = None, path: Path | None = None) -> OperationReport:
        """Register *path* (default: the working directory) as a linked site."""
        directory = Path(path or Path.cwd()).expanduser().resolve()
        if not directory.is_dir():
            raise NotFoundError(f"Directory {directory} does not exist.")
        site_name = name or directory.name
        report = OperationReport(operation="link")

        with self._mutating() as registry:
            existing = registry.find(site_name)
            if existing is not None:
                report.skipped(
                    "link",
                    f"Site '{site_name}' already exists at {existing.path}. "
                    f"To update, unlink first: phppark unlink {site_name}",
                )
                report.data["existing_path"] = str(existing.path)
                return report

            site = Site(
                name=site_name,
                path=directory,
                kind=SiteKind.LINKED,
                secured=self.config.use_https,
            )
            registry.upsert(site)
            self.store.save(registry)
            report.ok("link", f"{site.server_name(self.config.domain)} -> {directory}")
            report.changed = 1
            report.extend(self.apply_site(site))
        report.data["site"] = site.to_dict()
        return report

    def unlink(self, name: str) -> OperationReport:
        """Remove site *name* from nginx, disk and the registry."""
        report = OperationReport(operation="unlink")
        with self._mutating() as registry:
            site = registry.get(name)

            if self.vhosts.remove(site.name):
                report.ok("remove staged config", str(self.vhosts.staged_path(site.name)))
            try:
                report.extend(self.nginx.remove(site.name), prefix="nginx ")
            except PhpParkError as exc:
                report.advisory("nginx remove", str(exc))
            try:
                if self.certificates.remove(site.name):
                    report.ok("remove certificate", site.name)
            except PhpParkError as exc:
                report.advisory("remove certificate", str(exc))

            registry.remove(site.name)
            self.store.save(registry)
            report.ok("unregister", site.name)
            report.changed = 1
        return report

    def links(self) -> list[Site]:
        """Return registered sites in insertion order."""
        return self.load_sites().list()

    def rebuild(self) -> OperationReport:
        """Re-apply every registered site, collecting per-site failures."""
        report = OperationReport(operation="rebuild")
        succeeded: list[str] = []
        failed: list[str] = []
        with self._mutating() as registry:
            for site in registry:
                try:
                    site_report = self.apply_site(site, strict=True)
                except PhpParkError as exc:
                    report.fatal(site.name, str(exc))
                    failed.append(site.name)
                    continue
                report.extend(site_report, prefix=f"{site.name}: ")
                succeeded.append(site.name)
        report.data["succeeded"] = succeeded
        report.data["failed"] = failed
        return report

    def secure(self, name: str) -> OperationReport:
        """Serve site *name* over HTTPS with a fresh self-signed certificate."""
        report = OperationReport(operation="secure")
        with self._mutating() as registry:
            site = registry.get(name)
            if site.secured and self.certificates.exists(site.name):
                host = site.server_name(self.config.domain)
                report.skipped("secure", f"{host} already secured")
                return report

            paths = self.certificates.generate(site.name, self.config.domain)
            report.ok("certificate", str(paths.certificate))
            site = site.with_changes(secured=True)
            registry.upsert(site)
            self.store.save(registry)
            report.changed = 1
            report.extend(self.apply_site(site, strict=True))
        return report

    def unsecure(self, name: str) -> OperationReport:
        """Serve site *name* over plain HTTP and delete its certificate."""
        report = OperationReport(operation="unsecure")
        with self._mutating() as registry:
            site = registry.get(name)
            if not site.secured:
                host = site.server_name(self.config.domain)
                report.skipped("unsecure", f"{host} is not secured")
                return report

            try:
                self.certificates.remove(site.name)
                report.ok("remove certificate", site.name)
            except PhpParkError as exc:
                report.advisory("remove certificate", str(exc))
            site = site.with_changes(secured=False)
            registry.upsert(site)
            self.store.save(registry)
            report.changed = 1
            report.extend(self.apply_site(site))
        return report

    def php_versions(self) -> list[PhpVersion]:
        """Return installed PHP versions, newest first."""
        return self.detector.detect()

    def use(
        self,
        version: str,
        site_name: str | None = None,
        *,
        install_missing: bool = False,
    ) -> OperationReport:
        """Switch the default PHP version, or the version of one site."""
        wanted = normalize_version(version)
        report = OperationReport(operation="use")
        self._require_installed()

        versions = self.detector.detect()
        if install_missing and not self.detector.validate(wanted, versions):
            result = self.installer.install(wanted)
            report.ok("install", ", ".join(result.packages))
            for package in result.failed_extensions:
                report.advisory("install extension", f"could not install {package}")
            versions = self.detector.detect()
        self.detector.require(wanted, versions)
        report.data["version"] = wanted

        with self._mutating() as registry:
            if site_name is None:
                self._save_config(lambda config: config.with_default_php(wanted))
                report.ok("default php", wanted)
                report.changed = 1
                return report

            site = registry.get(site_name).with_changes(php_version=wanted)
            registry.upsert(site)
            self.store.save(registry)
            report.ok("site php", f"{site.name} -> {wanted}")
            report.changed = 1
            report.extend(self.apply_site(site))
        return report

    def status(self) -> dict[str, object]:
        """Return a snapshot of the installation for display."""
        snapshot: dict[str, object] = {
            "installed": self.layout.is_installed(),
            "home": str(self.layout.home),
        }
        if not snapshot["installed"]:
            return snapshot

        warnings: list[str] = []
        config = self.config
        snapshot["config"] = {
            "domain": config.domain,
            "default_php": config.default_php,
            "use_https": config.use_https,
            "path": str(self.layout.config_file),
        }

        try:
            sites = self.store.load().list()
        except PhpParkError as exc:
            warnings.append(f"Failed to load sites: {exc}")
            sites = []
        snapshot["sites"] = {
            "total": len(sites),
            "linked": sum(1 for site in sites if site.kind is SiteKind.LINKED),
            "parked": sum(1 for site in sites if site.kind is SiteKind.PARKED),
            "secured": sum(1 for site in sites if site.secured),
            "path": str(self.layout.sites_file),
        }
        snapshot["nginx"] = {
            "configs": _count_files(self.layout.nginx_dir, ".conf"),
            "path": str(self.layout.nginx_dir),
            "installed": self.nginx.is_installed(),
        }
        snapshot["certificates"] = {
            "count": _count_files(self.layout.certificates_dir, ".crt"),
            "path": str(self.layout.certificates_dir),
            "sites": self._certificate_details(sites, warnings),
        }
        snapshot["php"] = [item.to_dict() for item in self.detector.detect()]

        stub = self.dns.stub_status(config.dns.stub_state)
        if not stub.consistent:
            warnings.append(f"DNS stub state out of sync: {stub.describe()}")
        snapshot["dns"] = {
            "domain": config.domain,
            "configured": self.dns.is_domain_configured(config.domain),
            "dnsmasq_installed": self.dns.is_installed(),
            "stub_state": config.dns.stub_state.value,
            "marker_present": stub.marker_present,
        }
        snapshot["warnings"] = warnings
        return snapshot

    def _certificate_details(
        self, sites: list[Site], warnings: list[str]
    ) -> list[dict[str, object]]:
        details: list[dict[str, object]] = []
        for site in sites:
            if not site.secured:
                continue
            try:
                info = self.certificates.inspect(site.name)
            except CertificateError as exc:
                warnings.append(str(exc))
                continue
            if info is None:
                warnings.append(f"Secured site {site.name} has no certificate")
                continue
            expired = info.is_expired()
            if expired:
                expiry = f"{info.not_valid_after:%Y-%m-%d}"
                warnings.append(f"Certificate for {site.name} expired on {expiry}")
            if not info.matches_key:
                warnings.append(f"Certificate for {site.name} does not match its private key")
            details.append(
                {
                    "name": site.name,
                    "expires": info.not_valid_after.isoformat(),
                    "expired": expired,
                    "matches_key": info.matches_key,
                }
            )
        return details

    def trust(self, *, disable_stub: bool = True) -> OperationReport:
        """Make ``*.<domain>`` resolve to this host and test a few names."""
        report = OperationReport(operation="trust")
        self._require_installed()
        domain = self.config.domain

        self.dns.require_installed()
        with self.locks.mutate():
            if self.dns.is_domain_configured(domain):
                report.skipped("dns", f"resolver already configured for .{domain}")
            else:
                if disable_stub and self.dns.stub_conflict():
                    stub_report = self.dns.disable_stub()
                    report.extend(stub_report)
                    if stub_report.data.get("stub_state") == StubState.DISABLED.value:
                        self._save_config(
                            lambda config: config.with_stub_state(StubState.DISABLED)
                        )
                report.extend(self.dns.setup_domain(domain))

        sites = self.store.load().list()
        hosts = [site.server_name(domain) for site in sites[:TRUST_TEST_LIMIT]]
        if not hosts:
            hosts = [f"example.{domain}"]
        resolved: dict[str, bool] = {}
        for host in hosts:
            resolved[host] = self.dns.test_resolution(host)
            if resolved[host]:
                report.ok(f"resolve {host}", "127.0.0.1")
            else:
                report.advisory(
                    f"resolve {host}", "does not resolve yet (may need to wait for cache)"
                )
        report.data["resolution"] = resolved
        return report

    def untrust(self) -> OperationReport:
        """Remove the dnsmasq fragment and revert resolver changes."""
        self._require_installed()
        with self.locks.mutate():
            report = self.dns.remove_domain(self.config.domain, self.config.dns.stub_state)
            if report.data.get("stub_state") == StubState.ENABLED.value:
                self._save_config(lambda config: config.with_stub_state(StubState.ENABLED))
        report.operation = "untrust"
        return report


def _count_files(directory: Path, suffix: str) -> int:
    try:
        return sum(
            1 for entry in os.scandir(directory) if entry.is_file() and entry.name.endswith(suffix)
        )
    except OSError:
        return 0


__all__ = ["Reconciler"]
