"""Tests for the dnsmasq and systemd-resolved stub management."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeRunner

from phppark.config import StubState, SystemConfig
from phppark.dns import MANAGED_HEADER, DnsError, DnsResolverManager, set_stub_listener
from phppark.errors import NotFoundError
from phppark.results import StepStatus


def _system(tmp_path: Path) -> SystemConfig:
    return SystemConfig(
        dnsmasq_dir=tmp_path / "dnsmasq.d",
        resolved_conf=tmp_path / "systemd" / "resolved.conf",
        resolv_conf=tmp_path / "etc" / "resolv.conf",
        resolved_upstream=tmp_path / "run" / "systemd" / "resolve" / "resolv.conf",
        resolved_stub=tmp_path / "run" / "systemd" / "resolve" / "stub-resolv.conf",
    )


def _manager(
    tmp_path: Path, runner: FakeRunner, *, dnsmasq: bool = True
) -> DnsResolverManager:
    return DnsResolverManager(
        system=_system(tmp_path),
        runner=runner,
        which=lambda name: f"/usr/sbin/{name}" if dnsmasq else None,
    )


def _systemd_host(tmp_path: Path, runner: FakeRunner) -> SystemConfig:
    """Lay out a host where systemd-resolved owns port 53."""
    system = _system(tmp_path)
    system.resolved_conf.parent.mkdir(parents=True)
    system.resolved_conf.write_text("[Resolve]\n#DNS=\n#DNSStubListener=yes\n", encoding="utf-8")
    system.resolved_stub.parent.mkdir(parents=True)
    system.resolved_stub.write_text("nameserver 127.0.0.53\n", encoding="utf-8")
    system.resolved_upstream.write_text("nameserver 192.168.1.1\n", encoding="utf-8")
    system.resolv_conf.parent.mkdir(parents=True)
    system.resolv_conf.symlink_to(system.resolved_stub)
    runner.respond("systemctl", "is-active", "systemd-resolved", stdout="active\n")
    return system


# ----------------------------------------------------------------------
# set_stub_listener
# ----------------------------------------------------------------------
def test_set_stub_listener_inserts_after_section_header() -> None:
    """The directive is added directly below ``[Resolve]``."""
    content = "[Resolve]\n#DNS=\n"

    assert set_stub_listener(content, "no") == "[Resolve]\nDNSStubListener=no\n#DNS=\n"


def test_set_stub_listener_replaces_active_directive() -> None:
    """An existing active directive is rewritten in place."""
    content = "[Resolve]\nDNSStubListener=yes\nCache=yes\n"

    assert set_stub_listener(content, "no") == "[Resolve]\nDNSStubListener=no\nCache=yes\n"


def test_set_stub_listener_ignores_commented_directive() -> None:
    """Commented defaults do not count as a setting."""
    content = "[Resolve]\n#DNSStubListener=yes\n"

    result = set_stub_listener(content, "no")

    assert result == "[Resolve]\nDNSStubListener=no\n#DNSStubListener=yes\n"


def test_set_stub_listener_appends_section_when_missing() -> None:
    """Files without ``[Resolve]`` gain a new section."""
    assert set_stub_listener("", "no") == "\n[Resolve]\nDNSStubListener=no\n"
    assert set_stub_listener("[Other]\nKey=1", "no") == (
        "[Other]\nKey=1\n\n[Resolve]\nDNSStubListener=no\n"
    )


def test_set_stub_listener_remove_is_idempotent() -> None:
    """Removing deletes only active lines and can be repeated."""
    content = "[Resolve]\nDNSStubListener=no\n#DNSStubListener=yes\n"

    once = set_stub_listener(content, None)

    assert once == "[Resolve]\n#DNSStubListener=yes\n"
    assert set_stub_listener(once, None) == once


# ----------------------------------------------------------------------
# domain fragment
# ----------------------------------------------------------------------
def test_setup_domain_writes_fragment_and_restarts(
    tmp_path: Path, fake_runner: FakeRunner
) -> None:
    """The fragment answers the whole domain with the loopback address."""
    manager = _manager(tmp_path, fake_runner)

    report = manager.setup_domain("test")

    fragment = tmp_path / "dnsmasq.d" / "test"
    assert fragment.read_text(encoding="utf-8") == "address=/.test/127.0.0.1\n"
    assert manager.is_domain_configured("test")
    assert fake_runner.commands("systemctl", "restart", "dnsmasq")
    assert report.changed == 1


def test_setup_domain_requires_dnsmasq(tmp_path: Path, fake_runner: FakeRunner) -> None:
    """A missing dnsmasq binary is reported with an install hint."""
    manager = _manager(tmp_path, fake_runner, dnsmasq=False)

    with pytest.raises(NotFoundError, match="apt install dnsmasq"):
        manager.setup_domain("test")


def test_setup_domain_restart_failure_raises(tmp_path: Path, fake_runner: FakeRunner) -> None:
    """Failing to restart dnsmasq is a provider error."""
    fake_runner.respond("systemctl", "restart", "dnsmasq", returncode=1, stderr="bind failed")
    manager = _manager(tmp_path, fake_runner)

    with pytest.raises(DnsError, match="bind failed"):
        manager.setup_domain("test")


# ----------------------------------------------------------------------
# stub state machine
# ----------------------------------------------------------------------
def test_disable_stub_skipped_without_conflict(tmp_path: Path, fake_runner: FakeRunner) -> None:
    """Nothing changes when systemd-resolved is not running."""
    manager = _manager(tmp_path, fake_runner)

    report = manager.disable_stub()

    assert [step.status for step in report] == [StepStatus.SKIPPED]
    assert "stub_state" not in report.data
    assert not manager.marker_path.exists()


def test_disable_stub_frees_port_and_routes_resolv_conf(
    tmp_path: Path, fake_runner: FakeRunner
) -> None:
    """Disabling edits resolved.conf, writes the marker and repoints resolv.conf."""
    system = _systemd_host(tmp_path, fake_runner)
    manager = _manager(tmp_path, fake_runner)

    report = manager.disable_stub()

    assert "DNSStubListener=no" in system.resolved_conf.read_text(encoding="utf-8").splitlines()
    assert manager.marker_path.read_text(encoding="utf-8") == (
        f"{MANAGED_HEADER}resolv-file={system.resolved_upstream}\n"
    )
    assert not system.resolv_conf.is_symlink()
    assert system.resolv_conf.read_text(encoding="utf-8") == (
        f"{MANAGED_HEADER}nameserver 127.0.0.1\n"
    )
    assert fake_runner.commands("systemctl", "restart", "systemd-resolved")
    assert report.data["stub_state"] == StubState.DISABLED.value


def test_disable_stub_is_idempotent(tmp_path: Path, fake_runner: FakeRunner) -> None:
    """A second disable changes nothing and restarts nothing but keeps the recorded state."""
    system = _systemd_host(tmp_path, fake_runner)
    manager = _manager(tmp_path, fake_runner)
    manager.disable_stub()
    before = system.resolved_conf.read_text(encoding="utf-8")
    restarts = len(fake_runner.commands("systemctl", "restart", "systemd-resolved"))

    report = manager.disable_stub()

    assert system.resolved_conf.read_text(encoding="utf-8") == before
    assert before.count("DNSStubListener=no") == 1
    assert len(fake_runner.commands("systemctl", "restart", "systemd-resolved")) == restarts
    assert report.changed == 0
    assert [step.status for step in report] == [StepStatus.SKIPPED]
    assert report.data["stub_state"] == StubState.DISABLED.value


def test_disable_stub_skips_when_directive_already_off(
    tmp_path: Path, fake_runner: FakeRunner
) -> None:
    """An active ``DNSStubListener=no`` without the marker also counts as disabled."""
    system = _systemd_host(tmp_path, fake_runner)
    system.resolved_conf.write_text("[Resolve]\nDNSStubListener=no\n", encoding="utf-8")
    manager = _manager(tmp_path, fake_runner)

    report = manager.disable_stub()

    assert report.changed == 0
    assert fake_runner.commands("systemctl", "restart") == []
    assert system.resolv_conf.is_symlink()
    assert manager.stub_already_disabled() is True


def test_upstream_config_falls_back_to_public_servers(
    tmp_path: Path, fake_runner: FakeRunner
) -> None:
    """Without systemd's upstream list, public resolvers are used."""
    manager = _manager(tmp_path, fake_runner)

    assert manager.upstream_config() == f"{MANAGED_HEADER}server=8.8.8.8\nserver=1.1.1.1\n"


def test_revert_restores_stub_symlink(tmp_path: Path, fake_runner: FakeRunner) -> None:
    """Reverting undoes every change made by disable_stub."""
    system = _systemd_host(tmp_path, fake_runner)
    original = system.resolved_conf.read_text(encoding="utf-8")
    manager = _manager(tmp_path, fake_runner)
    manager.disable_stub()

    report = manager.revert_stub()

    assert system.resolved_conf.read_text(encoding="utf-8") == original
    assert not manager.marker_path.exists()
    assert system.resolv_conf.is_symlink()
    assert system.resolv_conf.readlink() == system.resolved_stub
    assert report.data["stub_state"] == StubState.ENABLED.value


def test_remove_domain_reverts_recorded_stub(tmp_path: Path, fake_runner: FakeRunner) -> None:
    """Untrusting reverts the stub when it was recorded disabled."""
    system = _systemd_host(tmp_path, fake_runner)
    manager = _manager(tmp_path, fake_runner)
    manager.setup_domain("test")
    manager.disable_stub()

    report = manager.remove_domain("test", StubState.DISABLED)

    assert not manager.is_domain_configured("test")
    assert system.resolv_conf.is_symlink()
    assert report.data["stub_state"] == StubState.ENABLED.value
    assert report.advisories == []


def test_remove_domain_leaves_untouched_stub_alone(
    tmp_path: Path, fake_runner: FakeRunner
) -> None:
    """Without a recorded change the resolver is not touched."""
    manager = _manager(tmp_path, fake_runner)

    report = manager.remove_domain("test", StubState.ENABLED)

    assert "stub_state" not in report.data
    assert fake_runner.commands("systemctl", "restart", "systemd-resolved") == []
    assert [step.status for step in report][:2] == [StepStatus.SKIPPED, StepStatus.SKIPPED]


def test_remove_domain_revert_failure_is_advisory(
    tmp_path: Path, fake_runner: FakeRunner
) -> None:
    """A failing revert leaves a hint instead of aborting."""
    _systemd_host(tmp_path, fake_runner)
    manager = _manager(tmp_path, fake_runner)
    manager.disable_stub()
    fake_runner.respond("systemctl", "restart", "systemd-resolved", returncode=1)

    report = manager.remove_domain("test", StubState.DISABLED)

    assert [step.name for step in report.advisories] == ["revert stub listener"]
    assert "systemctl restart systemd-resolved" in report.advisories[0].detail
    assert "stub_state" not in report.data


def test_stub_status_detects_desync(tmp_path: Path, fake_runner: FakeRunner) -> None:
    """The recorded state is compared with the marker file."""
    manager = _manager(tmp_path, fake_runner)

    assert manager.stub_status(StubState.ENABLED).consistent is True
    status = manager.stub_status(StubState.DISABLED)
    assert status.consistent is False
    assert status.disabled is True
    assert "absent" in status.describe()


def test_test_resolution(tmp_path: Path, fake_runner: FakeRunner) -> None:
    """Resolution succeeds only when nslookup answers with the loopback address."""
    fake_runner.respond("nslookup", "alpha.test", stdout="Address: 127.0.0.1\n")
    fake_runner.respond("nslookup", "beta.test", returncode=1)
    manager = _manager(tmp_path, fake_runner)

    assert manager.test_resolution("alpha.test") is True
    assert manager.test_resolution("beta.test") is False
    assert manager.test_resolution("gamma.test") is False
    fake_runner.missing.add("nslookup")
    assert manager.test_resolution("alpha.test") is False
