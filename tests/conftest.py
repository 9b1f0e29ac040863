"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from phppark.errors import NotFoundError


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeRunner:
    """Record commands and answer them from a table of argument prefixes.

    The longest matching prefix wins; unmatched commands succeed silently.
    Executables listed in ``missing`` raise :class:`NotFoundError`.
    """

    def __init__(self) -> None:
        """Start with no canned responses."""
        self.calls: list[list[str]] = []
        self.responses: dict[tuple[str, ...], tuple[int, str, str]] = {}
        self.missing: set[str] = set()

    def respond(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Answer commands starting with *prefix*."""
        self.responses[tuple(prefix)] = (returncode, stdout, stderr)

    def run(
        self,
        args: Sequence[str],
        *,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Record *args* and return the canned result."""
        command = [str(arg) for arg in args]
        self.calls.append(command)
        if command[0] in self.missing:
            raise NotFoundError(f"{command[0]} not found")
        best: tuple[int, str, str] = (0, "", "")
        best_length = -1
        for prefix, response in self.responses.items():
            if tuple(command[: len(prefix)]) == prefix and len(prefix) > best_length:
                best, best_length = response, len(prefix)
        returncode, stdout, stderr = best
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)

    def commands(self, *prefix: str) -> list[list[str]]:
        """Return recorded commands starting with *prefix*."""
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return a command runner that never spawns processes."""
    return FakeRunner()


def make_php_binaries(directory: Path, runner: FakeRunner, *versions: str) -> list[Path]:
    """Create fake ``phpX.Y`` executables answering ``-v`` through *runner*."""
    directory.mkdir(parents=True, exist_ok=True)
    binaries: list[Path] = []
    for version in versions:
        binary = directory / f"php{version}"
        binary.write_text("#!/bin/sh\n", encoding="utf-8")
        binary.chmod(0o755)
        runner.respond(
            str(binary),
            "-v",
            stdout=f"PHP {version}.7 (cli) (built: Jan  1 2024 00:00:00) (NTS)\n",
        )
        binaries.append(binary)
    return binaries


def system_env(root: Path) -> dict[str, str]:
    """Return ``PHPPARK_SYSTEM__*`` overrides pointing every host path below *root*."""
    resolve = root / "run" / "systemd" / "resolve"
    return {
        "PHPPARK_SYSTEM__SITES_AVAILABLE": str(root / "nginx" / "sites-available"),
        "PHPPARK_SYSTEM__SITES_ENABLED": str(root / "nginx" / "sites-enabled"),
        "PHPPARK_SYSTEM__PHP_SEARCH_PATHS": f"[{root / 'bin'}]",
        "PHPPARK_SYSTEM__DNSMASQ_DIR": str(root / "dnsmasq.d"),
        "PHPPARK_SYSTEM__RESOLVED_CONF": str(root / "systemd" / "resolved.conf"),
        "PHPPARK_SYSTEM__RESOLV_CONF": str(root / "resolv.conf"),
        "PHPPARK_SYSTEM__RESOLVED_UPSTREAM": str(resolve / "resolv.conf"),
        "PHPPARK_SYSTEM__RESOLVED_STUB": str(resolve / "stub-resolv.conf"),
        "PHPPARK_SYSTEM__LOCK_TIMEOUT": "2",
    }
