"""Typer-powered command line interface for ``phppark``.

Commands are thin: each builds the shared :class:`RuntimeContext`, runs one
:class:`~phppark.reconcile.Reconciler` workflow inside a structured-log
operation and renders the resulting report with Rich.
"""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .errors import PhpParkError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .paths import PathLayout
from .reconcile import Reconciler
from .results import OperationReport, StepStatus

console = Console()

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Local PHP development environment manager.

        Serves project directories as https://<name>.<domain> through nginx and
        PHP-FPM, with optional self-signed certificates and wildcard DNS.
        """
    ).strip(),
)

_STATUS_STYLES = {
    StepStatus.OK: "[green]ok[/green]",
    StepStatus.SKIPPED: "[dim]skipped[/dim]",
    StepStatus.ADVISORY: "[yellow]warning[/yellow]",
    StepStatus.FATAL: "[red]failed[/red]",
}


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    layout: PathLayout
    reconciler: Reconciler
    logger: StructuredLogger


def _ensure_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    layout = PathLayout.discover()
    try:
        reconciler = Reconciler.create(layout)
    except PhpParkError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc
    runtime = RuntimeContext(
        layout=layout,
        reconciler=reconciler,
        logger=StructuredLogger(layout.logs_dir),
    )
    ctx.obj = runtime
    return runtime


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


@contextmanager
def _operation(
    runtime: RuntimeContext,
    name: str,
    *,
    args: Mapping[str, object] | None = None,
    target: Mapping[str, object] | None = None,
) -> Iterator[OperationScope]:
    """Run a command body, mapping phppark errors to exit codes."""
    with runtime.logger.operation(name, args=args, target=target) as op:
        try:
            yield op
        except PhpParkError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)


def _render_report(report: OperationReport) -> None:
    for step in report:
        detail = f" [dim]{step.detail}[/dim]" if step.detail else ""
        console.print(f"  {_STATUS_STYLES[step.status]} {step.name}{detail}")
    advisories = report.advisories
    if advisories:
        console.print(f"[yellow]{len(advisories)} warning(s):[/yellow]")
        for step in advisories:
            console.print(f"  [yellow]-[/yellow] {step.name}: {step.detail}")


def _finish(op: OperationScope, report: OperationReport, message: str) -> None:
    """Render *report* and record its outcome on *op*."""
    _render_report(report)
    for step in report:
        op.add_step(step.name, status=step.status.value, detail=step.detail or None)
    if report.failures:
        errors = [f"{step.name}: {step.detail}" for step in report.failures]
        _command_error(op, f"{message} with failures.", rc=ExitCode.PROVIDER, errors=errors)
    if report.advisories:
        op.warning(
            f"{message} with warnings.",
            warnings=[f"{step.name}: {step.detail}" for step in report.advisories],
            changed=report.changed,
            context=report.data,
        )
        return
    op.success(f"{message}.", changed=report.changed, context=report.data)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the phppark version and exit.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Log executed commands and other diagnostics.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )
    if version:
        console.print(f"phppark {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


@app.command()
def install(ctx: typer.Context) -> None:
    """Create ~/.phppark with default settings and start nginx and PHP-FPM."""
    runtime = _ensure_runtime(ctx)
    with _operation(runtime, "install", target={"kind": "home"}) as op:
        report = runtime.reconciler.install()
        if not report.changed:
            console.print(f"phppark is already installed at {runtime.layout.home}")
            op.success("Already installed.", changed=0)
            return
        console.print(f"[green]Installed phppark at {runtime.layout.home}[/green]")
        versions = report.data.get("php_versions") or []
        if versions:
            console.print(f"PHP versions: {', '.join(str(item) for item in versions)}")
        else:
            console.print("[yellow]No PHP versions found. Try: phppark use 8.3 --install[/yellow]")
        console.print(f"Default PHP: {report.data.get('default_php')}")
        _finish(op, report, "Installed phppark")


@app.command()
def park(
    ctx: typer.Context,
    path: Path | None = typer.Argument(
        None,
        help="Directory whose subdirectories become sites (defaults to the current directory).",
    ),
) -> None:
    """Serve every subdirectory of PATH as <subdirectory>.<domain>."""
    runtime = _ensure_runtime(ctx)
    with _operation(
        runtime, "park", args={"path": path}, target={"kind": "site", "scope": "park"}
    ) as op:
        report = runtime.reconciler.park(path)
        added = report.data.get("added") or []
        console.print(f"Parked {len(added)} new site(s) from {report.data.get('path')}")
        _finish(op, report, f"Parked {len(added)} site(s)")


@app.command()
def link(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None, help="Site name (defaults to the directory name)."
    ),
    path: Path | None = typer.Option(
        None,
        "--path",
        "-p",
        help="Project directory (defaults to the current directory).",
    ),
) -> None:
    """Serve a single directory as <name>.<domain>."""
    runtime = _ensure_runtime(ctx)
    with _operation(
        runtime, "link", args={"name": name, "path": path}, target={"kind": "site", "name": name}
    ) as op:
        report = runtime.reconciler.link(name, path)
        if not report.changed:
            _render_report(report)
            op.success("Site already linked.", changed=0)
            return
        site = report.data.get("site") or {}
        console.print(f"[green]Linked {site.get('name')}[/green] -> {site.get('path')}")
        _finish(op, report, "Linked site")


@app.command()
def unlink(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site to remove."),
) -> None:
    """Stop serving a site and forget it."""
    runtime = _ensure_runtime(ctx)
    with _operation(
        runtime, "unlink", args={"name": name}, target={"kind": "site", "name": name}
    ) as op:
        report = runtime.reconciler.unlink(name)
        console.print(f"[green]Unlinked {name}[/green]")
        _finish(op, report, "Unlinked site")


@app.command()
def links(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit sites as JSON instead of a table.",
    ),
) -> None:
    """List registered sites."""
    runtime = _ensure_runtime(ctx)
    with _operation(
        runtime, "links", args={"json": json_output}, target={"kind": "site", "scope": "registry"}
    ) as op:
        sites = runtime.reconciler.links()
        config = runtime.reconciler.config
        if json_output:
            console.print_json(data={"sites": [site.to_dict() for site in sites]})
            op.success("Reported sites as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Site", style="bold")
        table.add_column("URL")
        table.add_column("PHP")
        table.add_column("Kind")
        table.add_column("Path")

        if not sites:
            table.add_row("(none)", "", "", "", "")
        for site in sites:
            scheme = "https" if site.secured else "http"
            php = site.php_version or f"{config.default_php} (default)"
            table.add_row(
                site.name,
                f"{scheme}://{site.server_name(config.domain)}",
                php,
                site.kind.value,
                str(site.path),
            )
        console.print(table)
        op.success("Reported site list.", changed=0)


@app.command()
def rebuild(ctx: typer.Context) -> None:
    """Regenerate and redeploy the nginx configuration of every site."""
    runtime = _ensure_runtime(ctx)
    with _operation(runtime, "rebuild", target={"kind": "site", "scope": "all"}) as op:
        report = runtime.reconciler.rebuild()
        succeeded = report.data.get("succeeded") or []
        failed = report.data.get("failed") or []
        console.print(f"Rebuilt {len(succeeded)} site(s), {len(failed)} failed.")
        _finish(op, report, f"Rebuilt {len(succeeded)} site(s)")


@app.command()
def secure(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site to serve over HTTPS."),
) -> None:
    """Generate a self-signed certificate and serve the site over HTTPS."""
    runtime = _ensure_runtime(ctx)
    with _operation(
        runtime, "secure", args={"name": name}, target={"kind": "site", "name": name}
    ) as op:
        report = runtime.reconciler.secure(name)
        if report.changed:
            host = f"{name}.{runtime.reconciler.config.domain}"
            console.print(f"[green]Secured https://{host}[/green]")
            console.print("[dim]Browsers will warn about the self-signed certificate.[/dim]")
        _finish(op, report, "Secured site" if report.changed else "Site already secured")


@app.command()
def unsecure(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Site to serve over plain HTTP."),
) -> None:
    """Remove the certificate of a site and serve it over HTTP."""
    runtime = _ensure_runtime(ctx)
    with _operation(
        runtime, "unsecure", args={"name": name}, target={"kind": "site", "name": name}
    ) as op:
        report = runtime.reconciler.unsecure(name)
        if report.changed:
            host = f"{name}.{runtime.reconciler.config.domain}"
            console.print(f"[green]Serving http://{host}[/green]")
        _finish(op, report, "Unsecured site" if report.changed else "Site not secured")


@app.command("php:list")
def php_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit versions as JSON instead of a table.",
    ),
) -> None:
    """List installed PHP versions."""
    runtime = _ensure_runtime(ctx)
    with _operation(
        runtime, "php:list", args={"json": json_output}, target={"kind": "php"}
    ) as op:
        versions = runtime.reconciler.php_versions()
        if json_output:
            console.print_json(data={"versions": [item.to_dict() for item in versions]})
            op.success("Reported PHP versions as JSON.", changed=0)
            return
        if not versions:
            console.print("[yellow]No PHP installations found.[/yellow]")
            op.success("No PHP versions found.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Version", style="bold")
        table.add_column("Binary")
        table.add_column("FPM socket")
        table.add_column("Default")
        for item in versions:
            table.add_row(
                item.version,
                str(item.binary),
                item.socket,
                "yes" if item.is_default else "",
            )
        console.print(table)
        op.success("Reported PHP versions.", changed=0)


@app.command()
def use(
    ctx: typer.Context,
    version: str = typer.Argument(..., help="PHP version, e.g. 8.3."),
    site: str | None = typer.Option(
        None,
        "--site",
        "-s",
        help="Only switch this site instead of the default version.",
    ),
    install_missing: bool = typer.Option(
        False,
        "--install",
        help="Install the version with apt when it is missing.",
    ),
) -> None:
    """Switch the default PHP version, or the version of one site."""
    runtime = _ensure_runtime(ctx)
    with _operation(
        runtime,
        "use",
        args={"version": version, "site": site, "install": install_missing},
        target={"kind": "site" if site else "config", "name": site},
    ) as op:
        report = runtime.reconciler.use(version, site, install_missing=install_missing)
        wanted = report.data.get("version", version)
        if site:
            console.print(f"[green]{site} now uses PHP {wanted}[/green]")
        else:
            console.print(f"[green]Default PHP is now {wanted}[/green]")
            console.print("[dim]Run 'phppark rebuild' to apply it to existing sites.[/dim]")
        _finish(op, report, "Switched PHP version")


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit status as JSON instead of tables.",
    ),
) -> None:
    """Show installation, site, PHP and DNS status."""
    runtime = _ensure_runtime(ctx)
    with _operation(runtime, "status", args={"json": json_output}, target={"kind": "status"}) as op:
        snapshot = runtime.reconciler.status()
        if json_output:
            console.print_json(data=snapshot)
            op.success("Reported status as JSON.", changed=0)
            return
        _render_status(snapshot)
        warnings = [str(item) for item in snapshot.get("warnings") or []]
        if warnings:
            op.warning("Reported status with warnings.", warnings=warnings)
            return
        op.success("Reported status.", changed=0)


def _render_status(snapshot: Mapping[str, object]) -> None:
    if not snapshot.get("installed"):
        console.print("[red]phppark is not installed.[/red] Run: phppark install")
        return

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Home", str(snapshot.get("home")))

    config = _section(snapshot, "config")
    table.add_row("Domain", f".{config.get('domain')}")
    table.add_row("Default PHP", str(config.get("default_php")))
    table.add_row("HTTPS by default", str(config.get("use_https")))

    sites = _section(snapshot, "sites")
    table.add_row(
        "Sites",
        f"{sites.get('total')} total, {sites.get('linked')} linked, "
        f"{sites.get('parked')} parked, {sites.get('secured')} secured",
    )

    nginx = _section(snapshot, "nginx")
    installed = "[green]installed[/green]" if nginx.get("installed") else "[red]not found[/red]"
    table.add_row("Nginx", f"{installed}, {nginx.get('configs')} config(s) generated")
    certificates = _section(snapshot, "certificates")
    table.add_row("Certificates", str(certificates.get("count")))

    php = snapshot.get("php") or []
    if isinstance(php, list) and php:
        rendered = ", ".join(
            f"{item['version']}{' (default)' if item.get('is_default') else ''}"
            for item in php
            if isinstance(item, Mapping)
        )
        table.add_row("PHP", rendered)
    else:
        table.add_row("PHP", "[red]no installations found[/red]")

    dns = _section(snapshot, "dns")
    if dns.get("configured"):
        table.add_row("DNS", f"[green]configured for .{dns.get('domain')}[/green]")
    else:
        table.add_row("DNS", "[yellow]not configured[/yellow] (run 'phppark trust')")
    table.add_row("dnsmasq", "installed" if dns.get("dnsmasq_installed") else "not found")
    table.add_row("Resolver stub", str(dns.get("stub_state")))
    console.print(table)

    for warning in snapshot.get("warnings") or []:
        console.print(f"[yellow]warning:[/yellow] {warning}")


def _section(snapshot: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = snapshot.get(key)
    return value if isinstance(value, Mapping) else {}


@app.command()
def trust(
    ctx: typer.Context,
    keep_stub: bool = typer.Option(
        False,
        "--keep-stub",
        help="Do not disable the systemd-resolved stub listener.",
    ),
) -> None:
    """Resolve *.<domain> to 127.0.0.1 using dnsmasq."""
    runtime = _ensure_runtime(ctx)
    with _operation(
        runtime, "trust", args={"keep_stub": keep_stub}, target={"kind": "dns"}
    ) as op:
        report = runtime.reconciler.trust(disable_stub=not keep_stub)
        console.print(f"DNS configured for .{runtime.reconciler.config.domain}")
        _finish(op, report, "Configured DNS")


@app.command()
def untrust(ctx: typer.Context) -> None:
    """Remove the dnsmasq configuration and restore the system resolver."""
    runtime = _ensure_runtime(ctx)
    with _operation(runtime, "untrust", target={"kind": "dns"}) as op:
        report = runtime.reconciler.untrust()
        console.print(f"DNS configuration removed for .{runtime.reconciler.config.domain}")
        _finish(op, report, "Removed DNS configuration")


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
