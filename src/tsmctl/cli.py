"""Typer-powered command line for ``tsmctl``.

Every command loads the layered configuration once, runs inside a
:class:`~tsmctl.logging.OperationScope` so its outcome lands in the
operations log, and maps classified errors onto the documented exit codes.
"""
from __future__ import annotations

import json
import sys
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .discovery.environment import EnvironmentResolver
from .discovery.inventory import build_unit_inventory
from .discovery.logs import read_service_log
from .discovery.units import ServiceUnit, validate_unit
from .errors import TsmError, validation_error
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .machines import MachineInventory, current_machine_info
from .nginx.create import SiteCreator
from .nginx.parser import parse_nginx_config
from .nginx.report import list_reports
from .nginx.scan import SiteScanner
from .nginx.update import SafeConfigUpdater
from .providers import NginxProvider, SystemdError, SystemdProvider
from .state import StateRegistry
from .templates import TIMER_TEMPLATES, TemplateEngine, template_variables

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to tsmctl's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Service and nginx configuration manager.

        Discovers and validates systemd service units, scans nginx site files
        into the site registry and safely rewrites live nginx configuration.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
nginx_app = typer.Typer(help="Parse, scan and safely update nginx site files.")
units_app = typer.Typer(help="Validate, inspect and generate systemd units.")
machine_app = typer.Typer(help="Inspect and register machines.")

app.add_typer(config_app, name="config")
app.add_typer(nginx_app, name="nginx")
app.add_typer(units_app, name="units")
app.add_typer(machine_app, name="machine")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    resolver: EnvironmentResolver
    nginx_provider: NginxProvider
    systemd_provider: SystemdProvider
    machines: MachineInventory
    scanner: SiteScanner
    updater: SafeConfigUpdater
    creator: SiteCreator


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    registry = StateRegistry(config.registry_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    resolver = EnvironmentResolver(
        file_names=(config.env_files.primary, config.env_files.secondary),
        variable=config.env_files.identity_variable,
    )
    nginx_provider = NginxProvider.from_command(
        config.nginx.test_command,
        timeout=config.nginx.validate_timeout,
    )
    machines = MachineInventory(registry, unit_dir=config.systemd.unit_dir, resolver=resolver)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        templates=templates,
        resolver=resolver,
        nginx_provider=nginx_provider,
        systemd_provider=SystemdProvider(systemctl_bin=config.systemd.systemctl_bin),
        machines=machines,
        scanner=SiteScanner(
            registry=registry,
            machines=machines,
            report_dir=config.report_dir,
            default_entry=config.nginx.default_entry,
        ),
        updater=SafeConfigUpdater(registry=registry, validator=nginx_provider, locks=locks),
        creator=SiteCreator(
            registry=registry, machines=machines, templates=templates, locks=locks
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the tsmctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"tsmctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _tsm_error(
    runtime: RuntimeContext,
    op: OperationScope,
    exc: TsmError,
    *,
    json_output: bool = False,
) -> NoReturn:
    """Report a classified error in the envelope shape and exit."""
    rc = int(ExitCode.from_status(exc.status))
    envelope = exc.to_dict(production=runtime.config.production)
    if json_output:
        console.print_json(data=envelope)
    else:
        err_console.print(f"[red]{exc.code.value}[/red]: {exc.message}")
        details = envelope["error"].get("details")  # type: ignore[union-attr]
        if details:
            err_console.print(f"  {details}")
    op.error(exc.message, errors=[exc.code.value], rc=rc, context=envelope)
    raise typer.Exit(code=rc)


def _render_records(
    rows: Sequence[Mapping[str, Any]],
    columns: Sequence[tuple[str, str]],
    *,
    empty: str,
) -> None:
    if not rows:
        console.print(f"[yellow]{empty}[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    for _, title in columns:
        table.add_column(title)
    for row in rows:
        table.add_row(*(_cell(row.get(key)) for key, _ in columns))
    console.print(table)


def _cell(value: object) -> str:
    if value is None:
        return "-"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value) or "-"
    return str(value)


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


# ----------------------------------------------------------------------
# nginx
# ----------------------------------------------------------------------
@nginx_app.command("parse")
def nginx_parse(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Nginx site file to parse.", dir_okay=False),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show what tsmctl extracts from a single site file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "nginx parse",
        args={"path": path, "json": json_output},
        target={"kind": "nginx-file", "path": path},
    ) as op:
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            _command_error(op, f"Cannot read {path}: {exc}", rc=ExitCode.ENVIRONMENT)
        parsed = parse_nginx_config(content)
        if json_output:
            console.print_json(data=parsed.to_dict())
        else:
            console.print(f"[bold]{path.name}[/bold]")
            console.print(f"  server names: {_cell(list(parsed.server_names))}")
            upstream = f"{_cell(parsed.upstream_ip_address)}:{_cell(parsed.listen_port)}"
            console.print(f"  upstream: {upstream}")
            console.print(f"  framework: {parsed.framework}")
        op.success("Parsed nginx site file.", changed=0, context=parsed.to_dict())


@nginx_app.command("scan")
def nginx_scan(
    ctx: typer.Context,
    directory: Path | None = typer.Option(
        None,
        "--directory",
        file_okay=False,
        help="Directory to scan (defaults to nginx.sites_available).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Register every unknown site file found in the sites directory."""
    runtime = _get_runtime(ctx)
    target_dir = directory or runtime.config.nginx.sites_available
    with runtime.logger.operation(
        "nginx scan",
        args={"directory": target_dir, "json": json_output},
        target={"kind": "nginx-directory", "path": target_dir},
    ) as op:
        try:
            result = runtime.scanner.scan(target_dir)
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)

        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(
                f"Scanned {result.scanned} files: [green]{len(result.new_entries)} new[/green], "
                f"{len(result.duplicates)} duplicates, [red]{len(result.errors)} errors[/red]"
            )
            for entry in result.errors:
                console.print(f"  [red]{entry.file_name}[/red]: {entry.message}")
            if result.report_path:
                console.print(f"Report: {result.report_path}")
        if result.report_path is None:
            op.warning(
                "Scan completed without a report.",
                changed=len(result.new_entries),
                warnings=["report could not be written"],
                context=payload,
            )
        else:
            op.success("Scan completed.", changed=len(result.new_entries), context=payload)


@nginx_app.command("create")
def nginx_create(
    ctx: typer.Context,
    template: str = typer.Option(
        ..., "--template", help="Site template: expressjs or nextjs-python."
    ),
    server_names: list[str] = typer.Option(
        ...,
        "--server-name",
        help="Server name (repeatable); the first one names the file.",
    ),
    app_host: str = typer.Option(
        ..., "--app-host", help="Public id of the machine running the application."
    ),
    port: int = typer.Option(..., "--port", help="Port the application listens on."),
    directory: Path | None = typer.Option(
        None,
        "--directory",
        file_okay=False,
        help="Directory to write the site into (defaults to nginx.sites_available).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Write a new site file from a template and register it."""
    runtime = _get_runtime(ctx)
    target_dir = directory or runtime.config.nginx.sites_available
    with runtime.logger.operation(
        "nginx create",
        args={
            "template": template,
            "server_names": server_names,
            "app_host": app_host,
            "port": port,
            "directory": target_dir,
            "json": json_output,
        },
        target={"kind": "nginx-directory", "path": target_dir},
    ) as op:
        try:
            result = runtime.creator.create(
                template=template,
                server_names=server_names,
                app_host_public_id=app_host,
                port=port,
                directory=target_dir,
            )
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)

        op.set_lock_wait_ms(result.lock_wait_ms)
        payload = result.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(
                f"[green]Created[/green] {result.path} as {result.record.get('public_id')}"
            )
        op.success("Site file created.", changed=1, context=payload)


@nginx_app.command("list")
def nginx_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered sites with their app and nginx hosts."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("nginx list", args={"json": json_output}) as op:
        try:
            sites = runtime.machines.populate_sites(runtime.registry.sites.find())
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        if json_output:
            console.print_json(data=sites)
        else:
            rows = [
                {
                    **site,
                    "app_host": (site.get("app_host_machine") or {}).get("machine_name"),
                    "nginx_host": (site.get("nginx_host_machine") or {}).get("machine_name"),
                }
                for site in sites
            ]
            _render_records(
                rows,
                [
                    ("public_id", "Public ID"),
                    ("server_name", "Server name"),
                    ("port_number", "Port"),
                    ("framework", "Framework"),
                    ("app_host", "App host"),
                    ("nginx_host", "Nginx host"),
                ],
                empty="No sites registered.",
            )
        op.success("Listed sites.", changed=0, context={"count": len(sites)})


@nginx_app.command("show")
def nginx_show(
    ctx: typer.Context,
    public_id: str = typer.Argument(..., help="Public id of the site."),
) -> None:
    """Print the live content of a site file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "nginx show",
        args={"public_id": public_id},
        target={"kind": "site", "public_id": public_id},
    ) as op:
        try:
            content = runtime.updater.read(public_id)
        except TsmError as exc:
            _tsm_error(runtime, op, exc)
        typer.echo(content, nl=False)
        op.success("Read site file.", changed=0)


@nginx_app.command("update")
def nginx_update(
    ctx: typer.Context,
    public_id: str = typer.Argument(..., help="Public id of the site."),
    source: Path = typer.Option(
        ...,
        "--file",
        "-f",
        help="File with the new content ('-' reads stdin).",
        allow_dash=True,
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Replace a live site file, rolling back if nginx rejects it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "nginx update",
        args={"public_id": public_id, "file": source, "json": json_output},
        target={"kind": "site", "public_id": public_id},
    ) as op:
        try:
            content = sys.stdin.read() if str(source) == "-" else source.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            _command_error(op, f"Cannot read {source}: {exc}", rc=ExitCode.ENVIRONMENT)

        try:
            result = runtime.updater.update(public_id, content)
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)

        op.set_lock_wait_ms(result.lock_wait_ms)
        op.add_step("nginx.backup", detail=result.backup_path)
        op.add_step("nginx.validate", detail=result.validator_output or "ok")
        op.add_step(
            "nginx.commit",
            status="warning" if result.warnings else "success",
            detail=result.warnings or None,
        )
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            console.print(f"[green]Updated[/green] {result.path}")
            for warning in result.warnings:
                console.print(f"[yellow]{warning}[/yellow]")
        if result.warnings:
            op.warning("Site file updated.", changed=1, warnings=result.warnings)
        else:
            op.success("Site file updated.", changed=1, context=result.to_dict())


@nginx_app.command("delete")
def nginx_delete(
    ctx: typer.Context,
    public_id: str = typer.Argument(..., help="Public id of the site."),
) -> None:
    """Delete a site file and its registry record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "nginx delete",
        args={"public_id": public_id},
        target={"kind": "site", "public_id": public_id},
    ) as op:
        try:
            record, warnings = runtime.updater.delete(public_id)
        except TsmError as exc:
            _tsm_error(runtime, op, exc)
        console.print(f"Deleted site [bold]{record.get('server_name')}[/bold]")
        for warning in warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        if warnings:
            op.warning("Site deleted.", changed=1, warnings=warnings)
        else:
            op.success("Site deleted.", changed=1)


@nginx_app.command("clear")
def nginx_clear(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Remove every site record (site files are left untouched)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("nginx clear", args={"yes": yes}) as op:
        if not yes and not typer.confirm("Remove all site records?", default=False):
            _command_error(op, "Aborted.", rc=ExitCode.VALIDATION)
        try:
            removed = runtime.updater.clear()
        except TsmError as exc:
            _tsm_error(runtime, op, exc)
        console.print(f"Removed {removed} site records.")
        op.success("Cleared site records.", changed=removed)


@nginx_app.command("reports")
def nginx_reports(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List scan reports available for download."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("nginx reports", args={"json": json_output}) as op:
        try:
            reports = list_reports(runtime.config.report_dir)
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        rows = [report.to_dict() for report in reports]
        if json_output:
            console.print_json(data=rows)
        else:
            _render_records(
                rows,
                [("name", "Report"), ("size", "Bytes"), ("modified", "Modified")],
                empty="No reports found.",
            )
        op.success("Listed reports.", changed=0, context={"count": len(rows)})


# ----------------------------------------------------------------------
# units
# ----------------------------------------------------------------------
@units_app.command("validate")
def units_validate(
    ctx: typer.Context,
    filename: str = typer.Argument(..., help="Service unit file name, e.g. app.service."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Validate a service unit and resolve the application it runs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "units validate",
        args={"filename": filename, "json": json_output},
        target={"kind": "unit", "filename": filename},
    ) as op:
        try:
            unit = validate_unit(
                ServiceUnit(filename=filename),
                unit_dir=runtime.config.systemd.unit_dir,
                resolver=runtime.resolver,
            )
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        if json_output:
            console.print_json(data=unit.to_dict())
        else:
            console.print(f"[green]{unit.filename}[/green] runs [bold]{unit.name}[/bold]")
            console.print(f"  working directory: {unit.working_directory}")
        op.success("Unit validated.", changed=0, context=unit.to_dict())


@units_app.command("inventory")
def units_inventory(
    ctx: typer.Context,
    csv_path: Path | None = typer.Option(
        None,
        "--csv",
        dir_okay=False,
        help="Sudoers command CSV (defaults to systemd.inventory_csv).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Build the service inventory from the sudoers command CSV."""
    runtime = _get_runtime(ctx)
    source = csv_path or runtime.config.systemd.inventory_csv
    with runtime.logger.operation(
        "units inventory",
        args={"csv": source, "json": json_output},
        target={"kind": "inventory", "path": source},
    ) as op:
        if source is None:
            _command_error(op, "No inventory CSV configured; pass --csv.")
        try:
            units = build_unit_inventory(
                source,
                unit_dir=runtime.config.systemd.unit_dir,
                unit_column=runtime.config.systemd.inventory_unit_column,
            )
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        rows = [unit.to_dict() for unit in units]
        if json_output:
            console.print_json(data=rows)
        else:
            _render_records(
                rows,
                [("filename", "Service"), ("timer_filename", "Timer"), ("port", "Port")],
                empty="No service units listed.",
            )
        op.success("Built unit inventory.", changed=0, context={"units": rows})


@units_app.command("status")
def units_status(
    ctx: typer.Context,
    filename: str = typer.Argument(..., help="Unit file name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the parsed ``systemctl status`` of a service or timer."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "units status",
        args={"filename": filename, "json": json_output},
        target={"kind": "unit", "filename": filename},
    ) as op:
        provider = runtime.systemd_provider
        try:
            if filename.endswith(".timer"):
                status = provider.timer_status(filename)
            else:
                status = provider.status(filename)
        except SystemdError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        if json_output:
            console.print_json(data=status.to_dict())
        else:
            for key, value in status.to_dict().items():
                console.print(f"{key}: {value}")
        op.success("Reported unit status.", changed=0, context=status.to_dict())


@units_app.command("list")
def units_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the status of every service attached to this machine."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "units list", args={"json": json_output}, target={"kind": "machine"}
    ) as op:
        try:
            statuses = runtime.machines.service_statuses(runtime.systemd_provider)
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        if json_output:
            console.print_json(data=statuses)
        else:
            _render_records(
                statuses,
                [
                    ("name", "Name"),
                    ("filename", "Service"),
                    ("status", "Status"),
                    ("on_start_status", "On start"),
                    ("timer_status", "Timer"),
                    ("timer_trigger", "Next trigger"),
                ],
                empty="No services configured.",
            )
        op.success("Listed service statuses.", changed=0, context={"count": len(statuses)})


@units_app.command("logs")
def units_logs(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Application name of the service."),
    lines: int | None = typer.Option(None, "--lines", "-n", help="Only show the last N lines."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Print the log file of a service attached to this machine."""
    runtime = _get_runtime(ctx)
    log_dir = runtime.config.systemd.app_logs_dir
    with runtime.logger.operation(
        "units logs",
        args={"name": name, "lines": lines, "json": json_output},
        target={"kind": "log", "name": name, "path": log_dir},
    ) as op:
        try:
            service = runtime.machines.find_service(name)
            content = read_service_log(log_dir, name, lines=lines)
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        if json_output:
            console.print_json(
                data={"name": name, "filename": service.get("filename"), "content": content}
            )
        else:
            typer.echo(content, nl=False)
        op.success("Read service log.", changed=0)


@units_app.command("toggle")
def units_toggle(
    ctx: typer.Context,
    action: str = typer.Argument(..., help="start, stop, restart, reload, enable or disable."),
    filename: str = typer.Argument(..., help="Unit file name."),
) -> None:
    """Run a systemctl action against a unit."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "units toggle",
        args={"action": action, "filename": filename},
        target={"kind": "unit", "filename": filename},
    ) as op:
        try:
            result = runtime.systemd_provider.toggle(action, filename)
        except TsmError as exc:
            _tsm_error(runtime, op, exc)
        except SystemdError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        output = (result.stdout or "").strip()
        if output:
            console.print(output, markup=False)
        console.print(f"[green]{action}[/green] {filename}")
        op.success(f"Ran systemctl {action}.", changed=1)


@units_app.command("generate")
def units_generate(
    ctx: typer.Context,
    template: str = typer.Argument(..., help="Template name, e.g. flask.service."),
    project_name: str = typer.Option(..., "--project-name", help="Application name."),
    port: int | None = typer.Option(None, "--port", help="Port substituted for {{PORT}}."),
    python_env_name: str | None = typer.Option(
        None, "--python-env", help="Virtualenv name substituted for {{PYTHON_ENV_NAME}}."
    ),
    output_dir: Path | None = typer.Option(
        None,
        "--output-dir",
        file_okay=False,
        help="Write the unit here instead of printing it.",
    ),
) -> None:
    """Render a unit template with the project's values."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "units generate",
        args={"template": template, "project_name": project_name, "port": port},
        target={"kind": "template", "name": template},
    ) as op:
        try:
            variables = template_variables(
                {"project_name": project_name, "port": port, "python_env_name": python_env_name}
            )
            if output_dir is None:
                content = runtime.templates.render_to_string(template, variables)
                typer.echo(content, nl=False)
                op.success("Rendered template.", changed=0)
                return
            is_timer = template in TIMER_TEMPLATES or template.endswith(".timer")
            suffix = ".timer" if is_timer else ".service"
            destination = output_dir / f"{variables.project_name.lower()}{suffix}"
            changed = runtime.templates.render_to_path(template, destination, variables)
        except TsmError as exc:
            _tsm_error(runtime, op, exc)
        except OSError as exc:
            _command_error(op, f"Cannot write unit: {exc}", rc=ExitCode.ENVIRONMENT)
        state = "[green]written[/green]" if changed else "unchanged"
        console.print(f"{destination}: {state}")
        op.success("Generated unit file.", changed=int(changed), context={"path": destination})


# ----------------------------------------------------------------------
# machine
# ----------------------------------------------------------------------
@machine_app.command("info")
def machine_info(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show this host's name and address as tsmctl sees them."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("machine info", args={"json": json_output}) as op:
        info = current_machine_info()
        payload: dict[str, object] = info.to_dict()
        try:
            record = runtime.machines.find_by_ip(info.local_ip_address)
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        payload["public_id"] = record.get("public_id") if record else None
        if json_output:
            console.print_json(data=payload)
        else:
            for key, value in payload.items():
                console.print(f"{key}: {_cell(value)}")
        op.success("Reported machine info.", changed=0, context=payload)


@machine_app.command("register")
def machine_register(
    ctx: typer.Context,
    url_api: str | None = typer.Option(None, "--url-api", help="Base URL of this host's API."),
    nginx_paths: list[str] | None = typer.Option(
        None,
        "--nginx-path",
        help="Directory nginx sites may be stored in (repeatable).",
    ),
    services: list[str] | None = typer.Option(
        None,
        "--service",
        help="Service unit to attach (repeatable).",
    ),
    from_inventory: bool = typer.Option(
        False,
        "--from-inventory",
        help="Attach every service listed in the inventory CSV.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Validate this host's services and record it as a machine."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "machine register",
        args={
            "url_api": url_api,
            "nginx_paths": nginx_paths,
            "services": services,
            "from_inventory": from_inventory,
        },
        target={"kind": "machine"},
    ) as op:
        try:
            units = [ServiceUnit(filename=name) for name in services or []]
            if from_inventory:
                source = runtime.config.systemd.inventory_csv
                if source is None:
                    raise validation_error(
                        "Request validation failed", "systemd.inventory_csv is not configured"
                    )
                units.extend(
                    build_unit_inventory(
                        source,
                        unit_dir=runtime.config.systemd.unit_dir,
                        unit_column=runtime.config.systemd.inventory_unit_column,
                    )
                )
            record = runtime.machines.register(
                url_api=url_api,
                nginx_storage_path_options=nginx_paths
                or [runtime.config.nginx.sites_available.as_posix()],
                services=units,
            )
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        if json_output:
            console.print_json(data=record)
        else:
            console.print(
                f"[green]Registered[/green] {record['machine_name']} "
                f"({record['local_ip_address']}) as {record['public_id']}"
            )
        op.success("Machine registered.", changed=1, context={"public_id": record["public_id"]})


@machine_app.command("list")
def machine_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered machines."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("machine list", args={"json": json_output}) as op:
        try:
            machines = runtime.machines.list_machines()
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        if json_output:
            console.print_json(data=machines)
        else:
            rows = [
                {**machine, "service_count": len(machine.get("services") or [])}
                for machine in machines
            ]
            _render_records(
                rows,
                [
                    ("public_id", "Public ID"),
                    ("machine_name", "Name"),
                    ("local_ip_address", "IP"),
                    ("service_count", "Services"),
                ],
                empty="No machines registered.",
            )
        op.success("Listed machines.", changed=0, context={"count": len(machines)})


@machine_app.command("update")
def machine_update(
    ctx: typer.Context,
    public_id: str = typer.Argument(..., help="Public id of the machine."),
    url_api: str | None = typer.Option(None, "--url-api", help="New base URL of the API."),
    nginx_paths: list[str] | None = typer.Option(
        None,
        "--nginx-path",
        help="Replace the nginx storage directories (repeatable).",
    ),
    services: list[str] | None = typer.Option(
        None,
        "--service",
        help="Replace the attached service units (repeatable).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Change the API URL, nginx directories or services of a machine."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "machine update",
        args={
            "public_id": public_id,
            "url_api": url_api,
            "nginx_paths": nginx_paths,
            "services": services,
            "json": json_output,
        },
        target={"kind": "machine", "public_id": public_id},
    ) as op:
        try:
            record = runtime.machines.update(
                public_id,
                url_api=url_api,
                nginx_storage_path_options=nginx_paths or None,
                services=[ServiceUnit(filename=name) for name in services] if services else None,
            )
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        if json_output:
            console.print_json(data=record)
        else:
            console.print(f"[green]Updated[/green] {record['machine_name']} ({public_id})")
        op.success("Machine updated.", changed=1, context={"public_id": public_id})


@machine_app.command("delete")
def machine_delete(
    ctx: typer.Context,
    public_id: str = typer.Argument(..., help="Public id of the machine."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove a machine record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "machine delete",
        args={"public_id": public_id, "json": json_output},
        target={"kind": "machine", "public_id": public_id},
    ) as op:
        try:
            record = runtime.machines.delete(public_id)
        except TsmError as exc:
            _tsm_error(runtime, op, exc, json_output=json_output)
        if json_output:
            console.print_json(data=record)
        else:
            console.print(f"Deleted machine [bold]{record.get('machine_name')}[/bold]")
        op.success("Machine deleted.", changed=1, context={"public_id": public_id})


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
