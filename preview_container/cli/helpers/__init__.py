"""CLI Helper Functions for preview-container.

This module provides reusable helpers so every command loads configuration,
drives the async service and reports results the same way:
- Service construction from the loaded configuration
- Running one async operation against an initialized service
- Consistent result, status and table output
- Parsing of repeatable KEY=VALUE and volume options
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from tabulate import tabulate

from preview_container.core.config_loader import load_containerization_config
from preview_container.models.config import VolumeMount
from preview_container.models.container import ContainerOperationResult, ContainerStatus
from preview_container.services import ContainerizationService
from preview_container.services.exceptions import ContainerizationError


def get_service(ctx: click.Context) -> ContainerizationService:
    """Build the service from the configured YAML file and environment.

    Exits with status 1 when the configuration is invalid.
    """
    obj = ctx.find_root().obj or {}
    try:
        config = load_containerization_config(config_file=obj.get("config_file"))
        return ContainerizationService(config)
    except ContainerizationError as e:
        print_error(e)
        ctx.exit(1)


def run_with_service(ctx: click.Context,
                     operation: Callable[[ContainerizationService], Awaitable[Any]],
                     initialize: bool = True) -> Any:
    """Run one async operation against an initialized service.

    Args:
        ctx: Click context of the running command
        operation: Coroutine function receiving the service
        initialize: Whether to connect to the engine first

    Returns:
        Whatever the operation returns
    """
    service = get_service(ctx)

    async def runner():
        try:
            if initialize:
                await service.initialize()
            return await operation(service)
        finally:
            await service.shutdown()

    try:
        return asyncio.run(runner())
    except ContainerizationError as e:
        print_error(e)
        ctx.exit(1)


def print_error(error: ContainerizationError) -> None:
    console = Console(stderr=True)
    console.print(f"[red]Error ({error.kind}): {escape(error.message)}[/red]")
    if error.detail:
        console.print(escape(error.detail), style="dim")


def print_result(result: ContainerOperationResult, as_json: bool = False) -> None:
    """Print an operation result, exiting with status 1 on failure."""
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        console = Console()
        if result.success:
            console.print(f"[green]✓[/green] {escape(result.message)}")
        else:
            console.print(f"[red]✗ {escape(result.message)}[/red] ({result.error_kind})")
            if result.error:
                console.print(escape(result.error), style="dim")
    if not result.success:
        raise click.exceptions.Exit(1)


def print_status(status: ContainerStatus) -> None:
    """Render a container status as a two-column table."""
    console = Console()
    table = Table(title=f"App {escape(status.app_id)}", show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    rows = [
        ("Container", status.container_name or "-"),
        ("Status", status.status.value),
        ("Running", "yes" if status.is_running else "no"),
        ("Ready", "yes" if status.is_ready else "no"),
        ("Dependencies", "installed" if status.has_dependencies_installed else "missing"),
        ("Port", str(status.port) if status.port else "-"),
        ("Health", status.health.value),
        ("Uptime", format_uptime(status.uptime)),
    ]
    if status.error:
        rows.append(("Error", f"[red]{escape(status.error)}[/red]"))
    for field, value in rows:
        table.add_row(field, value)
    console.print(table)


def format_uptime(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def print_table(headers: List[str], rows: List[List[Any]],
                tablefmt: str = "simple") -> None:
    """Print a table with project-wide defaults.

    Args:
        headers: Table headers
        rows: Table rows
        tablefmt: Table format (default: "simple")
    """
    click.echo(tabulate(rows, headers=headers, tablefmt=tablefmt))


def parse_env_pairs(pairs: Tuple[str, ...]) -> Dict[str, str]:
    """Parse repeated ``KEY=VALUE`` options."""
    environment = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--env")
        environment[key] = value
    return environment


def parse_volumes(specs: Tuple[str, ...]) -> List[VolumeMount]:
    """Parse repeated ``HOST:CONTAINER[:ro]`` options."""
    mounts = []
    for spec in specs:
        parts = spec.split(":")
        if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
            raise click.BadParameter(f"Expected HOST:CONTAINER[:ro], got '{spec}'", param_hint="--volume")
        read_only = len(parts) == 3 and parts[2] == "ro"
        mounts.append(VolumeMount(host=parts[0], container=parts[1], read_only=read_only))
    return mounts
