"""Start command for preview-container."""

from pathlib import Path

import click

from ...models.container import RunContainerOptions
from ..helpers import parse_env_pairs, parse_volumes, print_result, print_status, run_with_service


@click.command()
@click.argument('app_id')
@click.argument('app_path', type=click.Path(exists=True, file_okay=False))
@click.option('--port', '-p', type=int, help='Host port (allocated automatically if omitted)')
@click.option('--force-recreate', is_flag=True, help='Remove and recreate an existing container')
@click.option('--skip-install', is_flag=True, help='Do not install dependencies on start')
@click.option('--cpus', type=float, help='CPU limit for this container')
@click.option('--memory', help='Memory limit for this container, e.g. 512m')
@click.option('--env', '-e', 'env_pairs', multiple=True, help='Environment variable KEY=VALUE')
@click.option('--volume', '-v', 'volumes', multiple=True, help='Extra mount HOST:CONTAINER[:ro]')
@click.option('--no-wait', is_flag=True, help='Return once started instead of waiting for readiness')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
def start(ctx, app_id, app_path, port, force_recreate, skip_install, cpus, memory,
          env_pairs, volumes, no_wait, as_json):
    """Start (or reuse) the preview container of an app"""
    options = RunContainerOptions(
        app_id=app_id,
        app_path=str(Path(app_path).resolve()),
        port=port,
        force_recreate=force_recreate,
        skip_install=skip_install,
        cpu_limit=cpus,
        memory_limit=memory,
        environment=parse_env_pairs(env_pairs),
        volume_mounts=parse_volumes(volumes),
    )
    if not as_json:
        click.echo(f"Starting container for app {app_id}...")

    if no_wait:
        result = run_with_service(ctx, lambda service: service.run_container(options))
    else:
        result = run_with_service(ctx, lambda service: service.ensure_running(app_id, options))

    if result.success and not as_json and hasattr(result.data, 'app_id'):
        print_status(result.data)
    print_result(result, as_json)
