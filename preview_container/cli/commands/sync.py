"""Sync command for preview-container."""

import click

from ..helpers import print_result, run_with_service


@click.command()
@click.argument('app_id')
@click.argument('paths', nargs=-1)
@click.option('--full', 'full_sync', is_flag=True, help='Mirror the whole source tree')
@click.option('--app-path', type=click.Path(exists=True, file_okay=False),
              help='Source directory (defaults to the one the container was started from)')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
def sync(ctx, app_id, paths, full_sync, app_path, as_json):
    """Push changed files into a running container, installing dependencies if needed"""
    if not paths and not full_sync:
        raise click.UsageError("Give one or more PATHS or use --full")

    result = run_with_service(
        ctx,
        lambda service: service.sync_and_maybe_install(
            app_id, list(paths), full_sync=full_sync, app_path=app_path
        ),
    )
    if result.success and not as_json and result.data:
        for path in result.data.get('files', []):
            click.echo(f"  synced  {path}")
        for path in result.data.get('deleted', []):
            click.echo(f"  deleted {path}")
    print_result(result, as_json)
