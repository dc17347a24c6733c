"""Remove command for preview-container."""

import click

from ..helpers import print_result, run_with_service


@click.command()
@click.argument('app_id')
@click.option('--force/--no-force', default=True, help='Remove even if the container is running')
@click.option('--volumes', is_flag=True, help='Also remove the dependency volume')
@click.pass_context
def remove(ctx, app_id, force, volumes):
    """Remove the preview container of an app"""
    result = run_with_service(ctx, lambda service: service.remove(app_id, force=force, volumes=volumes))
    print_result(result)
