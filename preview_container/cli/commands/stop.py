"""Stop command for preview-container."""

import click

from ..helpers import print_result, run_with_service


@click.command()
@click.argument('app_id')
@click.pass_context
def stop(ctx, app_id):
    """Stop the preview container of an app"""
    result = run_with_service(ctx, lambda service: service.stop(app_id))
    print_result(result)
