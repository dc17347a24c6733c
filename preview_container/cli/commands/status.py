"""Status command for preview-container."""

import json

import click

from ..helpers import print_status, run_with_service


@click.command()
@click.argument('app_id')
@click.option('--json', 'as_json', is_flag=True, help='Print as JSON')
@click.pass_context
def status(ctx, app_id, as_json):
    """Show the container status of an app"""
    result = run_with_service(ctx, lambda service: service.get_status(app_id, fresh=True),
                              initialize=False)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        print_status(result)
