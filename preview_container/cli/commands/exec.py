"""Exec command for preview-container."""

import click

from ..helpers import print_result, run_with_service


@click.command(name='exec', context_settings={'ignore_unknown_options': True})
@click.argument('app_id')
@click.argument('command', nargs=-1, required=True, type=click.UNPROCESSED)
@click.option('--timeout', type=float, help='Seconds to wait for the command')
@click.pass_context
def exec_command(ctx, app_id, command, timeout):
    """Run a command inside the container of an app"""
    result = run_with_service(
        ctx, lambda service: service.exec_in_container(app_id, list(command), timeout)
    )
    output = (result.data or {}).get('output') if isinstance(result.data, dict) else None
    if output:
        click.echo(output.rstrip('\n'))
    if not result.success:
        print_result(result)
