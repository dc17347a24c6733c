"""Info command for preview-container."""

import click

from ..helpers import print_table, run_with_service


@click.command()
@click.pass_context
def info(ctx):
    """Show engine availability and engine facts"""

    async def collect(service):
        status = await service.get_service_status()
        details = await service.get_engine_info() if status.get('available') else {}
        return status, details

    status, details = run_with_service(ctx, collect, initialize=False)

    rows = [[key, value] for key, value in status.items()]
    rows += [[key, value] for key, value in details.items()
             if key not in status and value is not None]
    print_table(['Property', 'Value'], rows)
    if status.get('enabled') and not status.get('available'):
        click.echo(f"\n{status['engine']} is not available", err=True)
        ctx.exit(1)
