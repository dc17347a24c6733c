"""Logs command for preview-container."""

import click

from ...core.constants import DEFAULT_LOG_LINES
from ...models.container import LogOptions
from ..helpers import run_with_service


@click.command()
@click.argument('app_id')
@click.option('--tail', '-n', type=int, default=DEFAULT_LOG_LINES, show_default=True,
              help='Number of lines from the end')
@click.option('--since', help='Only lines since a duration (10m), unix time or RFC 3339 time')
@click.option('--timestamps', '-t', is_flag=True, help='Show engine timestamps')
@click.option('--follow', '-f', is_flag=True, help='Keep streaming new lines')
@click.pass_context
def logs(ctx, app_id, tail, since, timestamps, follow):
    """Show the container logs of an app"""
    options = LogOptions(app_id=app_id, follow=follow, tail=tail, since=since, timestamps=timestamps)

    if not follow:
        output = run_with_service(ctx, lambda service: service.get_logs(options))
        click.echo(output.rstrip('\n'))
        return

    async def follow_logs(service):
        async with await service.stream_logs(options) as stream:
            async for line in stream:
                click.echo(line)

    try:
        run_with_service(ctx, follow_logs)
    except KeyboardInterrupt:
        click.echo("\nStopped following logs", err=True)
