"""Events command for preview-container."""

from datetime import datetime

import click

from ...core.constants import EVENTS_WINDOW
from ..helpers import print_table, run_with_service


@click.command()
@click.argument('app_id')
@click.option('--since', type=int, default=EVENTS_WINDOW, show_default=True,
              help='Look back this many seconds')
@click.pass_context
def events(ctx, app_id, since):
    """Show engine lifecycle events for the container of an app"""
    items = run_with_service(ctx, lambda service: service.get_events(app_id, since))
    if not items:
        click.echo("No events found")
        return

    rows = []
    for event in items:
        timestamp = event.get('time')
        when = datetime.fromtimestamp(int(timestamp)).strftime('%Y-%m-%d %H:%M:%S') \
            if isinstance(timestamp, (int, float)) or str(timestamp).isdigit() else str(timestamp or '')
        rows.append([when, event.get('type', ''), event.get('action', '')])
    print_table(['Time', 'Type', 'Action'], rows)
