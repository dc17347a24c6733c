"""Main CLI entry point for preview-container."""

import logging

import click

from .commands.config import config
from .commands.info import info
from .commands.status import status
from .commands.start import start
from .commands.stop import stop
from .commands.remove import remove
from .commands.sync import sync
from .commands.exec import exec_command
from .commands.logs import logs
from .commands.events import events


@click.group()
@click.option('--config-file', type=click.Path(dir_okay=False),
              help='YAML config file (default: $PREVIEW_CONTAINER_CONFIG)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config_file, verbose):
    """preview-container - Manage per-app preview containers"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['config_file'] = config_file


# Register commands
cli.add_command(config)
cli.add_command(info)
cli.add_command(status)
cli.add_command(start)
cli.add_command(stop)
cli.add_command(remove)
cli.add_command(sync)
cli.add_command(exec_command)
cli.add_command(logs)
cli.add_command(events)


if __name__ == '__main__':
    cli()
