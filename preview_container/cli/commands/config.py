"""Config command for preview-container."""

import json

import click
import yaml

from ...core.config_loader import load_containerization_config
from ...services.exceptions import ContainerizationError
from ..helpers import print_error


@click.command()
@click.option('--json', 'as_json', is_flag=True, help='Print as JSON instead of YAML')
@click.pass_context
def config(ctx, as_json):
    """Show the effective containerization configuration"""
    obj = ctx.find_root().obj or {}
    try:
        loaded = load_containerization_config(config_file=obj.get('config_file'))
    except ContainerizationError as e:
        print_error(e)
        ctx.exit(1)

    data = loaded.model_dump(mode='json')
    if as_json:
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False).rstrip())
