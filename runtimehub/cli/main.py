"""CLI main entry point"""

import logging

import click

from runtimehub import __version__
from runtimehub.cli.runtimes import runtimes_group
from runtimehub.core.config import LOG_LEVELS, RuntimeHubSettings


@click.group()
@click.version_option(version=__version__, prog_name="runtimehub")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Override the configured log level"
)
@click.pass_context
def cli(ctx, log_level):
    """RuntimeHub - install, update and call external native runtimes"""
    settings = RuntimeHubSettings()
    if log_level:
        settings = settings.model_copy(update={"log_level": log_level.upper()})

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(levelname)s: %(message)s"
    )
    ctx.obj = settings


cli.add_command(runtimes_group)


if __name__ == "__main__":
    cli()
