"""CLI command handler for writing a starter config file."""

from __future__ import annotations

import sys
from pathlib import Path

import click

from box_migrator.cli.common import cli
from box_migrator.core.config import create_default_config
from box_migrator.utils.logging import setup_logger

# ---------------------------------------------------------------------------
# init-config subcommand
# ---------------------------------------------------------------------------


@cli.command("init-config")
@click.option(
    "--output",
    default="config.yaml",
    show_default=True,
    help="Where to write the config file.",
)
def init_config(output: str) -> None:
    """Write a config file with every option at its default.

    Args:
        output: Where to write the config file.
    """
    setup_logger()
    if not create_default_config(Path(output)):
        sys.exit(1)
    click.echo(f"Wrote {output}. Fill in the box section or set BOX_* variables.")
