#!/usr/bin/env python3
"""
Command-line entry point for the Box migration tool.

Importing the subcommand modules registers them on the shared click group.
"""

from box_migrator.cli import (  # noqa: F401
    deprovision_cmd,
    folders_cmd,
    init_config_cmd,
    jobs_cmd,
    serve_cmd,
)
from box_migrator.cli.common import cli, handle_exception

__all__ = ["cli", "handle_exception", "main"]


def main() -> None:
    """Main entry point for the Box migration tool."""
    cli()


if __name__ == "__main__":
    main()
