"""CLI command handler for listing an account's folders."""

from __future__ import annotations

import sys

import click

from box_migrator.cli.common import (
    cli,
    common_options,
    handle_exception,
    load_cli_context,
)
from box_migrator.constants import ROOT_FOLDER_ID
from box_migrator.core.executor import new_correlation_id
from box_migrator.core.phases import list_subfolders as list_owned_subfolders

# ---------------------------------------------------------------------------
# list-subfolders subcommand
# ---------------------------------------------------------------------------


@cli.command("list-subfolders")
@common_options
@click.option("--user_id", required=True, help="Box user id of the account.")
@click.option(
    "--folder_id",
    default=ROOT_FOLDER_ID,
    show_default=True,
    help="Folder to list; the account root by default.",
)
def list_subfolders(
    config: str,
    verbose: bool,
    debug_api: bool,
    json_logs: bool,
    user_id: str,
    folder_id: str,
) -> None:
    """Print the folders directly inside a folder that the account owns.

    Args:
        config: Path to config YAML.
        verbose: Enable verbose console logging.
        debug_api: Enable detailed API request/response logging.
        json_logs: Write log files as JSON lines.
        user_id: Box user id of the account.
        folder_id: Folder to list.
    """
    try:
        context = load_cli_context(
            config, verbose, debug_api, json_logs, require_managed_user=False
        )
        folders = list_owned_subfolders(
            context.executor,
            context.clients.for_user(user_id),
            folder_id,
            user_id,
            context.config.retry.activity_max_attempts,
            new_correlation_id(),
        )
    except Exception as e:
        handle_exception(e)
        sys.exit(1)

    for folder in folders:
        click.echo(f"{folder.id}\t{folder.name}")
