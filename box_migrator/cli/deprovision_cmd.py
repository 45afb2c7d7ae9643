"""CLI command handler for account deprovisioning."""

from __future__ import annotations

import sys

import click

from box_migrator.cli.common import (
    cli,
    common_options,
    handle_exception,
    load_cli_context,
)
from box_migrator.core.driver import run_deprovision

# ---------------------------------------------------------------------------
# deprovision subcommand
# ---------------------------------------------------------------------------


@cli.command()
@common_options
@click.option(
    "--login",
    "logins",
    required=True,
    multiple=True,
    help="Login (email) of the account to deprovision. Repeat for several accounts.",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
def deprovision(
    config: str,
    verbose: bool,
    debug_api: bool,
    json_logs: bool,
    logins: tuple[str, ...],
    yes: bool,
) -> None:
    """Convert enterprise accounts into standalone personal accounts.

    Deletes everything the account owns, revokes its collaborations on
    internal content, empties its trash, reduces its quota, detaches it from
    the enterprise and emails the account holder.

    Args:
        config: Path to config YAML.
        verbose: Enable verbose console logging.
        debug_api: Enable detailed API request/response logging.
        json_logs: Write log files as JSON lines.
        logins: Logins of the accounts to deprovision.
        yes: Skip confirmation prompt.
    """
    if not yes:
        if not click.confirm(
            f"This permanently deletes content owned by {len(logins)} account(s). Continue?"
        ):
            click.echo("Deprovision cancelled.")
            sys.exit(0)

    try:
        context = load_cli_context(
            config, verbose, debug_api, json_logs, require_managed_user=False
        )
    except Exception as e:
        handle_exception(e)
        sys.exit(1)

    failed = []
    try:
        for login in logins:
            try:
                report = run_deprovision(context, login)
            except Exception as e:
                handle_exception(e)
                failed.append(login)
                continue
            click.echo(
                f"{login}: reached {report.reached.name} after {report.rounds} "
                f"drain round(s), {len(report.failures)} removal failure(s)."
            )
    finally:
        context.store.close()

    if failed:
        click.echo(f"Deprovision failed for: {', '.join(failed)}", err=True)
        sys.exit(1)
