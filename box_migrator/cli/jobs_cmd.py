"""CLI command handlers for the migration job queue."""

from __future__ import annotations

import logging
import sys
from typing import Optional

import click

from box_migrator.cli.common import (
    cli,
    common_options,
    handle_exception,
    load_cli_context,
)
from box_migrator.core.driver import run_next_job, seed_jobs
from box_migrator.utils.logging import log_with_context

# ---------------------------------------------------------------------------
# seed subcommand
# ---------------------------------------------------------------------------


@cli.command()
@common_options
def seed(config: str, verbose: bool, debug_api: bool, json_logs: bool) -> None:
    """Create migration jobs for newly completed transfers.

    Args:
        config: Path to config YAML.
        verbose: Enable verbose console logging.
        debug_api: Enable detailed API request/response logging.
        json_logs: Write log files as JSON lines.
    """
    try:
        context = load_cli_context(
            config, verbose, debug_api, json_logs, require_managed_user=False
        )
        created = seed_jobs(context)
    except Exception as e:
        handle_exception(e)
        sys.exit(1)
    click.echo(f"Seeded {created} job(s).")


# ---------------------------------------------------------------------------
# run-next subcommand
# ---------------------------------------------------------------------------


@cli.command("run-next")
@common_options
@click.option(
    "--all",
    "run_all",
    is_flag=True,
    default=False,
    help="Keep running jobs until the queue is empty.",
)
@click.option(
    "--max_jobs",
    type=int,
    default=None,
    help="Stop after this many jobs (only with --all).",
)
def run_next(
    config: str,
    verbose: bool,
    debug_api: bool,
    json_logs: bool,
    run_all: bool,
    max_jobs: Optional[int],
) -> None:
    """Claim the next unfinished migration job and run it to completion.

    A job that fails is held back for ``job_store.retry_delay_seconds`` and
    then resumes from its last completed phase. With ``--all`` each job runs
    at most once per invocation and a failed job does not stop the remaining
    ones. The exit code is non-zero if any job failed.

    Args:
        config: Path to config YAML.
        verbose: Enable verbose console logging.
        debug_api: Enable detailed API request/response logging.
        json_logs: Write log files as JSON lines.
        run_all: Keep running jobs until the queue is empty.
        max_jobs: Upper bound on jobs run with ``--all``.
    """
    try:
        context = load_cli_context(config, verbose, debug_api, json_logs)
    except Exception as e:
        handle_exception(e)
        sys.exit(1)

    ran = 0
    failed = 0
    attempted: set[int] = set()
    try:
        while True:
            try:
                outcome = run_next_job(context, attempted)
            except Exception as e:
                handle_exception(e)
                failed += 1
                ran += 1
                if not run_all:
                    break
            else:
                if outcome is None:
                    break
                ran += 1
                click.echo(
                    f"Job {outcome.job.job_id} ({outcome.job.user_login}) finished: "
                    f"{outcome.report.item_failures} item failure(s)."
                )
                if not run_all:
                    break
            if max_jobs is not None and ran >= max_jobs:
                break
    except KeyboardInterrupt as e:
        handle_exception(e)
        sys.exit(130)
    finally:
        context.store.close()

    if ran == 0:
        click.echo("No unfinished jobs.")
    if failed:
        log_with_context(logging.ERROR, f"{failed} of {ran} job run(s) failed")
        sys.exit(1)
