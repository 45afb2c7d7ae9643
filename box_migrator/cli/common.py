"""Shared CLI infrastructure: option decorators, context loading, error handlers and the CLI group."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, ClassVar

import click

import box_migrator
from box_migrator.constants import (
    HTTP_FORBIDDEN,
    HTTP_RATE_LIMIT,
    HTTP_SERVER_ERROR_MIN,
    HTTP_UNAUTHORIZED,
)
from box_migrator.core.config import MigratorConfig, load_config, validate_config
from box_migrator.core.context import WorkflowContext, build_context
from box_migrator.exceptions import (
    BoxAPIError,
    FaultKind,
    MigratorError,
    RemoteFault,
    WorkflowAbortedError,
)
from box_migrator.utils.logging import log_with_context, setup_logger

# Create logger instance
logger = logging.getLogger("box_migrator")


# ---------------------------------------------------------------------------
# Custom click.Group that defaults to ``run-next``.
# A scheduler can invoke ``box-migrator --config ...`` and get one job run,
# the same as ``box-migrator run-next --config ...``.
# ---------------------------------------------------------------------------


class DefaultGroup(click.Group):
    """Click group that defaults to the ``run-next`` subcommand."""

    # Flags that belong to the group itself and should NOT trigger the
    # ``run-next`` default.
    _GROUP_FLAGS: ClassVar[set[str]] = {"--help", "--version", "-h"}

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        """Prepend ``run-next`` when the first token is a flag.

        Args:
            ctx: The current Click context.
            args: Raw CLI argument list.

        Returns:
            The (possibly modified) argument list for further parsing.
        """
        if args and args[0].startswith("-") and args[0] not in self._GROUP_FLAGS:
            args = ["run-next", *args]
        return super().parse_args(ctx, args)


# ---------------------------------------------------------------------------
# Shared option decorator
# ---------------------------------------------------------------------------


def common_options(f: Callable[..., None]) -> Callable[..., None]:
    """Decorator that adds options shared across the Box subcommands.

    Args:
        f: The Click command function to decorate.

    Returns:
        The decorated function with common options attached.
    """
    f = click.option(
        "--config",
        default="config.yaml",
        show_default=True,
        help="Path to config YAML",
    )(f)
    f = click.option(
        "--verbose",
        "-v",
        is_flag=True,
        default=False,
        help="Enable verbose console logging (shows DEBUG level messages)",
    )(f)
    f = click.option(
        "--debug_api",
        is_flag=True,
        default=False,
        help="Enable detailed API request/response logging (creates very large log files)",
    )(f)
    f = click.option(
        "--json_logs",
        is_flag=True,
        default=False,
        help="Write log files as JSON lines",
    )(f)
    return f


def load_cli_config(
    config: str,
    verbose: bool,
    debug_api: bool,
    json_logs: bool,
    require_managed_user: bool = True,
) -> MigratorConfig:
    """Load and validate the config file, then set up logging for the run.

    Raises:
        ConfigError: When the configuration is unusable
    """
    setup_logger(verbose, debug_api)
    cfg = load_config(Path(config))
    if cfg.log_dir:
        os.makedirs(cfg.log_dir, exist_ok=True)
        setup_logger(verbose, debug_api, output_dir=cfg.log_dir, json_logs=json_logs)
    validate_config(cfg, require_managed_user=require_managed_user)
    return cfg


def load_cli_context(
    config: str,
    verbose: bool,
    debug_api: bool,
    json_logs: bool,
    require_managed_user: bool = True,
) -> WorkflowContext:
    """Build the run context for a subcommand from its common options."""
    cfg = load_cli_config(
        config, verbose, debug_api, json_logs, require_managed_user=require_managed_user
    )
    if not cfg.show_progress or not click.get_text_stream("stderr").isatty():
        cfg.show_progress = False
    return build_context(cfg)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group(
    cls=DefaultGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=box_migrator.__version__, prog_name="box-migrator")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Box account migration and deprovisioning tool.

    Args:
        ctx: The Click context (injected by ``@click.pass_context``).
    """
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


def handle_http_status(status: int | None, message: str) -> None:
    """Log guidance for a failed Box call based on its status code.

    Args:
        status: The HTTP status Box returned, if any.
        message: The error text to log.
    """
    if status in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
        log_with_context(logging.ERROR, f"Box denied the request: {message}")
        log_with_context(
            logging.INFO,
            "\nThe Box application may not have sufficient access. Please ensure:",
        )
        log_with_context(
            logging.INFO,
            "1. The app uses Client Credentials Grant and is authorized in the Admin Console",
        )
        log_with_context(
            logging.INFO,
            "2. 'Manage users', 'Manage groups' and 'Make API calls using the as-user header' are enabled",
        )
        log_with_context(
            logging.INFO,
            "3. box.client_id, box.client_secret and box.enterprise_id match the app",
        )
    elif status == HTTP_RATE_LIMIT:
        log_with_context(logging.ERROR, f"Rate limit exceeded: {message}")
        log_with_context(
            logging.INFO,
            "Box kept rate limiting after every retry. Run the command again later; "
            "completed work is not repeated.",
        )
    elif status is not None and status >= HTTP_SERVER_ERROR_MIN:
        log_with_context(logging.ERROR, f"Server error from Box: {message}")
        log_with_context(
            logging.INFO, "This is likely a temporary issue. Please try again later."
        )
    else:
        log_with_context(logging.ERROR, f"Box API error: {message}")


def handle_exception(e: BaseException) -> None:
    """Handle different types of exceptions.

    Args:
        e: The exception to handle.
    """
    if isinstance(e, WorkflowAbortedError):
        cause = e.cause
        if isinstance(cause, RemoteFault) and cause.kind is not FaultKind.PERMANENT_FAULT:
            handle_http_status(cause.status_code, str(cause))
        log_with_context(logging.ERROR, str(e), phase=e.phase)
        log_with_context(
            logging.INFO,
            "The job resumes from its last completed phase the next time it is picked up.",
        )
    elif isinstance(e, RemoteFault):
        handle_http_status(e.status_code, str(e))
    elif isinstance(e, MigratorError):
        log_with_context(logging.ERROR, str(e))
    elif isinstance(e, BoxAPIError):
        handle_http_status(e.status_code, str(e))
    elif isinstance(e, FileNotFoundError):
        log_with_context(logging.ERROR, f"File not found: {e}")
        log_with_context(
            logging.INFO,
            "Please check that all required files exist and paths are correct.",
        )
    elif isinstance(e, KeyboardInterrupt):
        log_with_context(logging.WARNING, "Run interrupted by user.")
        log_with_context(
            logging.INFO,
            "Claimed jobs become available again when their lease expires.",
        )
    else:
        log_with_context(logging.ERROR, f"Run failed: {e}", exc_info=True)
