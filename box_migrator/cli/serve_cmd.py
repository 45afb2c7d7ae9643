"""CLI command handler for the HTTP surface."""

from __future__ import annotations

import sys

import click
import uvicorn

from box_migrator.api.app import create_app
from box_migrator.cli.common import (
    cli,
    common_options,
    handle_exception,
    load_cli_context,
)

# ---------------------------------------------------------------------------
# serve subcommand
# ---------------------------------------------------------------------------


@cli.command()
@common_options
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port.")
def serve(
    config: str,
    verbose: bool,
    debug_api: bool,
    json_logs: bool,
    host: str,
    port: int,
) -> None:
    """Serve the per-phase HTTP endpoints under /api.

    Args:
        config: Path to config YAML.
        verbose: Enable verbose console logging.
        debug_api: Enable detailed API request/response logging.
        json_logs: Write log files as JSON lines.
        host: Bind address.
        port: Bind port.
    """
    try:
        context = load_cli_context(
            config, verbose, debug_api, json_logs, require_managed_user=False
        )
    except Exception as e:
        handle_exception(e)
        sys.exit(1)

    app = create_app(context)
    uvicorn.run(app, host=host, port=port, log_level="debug" if verbose else "info")
