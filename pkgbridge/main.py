"""
pkgbridge: CLI entrypoint.

Usage:
    pkgbridge --help
    pkgbridge install myapp curl /tmp/tool.deb
    pkgbridge purge myapp
    pkgbridge query installed curl
"""

from __future__ import annotations

import os
from pathlib import Path

import click

from pkgbridge import __version__
from pkgbridge.core.observability.logging_config import ENV_LEVEL, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="pkgbridge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to config.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """pkgbridge: install and purge packages for applications."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get(ENV_LEVEL, "WARNING")

    setup_logging(level=level)


# ── Register sub-commands from pkgbridge/ui/cli/ ────────────────

from pkgbridge.ui.cli.packages import backend, install, purge, refresh_status, update  # noqa: E402
from pkgbridge.ui.cli.query import query  # noqa: E402
from pkgbridge.ui.cli.repos import repo  # noqa: E402

cli.add_command(install)
cli.add_command(purge)
cli.add_command(update)
cli.add_command(backend)
cli.add_command(refresh_status)
cli.add_command(query)
cli.add_command(repo)


if __name__ == "__main__":
    cli()
