"""
User-facing console messages.

Progress notices, warnings and failure reports are for the person at
the terminal, not for the log, so they are written with ``click.secho``
on stderr.  Everything is also logged at DEBUG for log files.
"""

from __future__ import annotations

import logging

import click

logger = logging.getLogger(__name__)


def status(message: str, *, nl: bool = True) -> None:
    """Progress notice (cyan)."""
    logger.debug("status: %s", message)
    click.secho(message, fg="cyan", err=True, nl=nl)


def success(message: str) -> None:
    logger.debug("success: %s", message)
    click.secho(f"✅ {message}", fg="green", err=True)


def warning(message: str) -> None:
    """Non-fatal problem (yellow)."""
    logger.debug("warning: %s", message)
    click.secho(f"⚠️  {message}", fg="yellow", err=True)


def hint(message: str) -> None:
    click.secho(message, fg="bright_black", err=True)


def failure(headline: str, *, error_lines: list[str] | None = None, output: str = "") -> None:
    """Report a failed operation: headline, classified errors, full output.

    The classified lines come first so they are not lost at the top of a
    long tool transcript.
    """
    logger.debug("failure: %s", headline)
    click.secho(f"❌ {headline}", fg="red", bold=True, err=True)
    if error_lines:
        click.secho("\nErrors reported by the package manager:", fg="red", err=True)
        for line in error_lines:
            click.secho(f"  {line}", fg="red", err=True)
    if output.strip():
        click.secho("\nFull output:", fg="bright_black", err=True)
        click.echo(output.rstrip(), err=True)
