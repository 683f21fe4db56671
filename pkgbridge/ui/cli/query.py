"""
CLI commands for read-only package queries.

Exit status is 0 for "yes"/found and 1 for "no"/not found, so the
commands can be used from shell scripts.
"""

from __future__ import annotations

import sys

import click

from pkgbridge.ui.cli.packages import get_backend, reporting_failures


@click.group()
def query() -> None:
    """Query package state (never takes the package lock)."""


@query.command()
@click.argument("name")
@click.pass_context
def installed(ctx: click.Context, name: str) -> None:
    """Exit 0 if NAME is installed."""
    with reporting_failures():
        ok = get_backend(ctx).package_installed(name)
    sys.exit(0 if ok else 1)


@query.command()
@click.argument("name")
@click.option("--arch", default=None, help="Architecture (default: native).")
@click.pass_context
def available(ctx: click.Context, name: str, arch: str | None) -> None:
    """Exit 0 if NAME can be installed from the configured sources."""
    with reporting_failures():
        ok = get_backend(ctx).package_available(name, arch)
    sys.exit(0 if ok else 1)


@query.command()
@click.argument("name")
@click.pass_context
def deps(ctx: click.Context, name: str) -> None:
    """Print the dependencies of NAME, one per line."""
    with reporting_failures():
        for dep in get_backend(ctx).package_dependencies(name):
            click.echo(dep)


def _print_result(func, *args) -> None:
    with reporting_failures():
        click.echo(func(*args))


@query.command()
@click.argument("name")
@click.pass_context
def version(ctx: click.Context, name: str) -> None:
    """Print the installed version of NAME."""
    _print_result(get_backend(ctx).package_installed_version, name)


@query.command()
@click.argument("name")
@click.option("--repo", "-t", default=None, help="Release/repository to look in.")
@click.pass_context
def latest(ctx: click.Context, name: str, repo: str | None) -> None:
    """Print the newest installable version of NAME."""
    _print_result(get_backend(ctx).package_latest_version, name, repo)


@query.command()
@click.argument("name")
@click.pass_context
def info(ctx: click.Context, name: str) -> None:
    """Print the package manager's description of NAME."""
    _print_result(get_backend(ctx).package_info, name)
