"""
CLI commands for third-party package repositories.
"""

from __future__ import annotations

import sys

import click

from pkgbridge.core.observability import console
from pkgbridge.ui.cli.packages import get_backend, reporting_failures


@click.group()
def repo() -> None:
    """Add and remove external package repositories."""


@repo.command("add")
@click.argument("name")
@click.argument("uris")
@click.option("--key-url", help="URL of the repository signing key.")
@click.option("--suites", default="", help="apt suites (e.g. bookworm).")
@click.option("--components", default="", help="apt components (e.g. 'main contrib').")
@click.option("--option", "options", multiple=True, help="Extra configuration line (repeatable).")
@click.pass_context
def add(
    ctx: click.Context,
    name: str,
    uris: str,
    key_url: str | None,
    suites: str,
    components: str,
    options: tuple[str, ...],
) -> None:
    """Register repository NAME served from URIS."""
    with reporting_failures():
        added = get_backend(ctx).add_external_repo(
            name, uris, key_url=key_url, suites=suites, components=components, options=options,
        )
    if added:
        console.success(f"Added the {name} repository")


@repo.command("remove")
@click.argument("name")
@click.option("--force", is_flag=True, help="Remove even if installed packages come from it.")
@click.pass_context
def remove(ctx: click.Context, name: str, force: bool) -> None:
    """Remove repository NAME (kept while in use unless --force)."""
    with reporting_failures():
        removed = get_backend(ctx).remove_external_repo(name, force=force)
    if removed:
        console.success(f"Removed the {name} repository")


@repo.command("prune")
@click.argument("name")
@click.option("--dry-run", is_flag=True, help="Only report whether NAME could be removed.")
@click.pass_context
def prune(ctx: click.Context, name: str, dry_run: bool) -> None:
    """Remove repository NAME if nothing installed comes from it.

    Exits 1 if the repository is kept.
    """
    with reporting_failures():
        removable = get_backend(ctx).remove_repo_if_unused(name, dry_run=dry_run)
    sys.exit(0 if removable else 1)


@repo.command("in-use")
@click.argument("name")
@click.pass_context
def in_use(ctx: click.Context, name: str) -> None:
    """Exit 0 if an installed package came from repository NAME."""
    with reporting_failures():
        used = get_backend(ctx).repo_in_use(name)
    sys.exit(0 if used else 1)
