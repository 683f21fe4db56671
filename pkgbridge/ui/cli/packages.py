"""
CLI commands for installing and purging application packages.

Thin wrappers over the backend selected for this host.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import click

from pkgbridge.backends.base import PackageBackend
from pkgbridge.core.errors import PackageError
from pkgbridge.core.models.settings import Settings
from pkgbridge.core.observability import console


def get_settings(ctx: click.Context) -> Settings:
    """Settings for this invocation (loaded once per context)."""
    settings = ctx.obj.get("settings")
    if settings is None:
        from pkgbridge.core.config.loader import ConfigError, load_settings

        try:
            settings = load_settings(ctx.obj.get("config_path"))
        except ConfigError as e:
            click.secho(f"❌ {e}", fg="red", err=True)
            sys.exit(1)
        ctx.obj["settings"] = settings
    return settings


def get_backend(ctx: click.Context) -> PackageBackend:
    """Backend for this host (selected once per context)."""
    backend = ctx.obj.get("backend")
    if backend is None:
        from pkgbridge.backends.registry import UnknownBackend, select_backend

        try:
            backend = select_backend(get_settings(ctx))
        except UnknownBackend as e:
            click.secho(f"❌ {e}", fg="red", err=True)
            sys.exit(1)
        ctx.obj["backend"] = backend
    return backend


@contextmanager
def reporting_failures() -> Iterator[None]:
    """Turn a PackageError into a failure report and exit status 1."""
    try:
        yield
    except PackageError as e:
        console.failure(e.message, error_lines=e.error_lines, output=e.output)
        sys.exit(1)


# ── Act ─────────────────────────────────────────────────────────


@click.command(context_settings={"ignore_unknown_options": True})
@click.argument("app")
@click.argument("args", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def install(ctx: click.Context, app: str, args: tuple[str, ...]) -> None:
    """Install packages (names, .pkg files, URLs, globs) for APP."""
    pkg = get_backend(ctx)
    with reporting_failures():
        specs = pkg.install(app, list(args))
    if not ctx.obj.get("quiet"):
        console.success(f"Installed for {app}: {', '.join(s.render() for s in specs)}")


@click.command()
@click.argument("app")
@click.option("--update", "is_update", is_flag=True, help="Keep dependencies (app is being reinstalled).")
@click.pass_context
def purge(ctx: click.Context, app: str, is_update: bool) -> None:
    """Remove the packages installed for APP."""
    pkg = get_backend(ctx)
    with reporting_failures():
        removed = pkg.purge(app, is_update=is_update)
    if ctx.obj.get("quiet"):
        return
    if removed:
        console.success(f"Removed for {app}: {', '.join(removed)}")
    else:
        console.status(f"Nothing to remove for {app}")


@click.command()
@click.pass_context
def update(ctx: click.Context) -> None:
    """Refresh the package indices."""
    pkg = get_backend(ctx)
    with reporting_failures():
        pkg.update_indices()


# ── Observe ─────────────────────────────────────────────────────


@click.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def backend(ctx: click.Context, as_json: bool) -> None:
    """Show the package backend selected for this host."""
    from pkgbridge.backends.registry import default_registry

    pkg = get_backend(ctx)
    result = pkg.status()
    result["registered"] = default_registry().backend_status(pkg.settings)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    icon = "✅" if result["available"] else "❌"
    click.secho(f"📦 Backend: {result['name']}", fg="cyan", bold=True)
    click.echo(f"   {icon} {result['type']}")
    click.echo(f"   Patterns: {result['patterns']}")
    click.echo(f"   Staging:  {result['staging_root']}")
    click.echo(f"   Tracking: {result['tracking_dir']}")
    click.echo("   Registered:")
    for name, info in result["registered"].items():
        mark = "✅" if info["available"] else "❌"
        click.echo(f"      {mark} {name:<8} {info['type']}")


@click.command("refresh-status")
@click.argument("apps_dir", required=False, type=click.Path(file_okay=False, path_type=Path))
@click.argument("status_dir", required=False, type=click.Path(file_okay=False, path_type=Path))
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def refresh_status(
    ctx: click.Context, apps_dir: Path | None, status_dir: Path | None, as_json: bool,
) -> None:
    """Recompute installed/hidden status of every package-app.

    APPS_DIR and STATUS_DIR default to the configured apps_dir and
    status directory.
    """
    from pkgbridge.core.services.package_status import refresh_all_package_app_status

    pkg = get_backend(ctx)
    apps_dir = apps_dir or pkg.settings.apps_dir
    if apps_dir is None:
        raise click.UsageError("APPS_DIR is required when apps_dir is not configured")
    status_dir = status_dir or pkg.settings.status_dir
    with reporting_failures():
        result = refresh_all_package_app_status(pkg, apps_dir, status_dir)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    for app, status in result.items():
        color = {"installed": "green", "hidden": "yellow"}.get(status, "white")
        click.echo(f"   {app:<35} ", nl=False)
        click.secho(status, fg=color)
