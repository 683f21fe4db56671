"""
Package-app status sweep.

A package-app is a directory ``<apps_dir>/<app>`` holding a
``packages`` file: whitespace-separated package names, where
``a | b`` lists alternatives.  The app counts as installed when any of
its packages is installed; it is hidden when none of them is available
from the configured sources.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pkgbridge.backends.base import PackageBackend

logger = logging.getLogger(__name__)

PACKAGES_FILE = "packages"

INSTALLED = "installed"
UNINSTALLED = "uninstalled"
HIDDEN = "hidden"


def read_packages_file(path: Path) -> list[str]:
    """Candidate package names in file order (alternatives flattened)."""
    names: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        for alternative in line.split("|"):
            names.extend(alternative.split())
    return names


def list_package_apps(apps_dir: Path) -> list[str]:
    """Apps under ``apps_dir`` that install plain packages."""
    if not apps_dir.is_dir():
        return []
    return sorted(
        p.name for p in apps_dir.iterdir()
        if p.is_dir() and (p / PACKAGES_FILE).is_file()
    )


def package_app_status(backend: PackageBackend, packages: list[str]) -> str:
    """``installed``, ``uninstalled`` or ``hidden`` for one app's candidates."""
    available = None
    for name in packages:
        if backend.package_installed(name):
            return INSTALLED
        if available is None and backend.package_available(name):
            available = name
    return UNINSTALLED if available else HIDDEN


def refresh_all_package_app_status(
    backend: PackageBackend,
    apps_dir: Path,
    status_dir: Path,
) -> dict[str, str]:
    """Recompute the status of every package-app.

    Writes ``installed`` to ``status_dir/<app>`` for installed apps and
    removes the status file of apps that are no longer installed.
    Hidden apps are reported but their status file is left alone.

    Returns:
        ``{app: status}`` for every package-app found.
    """
    results: dict[str, str] = {}
    for app in list_package_apps(apps_dir):
        try:
            packages = read_packages_file(apps_dir / app / PACKAGES_FILE)
        except OSError as e:
            logger.warning("Cannot read the packages of %s: %s", app, e)
            continue

        status = package_app_status(backend, packages)
        results[app] = status
        status_file = status_dir / app

        if status == INSTALLED:
            if not status_file.is_file() or status_file.read_text().strip() != INSTALLED:
                status_dir.mkdir(parents=True, exist_ok=True)
                status_file.write_text(INSTALLED)
                logger.debug("Marked %s as installed", app)
        elif status == UNINSTALLED:
            if status_file.exists():
                status_file.unlink()
                logger.debug("Marked %s as uninstalled", app)
        else:
            logger.debug("No package of %s is available; hiding it", app)

    logger.info("Refreshed the status of %d package-apps", len(results))
    return results
