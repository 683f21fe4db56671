"""
Dependency aggregator for the dpkg family.

Instead of installing an app's packages one by one, an empty package
named after the app is built whose ``Depends:`` line lists them all.
apt resolves and tracks them as one unit, and purging the placeholder
lets ``--autoremove`` clean up whatever is no longer needed.

Re-installing is additive: the dependencies of an already installed
placeholder are merged into the new one.  If the merged control file is
identical to what dpkg already has, there is nothing to install.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from pkgbridge.core.errors import StagingFailure
from pkgbridge.core.models.package import PackageSpec, dedupe_specs, render_depends
from pkgbridge.core.observability import console

if TYPE_CHECKING:
    from pkgbridge.backends.dpkg import DpkgBackend

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "pkgbridge-"


def placeholder_name(app: str) -> str:
    """Package name of the placeholder for ``app``.

    A hash keeps the name valid for dpkg whatever characters the app
    name contains.
    """
    digest = hashlib.md5(app.encode("utf-8")).hexdigest()
    return f"{PLACEHOLDER_PREFIX}{digest[:8]}"


@dataclass
class PlaceholderPackage:
    """Control data of one placeholder package."""

    app: str
    depends: list[PackageSpec] = field(default_factory=list)
    version: str = "1.0"

    @property
    def package(self) -> str:
        return placeholder_name(self.app)

    @property
    def depends_line(self) -> str:
        return render_depends(self.depends)

    def control_text(self) -> str:
        return (
            f"Maintainer: pkgbridge\n"
            f"Name: {self.app}\n"
            f"Description: Placeholder package that installs the dependencies of the '{self.app}' app\n"
            f"Version: {self.version}\n"
            f"Architecture: all\n"
            f"Priority: optional\n"
            f"Section: custom\n"
            f"Depends: {self.depends_line}\n"
            f"Package: {self.package}\n"
        )

    def matches_installed(self, status_text: str) -> bool:
        """Compare with ``dpkg -s`` output of the installed placeholder.

        dpkg adds a ``Status:`` field and may reorder fields, so both
        sides are compared as sorted sets of non-empty lines.
        """
        installed = sorted(
            line for line in status_text.splitlines()
            if line.strip() and not line.startswith("Status: ")
        )
        wanted = sorted(line for line in self.control_text().splitlines() if line.strip())
        return installed == wanted

    def build(self, runner, workdir: Path) -> Path:
        """Build ``<workdir>/<package>.deb`` with ``dpkg-deb --build``.

        Raises:
            StagingFailure: dpkg-deb failed (includes its output).
        """
        pkg_dir = workdir / self.package
        deb = workdir / f"{self.package}.deb"
        self.cleanup(workdir)

        control_dir = pkg_dir / "DEBIAN"
        control_dir.mkdir(parents=True)
        (control_dir / "control").write_text(self.control_text(), encoding="utf-8")
        # dpkg-deb refuses group/world-writable control directories
        for path in (pkg_dir, control_dir):
            path.chmod(0o755)
        (control_dir / "control").chmod(0o644)

        result = runner.capture(["dpkg-deb", "--build", str(pkg_dir)])
        if not result.exit_ok or not deb.is_file():
            raise StagingFailure(
                f"Failed to build the placeholder package {self.package}",
                output=result.output,
            )
        logger.debug("Built %s", deb)
        return deb

    def cleanup(self, workdir: Path) -> None:
        shutil.rmtree(workdir / self.package, ignore_errors=True)
        (workdir / f"{self.package}.deb").unlink(missing_ok=True)


class DependencyAggregator:
    """Builds placeholder packages for a dpkg-family backend."""

    def __init__(self, backend: DpkgBackend) -> None:
        self.backend = backend

    def synthesize(self, app: str, specs: list[PackageSpec]) -> PlaceholderPackage | None:
        """Placeholder declaring ``specs`` plus any already-installed ones.

        Returns:
            The placeholder to install, or None if the installed
            placeholder already declares exactly this.
        """
        name = placeholder_name(app)
        console.status(
            f"Creating an empty package to install the required packages...\n"
            f"It will be named: {name}"
        )

        installed = self.backend.package_installed(name)
        merged = list(specs)
        if installed:
            existing = self.backend.package_dependencies(name)
            if existing:
                console.status(
                    f"The {name} package is already installed. "
                    f"Inheriting its dependencies: {', '.join(existing)}"
                )
            merged = _merge_declared([_parse_existing(dep) for dep in existing], specs)

        placeholder = PlaceholderPackage(app=app, depends=dedupe_specs(merged))
        console.hint(f"Depends: {placeholder.depends_line}")

        if installed and placeholder.matches_installed(self.backend.package_info(name)):
            console.status(f"{name} is already installed and no changes would be made. Skipping...")
            return None
        return placeholder


def _parse_existing(dep: str) -> PackageSpec:
    try:
        return PackageSpec.parse(dep)
    except ValueError:
        # alternatives ("a | b") are carried over verbatim
        logger.debug("Keeping dependency entry as-is: %s", dep)
        return PackageSpec(name=dep)


def _merge_declared(existing: list[PackageSpec], new: list[PackageSpec]) -> list[PackageSpec]:
    """Add ``new`` to the already declared ``existing`` dependencies.

    A new spec with a version constraint replaces the declared one.  A
    bare new spec never drops a constraint that is already declared.
    """
    declared = {spec.qualified_name: spec for spec in existing}
    merged = list(existing)
    for spec in new:
        current = declared.get(spec.qualified_name)
        if current is not None and current.min_version and not spec.min_version:
            continue
        merged.append(spec)
    return merged
