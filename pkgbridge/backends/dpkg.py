"""
dpkg-family backend (apt-get / dpkg / apt-cache).

Installs go through a placeholder package (see ``placeholder``) whose
``Depends:`` line names everything the app needs.  Local ``.deb`` files
are staged into a flat repository indexed with ``apt-ftparchive`` and
made visible to apt through a private sources list passed with
``-o Dir::Etc::SourceList``, so the system configuration is never
edited.
"""

from __future__ import annotations

import glob
import logging
import re
import shutil
import tempfile
from collections.abc import Sequence
from pathlib import Path

from pkgbridge.backends import repo_files
from pkgbridge.backends.base import RACE_HINT, PackageBackend, check_repo_fields
from pkgbridge.backends.placeholder import DependencyAggregator, placeholder_name
from pkgbridge.core.errors import (
    BackendReportedError,
    InvalidPackageSpec,
    PackageNotFound,
    QueryFailed,
    RepositoryError,
    StagingFailure,
    TransientStagingRace,
)
from pkgbridge.core.execution.lock_wait import LockProfile
from pkgbridge.core.execution.output_filter import PatternTable
from pkgbridge.core.models.package import PackageSpec
from pkgbridge.core.models.process import ProcessResult
from pkgbridge.core.observability import console

logger = logging.getLogger(__name__)

# ── Output patterns ─────────────────────────────────────────────

APT_PATTERNS = PatternTable(
    backend="dpkg",
    revision="apt-2",
    noise=(
        r"apt does not have a stable CLI interface\.",
        r"Reading package lists\.\.\.",
        r"Building dependency tree",
        r"Reading state information\.\.\.",
        r"Need to get",
        r"Selecting previously unselected package",
        r"Preparing to unpack",
        r"Setting up ",
        r"Processing triggers for ",
        r"The following packages were automatically installed",
        r"Unpacking",
        r"After this operation",
        r"Fetched",
        r"Extracting templates",
        r"Removing old",
    ),
    errors=(r"^\s*E:", r"^\s*Err:"),
    keep=(r"^(?:Hit|Ign|Get):",),
)

# apt 3.0 prints a coloured summary block instead of the 2.x wording
APT3_PATTERNS = APT_PATTERNS.extend(
    revision="apt-3",
    noise=(
        r"Summary:",
        r"Upgrading:",
        r"Download size:",
        r"Space needed:",
        r"Space reclaimed:",
    ),
)

APT_LOCK_FILES = (
    "/var/lib/dpkg/lock",
    "/var/lib/apt/lists/lock",
    "/var/cache/apt/archives/lock",
    "/var/log/unattended-upgrades/unattended-upgrades.log",
    "/var/lib/dpkg/lock-frontend",
    "/var/cache/debconf/config.dat",
)

APT_LOCK_MARKERS = (
    "could not get lock",
    "unable to lock",
    "is locked by another process",
)

# a package name that is guaranteed not to exist
CANARY_PACKAGE = "lkqecjhxwqekc"

_NOT_INSTALLABLE_RE = re.compile(
    r"Depends: (\S+)(?: \([^)]*\))? but it is not (?:installable|going to be installed)"
)


def _field(text: str, name: str) -> str:
    """Value of a ``Name: value`` field in dpkg/apt-cache output."""
    prefix = f"{name}:"
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith(prefix):
            return stripped[len(prefix):].strip()
    return ""


class DpkgBackend(PackageBackend):
    """Debian, Ubuntu, Raspberry Pi OS and derivatives."""

    package_suffix = ".deb"
    package_globs = ("*.deb",)

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.aggregator = DependencyAggregator(self)

    @property
    def name(self) -> str:
        return "dpkg"

    def is_available(self) -> bool:
        return all(shutil.which(tool) for tool in ("apt-get", "dpkg", "apt-cache"))

    def default_patterns(self) -> PatternTable:
        return APT3_PATTERNS

    def lock_profile(self) -> LockProfile:
        return LockProfile(
            label="APT",
            lock_files=APT_LOCK_FILES,
            canary=("apt-get", "-o", "DPkg::Lock::Timeout=-1", "install", CANARY_PACKAGE),
            canary_markers=APT_LOCK_MARKERS,
        )

    def detect_architecture(self) -> str:
        result = self.runner.capture(["dpkg", "--print-architecture"])
        arch = result.output.strip()
        if not result.exit_ok or not arch:
            raise QueryFailed("Could not determine the dpkg architecture", output=result.output)
        return arch

    # ── Local repository ────────────────────────────────────────

    @property
    def sources_file(self) -> Path:
        return self.repo.directory / "source.list"

    @property
    def lists_file(self) -> Path:
        """Where ``apt-get update`` caches the staged repository's index."""
        uri = str(self.repo.directory).strip("/").replace("/", "_")
        return self.settings.apt_lists_dir / f"_{uri}_._Packages"

    def apt_options(self, staged: bool) -> list[str]:
        if not staged:
            return []
        return ["-o", f"Dir::Etc::SourceList={self.sources_file}"]

    def index_globs(self) -> tuple[str, ...]:
        return ("Packages",)

    def refresh_local_index(self) -> None:
        directory = self.repo.directory
        if not directory.is_dir():
            raise StagingFailure(f"Cannot index the local repository: {directory} is missing")

        result = self.runner.capture(["apt-ftparchive", "packages", "."], cwd=directory)
        packages = directory / "Packages"
        if not result.exit_ok:
            raise StagingFailure(
                f"apt-ftparchive failed to index the local repository {directory}. "
                f"This is rare; please report it together with the output below.",
                output=result.output,
            )
        packages.write_text(result.output.replace("Filename: ./", "Filename: ") + "\n")

        (directory / "aptftp.conf").write_text(
            f'APT::FTPArchive::Release {{\nOrigin "{self.settings.repo_name}";\n}};\n'
        )

        system_sources = ""
        if self.settings.apt_sources_list.is_file():
            system_sources = self.settings.apt_sources_list.read_text()
        self.sources_file.write_text(f"deb [trusted=yes] file:{directory}/ ./\n{system_sources}")
        logger.debug("Indexed %s", directory)

    def forget_local_source(self) -> None:
        """Drop apt's cached copy of the staged index."""
        if not self.lists_file.exists() and not self.lists_file.is_symlink():
            return
        result = self.runner.capture(["rm", "-f", str(self.lists_file)], sudo=True)
        if not result.exit_ok:
            logger.warning("Could not remove stale apt list %s: %s", self.lists_file, result.output)

    def local_source_visible(self) -> bool:
        return self.lists_file.exists()

    # ── Indices ─────────────────────────────────────────────────

    def update_indices(self, *, staged: bool = False) -> None:
        """``apt-get update``, then hint at autoremove/upgrade candidates."""
        self.wait_for_lock()
        console.status("Running apt update...")
        result = self.runner.run(
            ["apt-get", "update", "--allow-releaseinfo-change", *self.apt_options(staged)],
            sudo=True,
            patterns=self.patterns,
        )
        console.status("apt update complete.")
        self._update_hints(result.clean_output)
        self.check(result, "Failed to run apt update")

    @staticmethod
    def _update_hints(output: str) -> None:
        if "autoremove to remove them" in output or "can be autoremoved" in output:
            console.hint("Some packages are unnecessary. Please consider running: sudo apt autoremove")
        if "package can be upgraded" in output or "is upgradable" in output:
            console.hint("One package can be upgraded. Please consider running: sudo apt full-upgrade")
        elif "can be upgraded" in output or "upgradable" in output:
            console.hint("Some packages can be upgraded. Please consider running: sudo apt full-upgrade")

    # ── Argument resolution ─────────────────────────────────────

    def inspect_local_file(self, path: Path) -> PackageSpec:
        if not path.is_file():
            raise StagingFailure(f"Local package does not exist: {path}")
        result = self.runner.capture(["dpkg-deb", "-I", str(path)])
        if not result.exit_ok:
            raise StagingFailure(f"Failed to read package info from {path}", output=result.output)

        name = _field(result.output, "Package")
        version = _field(result.output, "Version")
        arch = _field(result.output, "Architecture")
        if not (name and version and arch):
            raise StagingFailure(
                f"Could not determine name, version and architecture of {path}",
                output=result.output,
            )
        foreign = arch if arch not in ("all", self.architecture()) else None
        return PackageSpec(name=name, min_version=version, arch=foreign)

    def expand_wildcard(self, pattern: str) -> list[PackageSpec]:
        needle = pattern.replace("*", "")
        result = self.runner.capture(["apt-cache", "search", needle])
        names = sorted({
            line.split(" - ", 1)[0].strip()
            for line in result.lines
            if needle in line.split(" - ", 1)[0]
        })
        if not names:
            raise InvalidPackageSpec(f"No packages match {pattern!r}")
        console.status(f"Expanded {pattern} to: {' '.join(names)}")
        return [PackageSpec(name=n) for n in names]

    def pin_release(self, spec: PackageSpec, release: str) -> PackageSpec:
        """Require at least the version ``release`` offers for ``spec``."""
        version = self.package_latest_version(spec.name, repo=release)
        version = version.split("+", 1)[0]
        return spec.model_copy(update={"min_version": version, "repo": release})

    # ── Install ─────────────────────────────────────────────────

    def install_command(self, specs: list[PackageSpec], staged: bool) -> list[str]:
        return [
            "apt-get", "-o", "DPkg::Lock::Timeout=-1", "install", "-fy",
            "--no-install-recommends", "--allow-downgrades",
            *self.apt_options(staged),
            *(s.render() for s in specs),
        ]

    def _install_specs(self, app: str, specs: list[PackageSpec], staged: bool) -> None:
        placeholder = self.aggregator.synthesize(app, specs)
        if placeholder is None:
            return

        workdir = self.settings.download_dir
        deb = placeholder.build(self.runner, workdir)
        try:
            if staged and not (self.repo.directory / "Packages").is_file():
                raise TransientStagingRace(RACE_HINT)

            def _attempt(attempt: int) -> None:
                self.update_indices(staged=staged)
                console.status(f"Installing the {placeholder.package} package...")
                self.wait_for_lock()
                cmd = [*self.install_command([], staged), str(deb)]
                result = self.runner.run(cmd, sudo=True, patterns=self.patterns)
                if result.failed and staged and not self.local_source_visible():
                    console.warning(
                        "Local packages failed to install because another apt update "
                        f"erased apt's knowledge of the local repository (attempt {attempt})."
                    )
                self._raise_for_race(result, staged)
                self._check_install(result, staged)

            self._with_staging_retry(_attempt, app)
        finally:
            placeholder.cleanup(workdir)
        console.success("Package installation complete.")

    def _check_install(self, result: ProcessResult, staged: bool) -> None:
        try:
            self.check(result, "Failed to install the packages!")
        except BackendReportedError as e:
            if staged:
                e.output = e.output + self._unavailable_diagnostics(result)
            raise

    def _unavailable_diagnostics(self, result: ProcessResult) -> str:
        """Extra output for "is not installable" failures with local packages."""
        missing = _NOT_INSTALLABLE_RE.findall(result.clean_output)
        if not missing:
            return ""
        parts = ["", "The local repository was in use and a package was not available."]
        packages = self.repo.directory / "Packages"
        if packages.is_file():
            parts += ["Packages file:", packages.read_text()]
        dry_run = self.runner.capture(
            ["apt-get", "install", "-fy", "--no-install-recommends", "--allow-downgrades",
             "--dry-run", *self.apt_options(True), *missing],
            sudo=True,
        )
        parts += ["apt-get --dry-run output:", dry_run.output]
        policy = self.runner.capture(["apt-cache", "policy", *missing])
        parts += ["apt-cache policy output:", policy.output]
        return "\n".join(parts)

    # ── Purge ───────────────────────────────────────────────────

    def purge_command(self, names: list[str], is_update: bool) -> list[str]:
        cmd = ["apt-get", "purge", "-y", *names]
        if not is_update:
            cmd.append("--autoremove")
        return cmd

    def purge(self, app: str, is_update: bool = False) -> list[str]:
        """Purge the app's placeholder (or legacy tracked packages)."""
        console.status(f"Allowing packages required by the {app} app to be uninstalled")
        pkg = placeholder_name(app)

        if self.package_installed(pkg):
            deps = self.package_dependencies(pkg)
            console.status(f"These packages were: {', '.join(deps)}")
            console.status(f"Purging the {pkg} package...")
            self.wait_for_lock()
            result = self.runner.run(
                self.purge_command([pkg], is_update), sudo=True, patterns=self.patterns,
            )
            self.check(result, f"Failed to purge the packages of {app}")
            self.tracking.delete(app)
            return [pkg]

        # installs made before placeholders existed kept a flat list
        return super().purge(app, is_update)

    # ── External repositories ───────────────────────────────────

    def external_sources_file(self, name: str) -> Path:
        return self.settings.apt_sources_dir / f"{name}.sources"

    def external_list_file(self, name: str) -> Path:
        """One-line-style file an older install may have left behind."""
        return self.settings.apt_sources_dir / f"{name}.list"

    def external_keyring(self, name: str) -> Path:
        return self.settings.apt_keyring_dir / f"{name}-archive-keyring.gpg"

    def add_external_repo(
        self,
        name: str,
        uris: str,
        *,
        key_url: str | None = None,
        suites: str = "",
        components: str = "",
        options: Sequence[str] = (),
    ) -> bool:
        check_repo_fields(name=name, uris=uris, suites=suites)
        if not key_url or not suites:
            raise RepositoryError(f"An apt repository needs a key URL and a suite: {name}")

        key = self.fetch_repo_key(key_url)
        keyring = self.external_keyring(name)
        sources = self.external_sources_file(name)
        if not self.remove_system_files(self.external_list_file(name), sources, keyring):
            raise RepositoryError(f"Failed to replace the existing configuration of {name}")
        self.ensure_system_dir(self.settings.apt_keyring_dir)
        self._install_keyring(key, keyring)

        content = repo_files.render_sources_file(
            uris, suites, components, str(keyring), tuple(options),
        )
        if not self.write_system_file(sources, content):
            self.remove_system_files(keyring)
            raise RepositoryError(f"Failed to write {sources}")
        result = self.runner.capture(["chmod", "644", str(sources)], sudo=True)
        if not result.exit_ok:
            logger.warning("Failed to set permissions of %s: %s", sources, result.output.strip())
        logger.info("Added apt repository %s (%s %s)", name, uris, suites)
        return True

    def _install_keyring(self, key: bytes, keyring: Path) -> None:
        """Install ``key`` as a binary keyring, dearmoring it with gpg if needed."""
        with tempfile.TemporaryDirectory(prefix="pkgbridge-key-") as tmp:
            binary = Path(tmp) / "key.gpg"
            if b"-----BEGIN PGP" in key:
                armored = Path(tmp) / "key.asc"
                armored.write_bytes(key)
                result = self.runner.capture(
                    ["gpg", "--dearmor", "--yes", "--output", str(binary), str(armored)],
                )
                if not result.exit_ok or not binary.is_file():
                    raise RepositoryError(
                        f"Failed to dearmor the key for {keyring.name}", output=result.output,
                    )
            else:
                binary.write_bytes(key)
            if not self.write_system_file(keyring, binary.read_bytes()):
                raise RepositoryError(f"Failed to install the keyring {keyring}")

    def _configured_sources(self, name: str) -> list[repo_files.AptSource]:
        sources: list[repo_files.AptSource] = []
        list_file = self.external_list_file(name)
        if list_file.is_file():
            sources += repo_files.parse_list_file(list_file.read_text(errors="replace"))
        sources_file = self.external_sources_file(name)
        if sources_file.is_file():
            sources += repo_files.parse_sources_file(sources_file.read_text(errors="replace"))
        return sources

    def has_external_repo(self, name: str) -> bool:
        return self.external_list_file(name).is_file() or self.external_sources_file(name).is_file()

    def repo_in_use(self, name: str) -> bool:
        return any(self.installed_from(source) for source in self._configured_sources(name))

    def installed_from(self, source: repo_files.AptSource) -> bool:
        """Whether any installed package's installed version comes from ``source``.

        Raises:
            QueryFailed: apt-cache policy failed.
        """
        lists = sorted(
            self.settings.apt_lists_dir.glob(glob.escape(source.lists_prefix) + "*Packages")
        )
        if not lists:
            logger.debug("No package lists for %s", source)
            return False

        status = self.settings.dpkg_status_file
        installed = repo_files.installed_from_status(
            status.read_text(errors="replace") if status.is_file() else ""
        )
        candidates: set[str] = set()
        for path in lists:
            candidates |= repo_files.packages_in_index(path.read_text(errors="replace"))
        candidates &= installed
        if not candidates:
            return False

        result = self.runner.capture(["apt-cache", "policy", *sorted(candidates)])
        if not result.exit_ok:
            raise QueryFailed("apt-cache policy failed", output=result.output)
        return repo_files.installed_from_policy(result.output, source.policy_marker)

    def drop_external_repo(self, name: str) -> bool:
        if not self.has_external_repo(name):
            return False
        if not self.remove_system_files(
            self.external_list_file(name),
            self.external_sources_file(name),
            self.external_keyring(name),
        ):
            raise RepositoryError(f"Failed to remove the {name} repository")
        logger.info("Removed apt repository %s", name)
        return True

    # ── Queries ─────────────────────────────────────────────────

    def package_installed(self, name: str) -> bool:
        result = self.runner.capture(["dpkg", "-s", name])
        return result.exit_ok and "Status: install ok installed" in result.output

    def package_available(self, name: str, arch: str | None = None) -> bool:
        target = f"{name}:{arch or self.architecture()}"
        result = self.runner.capture(["apt-cache", "policy", target])
        if not result.exit_ok or "Unable to locate package" in result.output:
            return False
        candidate = _field(result.output, "Candidate")
        return bool(candidate) and candidate != "(none)"

    def package_dependencies(self, name: str) -> list[str]:
        depends = _field(self.package_info(name), "Depends")
        return [d.strip() for d in depends.split(",") if d.strip()]

    def package_installed_version(self, name: str) -> str:
        result = self.runner.capture(["dpkg-query", "-W", "-f=${Version}", name])
        version = result.output.strip()
        if not result.exit_ok or not version:
            raise PackageNotFound(f"Package {name} is not installed")
        return version

    def package_latest_version(self, name: str, repo: str | None = None) -> str:
        cmd = ["apt-cache", "policy"]
        if repo:
            cmd += ["-t", repo]
        result = self.runner.capture([*cmd, name])
        if not result.exit_ok:
            raise QueryFailed(f"apt-cache policy failed for {name}", output=result.output)
        candidate = _field(result.output, "Candidate")
        if "Unable to locate package" in result.output or not candidate or candidate == "(none)":
            raise PackageNotFound(f"Package {name} is not available")
        return candidate

    def package_info(self, name: str) -> str:
        if not name or any(c.isspace() for c in name):
            raise InvalidPackageSpec(f"Invalid package name {name!r}")
        result = self.runner.capture(["dpkg", "-s", name])
        if result.exit_ok:
            return result.output
        if "is not installed and no information is available" in result.output:
            raise PackageNotFound(f"Package {name} is not installed and no information is available")
        raise QueryFailed(f"dpkg -s {name} failed", output=result.output)
