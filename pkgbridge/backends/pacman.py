"""
Arch-family backend (pacman).

Local package files are indexed with ``repo-add`` into a database
named after ``Settings.repo_name``.  Instead of editing
/etc/pacman.conf, a private copy with the staging repository inserted
ahead of the distribution repositories is written into the staging
root and passed to pacman with ``--config`` while the install runs.
"""

from __future__ import annotations

import logging
import platform
import re
import shutil
import tempfile
from collections.abc import Sequence
from pathlib import Path

from pkgbridge.backends import repo_files
from pkgbridge.backends.base import PackageBackend, check_repo_fields
from pkgbridge.core.errors import (
    InvalidPackageSpec,
    PackageNotFound,
    QueryFailed,
    RepositoryError,
    StagingFailure,
)
from pkgbridge.core.execution.lock_wait import LockProfile
from pkgbridge.core.execution.output_filter import PatternTable
from pkgbridge.core.models.package import PackageSpec
from pkgbridge.core.observability import console

logger = logging.getLogger(__name__)

PACMAN_PATTERNS = PatternTable(
    backend="pacman",
    revision="pacman-6",
    noise=tuple(
        "^" + re.escape(prefix)
        for prefix in (
            ":: Synchronizing package databases...",
            ":: Starting full system upgrade...",
            ":: Processing package changes...",
            ":: Loading package files...",
            ":: Checking for file conflicts...",
            ":: Checking available disk space...",
            ":: Installing packages...",
            ":: Removing packages...",
            ":: Upgrading packages...",
            ":: Running pre-transaction hooks...",
            ":: Running post-transaction hooks...",
            ":: Database directory:",
            ":: Retrieving packages...",
            ":: Package (",
            ":: Total",
            ":: Proceed with installation?",
            ":: Proceed with removal?",
            ":: Proceed with upgrade?",
            ":: Downloading",
            ":: Checking",
            ":: Verifying",
        )
    ),
    errors=(
        r"(?i)^\s*error:",
        r"(?i)failed to (?:commit|prepare|init) transaction",
    ),
)

PACMAN_LOCK_FILES = ("/var/lib/pacman/db.lck",)

PACMAN_LOCK_MARKERS = (
    "unable to lock database",
    "could not lock database",
    "failed to lock database",
    "is locked by another process",
)

PACKAGE_EXTENSIONS = (".pkg.tar.zst", ".pkg.tar.xz", ".pkg.tar.gz")

INIT_SYSTEMS = ("openrc", "systemd", "dinit", "s6", "runit")

CANARY_PACKAGE = "lkqecjhxwqekc"


def split_filename(path: Path) -> tuple[str, str | None]:
    """``foo-bar-1.2-3-x86_64.pkg.tar.zst`` -> (``foo-bar``, ``1.2-3``)."""
    base = path.name
    for ext in PACKAGE_EXTENSIONS:
        base = base.removesuffix(ext)
    parts = base.split("-")
    if len(parts) >= 4:
        return "-".join(parts[:-3]), f"{parts[-3]}-{parts[-2]}"
    return base, None


def _info_field(text: str, name: str) -> str:
    """Value of ``Name   : value`` in ``pacman -Si``/``-Qi`` output."""
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() == name:
            return value.strip()
    return ""


class PacmanBackend(PackageBackend):
    """Arch Linux, Manjaro, Artix and other pacman systems."""

    package_suffix = ".pkg.tar.zst"
    package_globs = tuple(f"*{ext}" for ext in PACKAGE_EXTENSIONS)

    @property
    def name(self) -> str:
        return "pacman"

    def is_available(self) -> bool:
        return shutil.which("pacman") is not None

    def default_patterns(self) -> PatternTable:
        return PACMAN_PATTERNS

    def lock_profile(self) -> LockProfile:
        return LockProfile(
            label="pacman",
            lock_files=PACMAN_LOCK_FILES,
            canary=("pacman", "-S", "--noconfirm", CANARY_PACKAGE),
            canary_markers=PACMAN_LOCK_MARKERS,
        )

    def detect_architecture(self) -> str:
        # pacman's "Architecture = auto" resolves $arch to uname -m
        return platform.machine()

    # ── Local repository ────────────────────────────────────────

    @property
    def database(self) -> Path:
        return self.repo.directory / f"{self.settings.repo_name}.db.tar.gz"

    @property
    def config_file(self) -> Path:
        return self.settings.staging_root / "pacman.conf"

    def index_globs(self) -> tuple[str, ...]:
        return (self.database.name,)

    def pacman_options(self, staged: bool) -> list[str]:
        return ["--config", str(self.config_file)] if staged else []

    def refresh_local_index(self) -> None:
        directory = self.repo.directory
        if not directory.is_dir():
            raise StagingFailure(f"Cannot index the local repository: {directory} is missing")
        packages = self.repo.files(*self.package_globs)
        if not packages:
            return

        result = self.runner.capture(
            ["repo-add", str(self.database), *(p.name for p in packages)], cwd=directory,
        )
        if not result.exit_ok or not self.database.is_file():
            raise StagingFailure(
                f"repo-add failed to index the local repository {directory}",
                output=result.output,
            )
        self.config_file.write_text(self._render_config())
        logger.debug("Indexed %s, config %s", directory, self.config_file)

    def _render_config(self) -> str:
        """System pacman.conf with the staging repository listed first."""
        system = ""
        if self.settings.pacman_conf.is_file():
            system = self.settings.pacman_conf.read_text()
        section = (
            f"[{self.settings.repo_name}]\n"
            f"SigLevel = Optional TrustAll\n"
            f"Server = file://{self.settings.staging_root}/$arch\n\n"
        )
        lines = system.splitlines(keepends=True)
        for i, line in enumerate(lines):
            stripped = line.strip()
            if stripped.startswith("[") and stripped != "[options]":
                return "".join(lines[:i]) + section + "".join(lines[i:])
        if "[options]" not in system:
            system = "[options]\n" + system
        return system.rstrip("\n") + "\n\n" + section

    def forget_local_source(self) -> None:
        """Remove the sync database pacman cached for the staging repo."""
        stale = [
            self.settings.pacman_sync_dir / f"{self.settings.repo_name}{suffix}"
            for suffix in (".db", ".files")
        ]
        stale = [p for p in stale if p.exists()]
        if not stale:
            return
        result = self.runner.capture(["rm", "-f", *map(str, stale)], sudo=True)
        if not result.exit_ok:
            logger.warning("Could not remove stale pacman sync files: %s", result.output.strip())

    # ── Indices ─────────────────────────────────────────────────

    def update_indices(self, *, staged: bool = False) -> None:
        self.wait_for_lock()
        console.status("Running pacman -Sy...")
        result = self.runner.run(
            ["pacman", "-Sy", "--noconfirm", *self.pacman_options(staged)],
            sudo=True,
            patterns=self.patterns,
        )
        self.check(result, "Failed to synchronize the pacman databases")
        console.status("pacman database sync complete.")

    # ── Argument resolution ─────────────────────────────────────

    def inspect_local_file(self, path: Path) -> PackageSpec:
        if not path.is_file():
            raise StagingFailure(f"Local package does not exist: {path}")
        name, version = split_filename(path)
        return PackageSpec(name=name, min_version=version)

    def expand_wildcard(self, pattern: str) -> list[PackageSpec]:
        console.status(f"Expanding wildcard in '{pattern}'...")
        result = self.runner.capture(["pacman", "-Ss", pattern.replace("*", ".*")])
        names = sorted({
            line.split()[0].split("/", 1)[-1]
            for line in result.lines
            if line and not line[0].isspace() and "/" in line.split()[0]
        })
        if not names:
            raise InvalidPackageSpec(f"No packages match {pattern!r}")
        return [PackageSpec(name=n) for n in names]

    # ── Install / purge ─────────────────────────────────────────

    def install_command(self, specs: list[PackageSpec], staged: bool) -> list[str]:
        return [
            "pacman", "-S", "--noconfirm", "--needed",
            *self.pacman_options(staged),
            *(s.name for s in specs),
        ]

    def purge_command(self, names: list[str], is_update: bool) -> list[str]:
        cmd = ["pacman", "-R", "--noconfirm"]
        if not is_update:
            cmd.append("--nosave")
        return [*cmd, *names]

    # ── External repositories ───────────────────────────────────

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
        check_repo_fields(name=name, uris=uris)
        if name in ("options", self.settings.repo_name):
            raise RepositoryError(f"{name!r} cannot be used as a repository name")
        if key_url:
            self._import_key(self.fetch_repo_key(key_url))

        path = self.settings.pacman_conf
        current = path.read_text() if path.is_file() else ""
        if name in repo_files.pacman_sections(current):
            console.status(f"Repository [{name}] already exists in {path}")
            return False
        # a plain mirror URL gets the usual $repo/os/$arch layout
        server = uris if "$" in uris else f"{uris.rstrip('/')}/$repo/os/$arch"
        updated = repo_files.add_pacman_section(current, name, [f"Server = {server}", *options])
        if not self.write_system_file(path, updated):
            raise RepositoryError(f"Failed to add [{name}] to {path}")
        logger.info("Added pacman repository %s (%s)", name, server)
        self.update_indices()
        return True

    def _import_key(self, key: bytes) -> None:
        """Add ``key`` to the pacman keyring and sign it locally."""
        with tempfile.TemporaryDirectory(prefix="pkgbridge-key-") as tmp:
            key_file = Path(tmp) / "key.asc"
            key_file.write_bytes(key)
            console.status("Importing the repository key...")
            result = self.runner.capture(["pacman-key", "--add", str(key_file)], sudo=True)
            if not result.exit_ok:
                raise RepositoryError("pacman-key failed to import the key", output=result.output)
            shown = self.runner.capture(["gpg", "--show-keys", "--with-colons", str(key_file)])
        fingerprints = [
            line.split(":")[9] for line in shown.lines
            if line.startswith("fpr:") and len(line.split(":")) > 9
        ]
        if not fingerprints:
            console.warning("Could not read the key fingerprint; the key was not signed locally.")
            return
        signed = self.runner.capture(["pacman-key", "--lsign-key", fingerprints[0]], sudo=True)
        if not signed.exit_ok:
            console.warning(f"Failed to sign the key {fingerprints[0]} locally.")

    def has_external_repo(self, name: str) -> bool:
        path = self.settings.pacman_conf
        return path.is_file() and name in repo_files.pacman_sections(path.read_text())

    def repo_in_use(self, name: str) -> bool:
        result = self.runner.capture(["pacman", "-Sl", name])
        if not result.exit_ok:
            # not synced yet, so nothing can have come from it
            logger.debug("pacman -Sl %s failed: %s", name, result.output.strip())
            return False
        return any("[installed" in line for line in result.lines)

    def drop_external_repo(self, name: str) -> bool:
        path = self.settings.pacman_conf
        if not path.is_file():
            return False
        updated = repo_files.remove_pacman_section(path.read_text(), name)
        if updated is None:
            return False
        if not self.write_system_file(path, updated):
            raise RepositoryError(f"Failed to remove [{name}] from {path}")
        logger.info("Removed pacman repository %s", name)
        return True

    # ── Queries ─────────────────────────────────────────────────

    def package_installed(self, name: str) -> bool:
        return self.runner.capture(["pacman", "-Q", name]).exit_ok

    def package_available(self, name: str, arch: str | None = None) -> bool:
        if name == "init":
            if any(self.package_installed(s) for s in INIT_SYSTEMS):
                return True
            return any(
                self.runner.capture(["pacman", "-Ss", f"^{s}$"]).output.strip()
                for s in INIT_SYSTEMS
            )
        result = self.runner.capture(["pacman", "-Ss", f"^{re.escape(name)}$"])
        return result.exit_ok and any(
            line.split()[0].split("/", 1)[-1] == name
            for line in result.lines
            if line and not line[0].isspace()
        )

    def package_dependencies(self, name: str) -> list[str]:
        depends = _info_field(self.package_info(name), "Depends On")
        if not depends or depends == "None":
            return []
        return depends.split()

    def package_installed_version(self, name: str) -> str:
        result = self.runner.capture(["pacman", "-Q", name])
        fields = result.output.split()
        if not result.exit_ok or len(fields) < 2:
            raise PackageNotFound(f"Package {name} is not installed")
        return fields[1]

    def package_latest_version(self, name: str, repo: str | None = None) -> str:
        target = f"{repo}/{name}" if repo else name
        result = self.runner.capture(["pacman", "-Si", target])
        version = _info_field(result.output, "Version")
        if not result.exit_ok or not version:
            raise PackageNotFound(f"Package {name} is not available")
        return version

    def package_info(self, name: str) -> str:
        if not name or any(c.isspace() for c in name):
            raise InvalidPackageSpec(f"Invalid package name {name!r}")
        result = self.runner.capture(["pacman", "-Si", name])
        if result.exit_ok:
            return result.output
        result = self.runner.capture(["pacman", "-Qi", name])
        if result.exit_ok:
            return result.output
        if "was not found" in result.output:
            raise PackageNotFound(f"Package {name} was not found")
        raise QueryFailed(f"pacman -Si/-Qi {name} failed", output=result.output)
