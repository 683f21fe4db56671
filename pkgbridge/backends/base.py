"""
Package backend base: the contract every distribution family implements.

The orchestration (argument resolution, staging, lock wait, retry on a
vanished staging repository, tracking, teardown) is shared and lives
here.  Subclasses provide the family-specific pieces: command grammar,
index generation, source registration, output patterns and queries.

To add a backend:
    1. Subclass PackageBackend
    2. Implement the abstract members
    3. Register the class in ``pkgbridge.backends.registry``
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from pkgbridge.core.errors import (
    BackendReportedError,
    ExitCodeOnly,
    InvalidPackageSpec,
    RepositoryError,
    TransientStagingRace,
)
from pkgbridge.core.execution.download import download_package, fetch_bytes
from pkgbridge.core.execution.lock_wait import LockArbiter, LockProfile
from pkgbridge.core.execution.output_filter import PatternTable
from pkgbridge.core.execution.process_runner import ProcessRunner
from pkgbridge.core.models.package import PackageSpec, dedupe_specs
from pkgbridge.core.models.process import ProcessResult
from pkgbridge.core.models.settings import Settings
from pkgbridge.core.observability import console
from pkgbridge.core.persistence.tracking import TrackingStore
from pkgbridge.core.reliability.retry import run_with_retry
from pkgbridge.core.staging.local_repo import LocalRepository

logger = logging.getLogger(__name__)

RACE_HINT = (
    "The local package repository disappeared while installing. This usually "
    "means another install was started at the same time; wait for it to "
    "finish and try again."
)


class PackageBackend(ABC):
    """Abstract base class for all package backends.

    Mutating operations raise a ``PackageError`` subclass on failure.
    Queries never take the lock and raise ``PackageNotFound`` where the
    underlying tool distinguishes "unknown package" from "query failed".
    """

    #: file suffix of downloaded package files
    package_suffix = ""
    #: globs of staged package files the index is built from
    package_globs: tuple[str, ...] = ()

    def __init__(
        self,
        settings: Settings | None = None,
        runner: ProcessRunner | None = None,
        *,
        tracking: TrackingStore | None = None,
        lock: LockArbiter | None = None,
        patterns: PatternTable | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or Settings()
        self.runner = runner or ProcessRunner(self.settings.subprocess_env())
        self.tracking = tracking or TrackingStore(self.settings.tracking_dir)
        self.patterns = patterns or self.default_patterns()
        self.lock = lock or LockArbiter(self.runner, self.lock_profile(), self.settings.lock)
        self._sleep = sleep
        self._arch: str | None = None

    # ── Identity ────────────────────────────────────────────────

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier (``dpkg``, ``apk``, ``pacman``, ``null``)."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether this backend's tools exist on the host. Never raises."""

    @abstractmethod
    def default_patterns(self) -> PatternTable:
        """Noise/error pattern table for this backend's tool output."""

    @abstractmethod
    def lock_profile(self) -> LockProfile:
        """Lock files and canary used by the lock arbiter."""

    @abstractmethod
    def detect_architecture(self) -> str:
        """Native architecture name as the package manager spells it."""

    def architecture(self) -> str:
        if self._arch is None:
            self._arch = self.detect_architecture()
        return self._arch

    @property
    def repo(self) -> LocalRepository:
        return LocalRepository(self.settings.staging_root, self.architecture())

    def status(self) -> dict[str, Any]:
        """Summary used by the CLI ``backend`` command."""
        available = self.is_available()
        return {
            "name": self.name,
            "type": self.__class__.__name__,
            "available": available,
            "patterns": f"{self.patterns.backend}/{self.patterns.revision}",
            "staging_root": str(self.settings.staging_root),
            "tracking_dir": str(self.settings.tracking_dir),
        }

    # ── Local repository ────────────────────────────────────────

    def add_local(self, files: Sequence[Path]) -> list[Path]:
        """Move package files into the staging directory."""
        return self.repo.add(files)

    @abstractmethod
    def refresh_local_index(self) -> None:
        """Build the staged index and register it as a trusted source.

        Raises:
            StagingFailure: index generation failed (includes raw output).
        """

    def remove_local(self) -> None:
        """Delete the staging tree and any stale reference to it.

        Best effort: failures are logged as warnings, never raised.
        """
        self.repo.remove_all(self.runner)
        self.forget_local_source()

    def forget_local_source(self) -> None:
        """Drop the staging repository from the backend's configuration."""

    def local_source_visible(self) -> bool:
        """Whether the backend still sees the staged repository.

        Checked after a failed install: if the staged index is gone the
        failure is treated as a transient race with another installer.
        """
        return bool(self.repo.files(*self.index_globs()))

    def index_globs(self) -> tuple[str, ...]:
        return ()

    def write_system_file(self, path: Path, content: str | bytes) -> bool:
        """Replace a root-owned config file via a temp file and ``sudo cp``.

        Returns:
            True on success. Failures are logged, not raised.
        """
        data = content.encode("utf-8") if isinstance(content, str) else content
        fd, tmp = tempfile.mkstemp(prefix="pkgbridge-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            result = self.runner.capture(["cp", tmp, str(path)], sudo=True)
        finally:
            Path(tmp).unlink(missing_ok=True)
        if not result.exit_ok:
            logger.warning("Failed to update %s: %s", path, result.output.strip())
            return False
        return True

    # ── Lock / indices ──────────────────────────────────────────

    def wait_for_lock(self) -> None:
        self.lock.wait()

    @abstractmethod
    def update_indices(self, *, staged: bool = False) -> None:
        """Refresh the package indices (including the staged repository)."""

    # ── Argument resolution ─────────────────────────────────────

    @abstractmethod
    def inspect_local_file(self, path: Path) -> PackageSpec:
        """Read name (and version) from a package file."""

    @abstractmethod
    def expand_wildcard(self, pattern: str) -> list[PackageSpec]:
        """Expand a glob into the matching package names.

        Raises:
            InvalidPackageSpec: nothing matched.
        """

    def pin_release(self, spec: PackageSpec, release: str) -> PackageSpec:
        """Apply a ``-t <release>`` pin to a bare name."""
        raise InvalidPackageSpec(f"The {self.name} backend does not support release pins (-t)")

    def resolve(self, args: Sequence[str]) -> tuple[list[PackageSpec], list[Path]]:
        """Turn raw install arguments into specs and local files to stage.

        Arguments may be bare names, absolute paths to package files,
        URLs (downloaded first) or globs.  ``-t <release>`` pins every
        bare name to that release where the backend supports it.

        Raises:
            InvalidPackageSpec: an argument cannot be resolved.
            DownloadFailure: a URL could not be retrieved.
        """
        release, plain = _split_release_flag(args)

        specs: list[PackageSpec] = []
        local_files: list[Path] = []
        for arg in plain:
            if "://" in arg:
                path = download_package(
                    arg,
                    self.settings.download_dir,
                    suffix=self.package_suffix,
                    policy=self.settings.download_retry,
                    sleep=self._sleep,
                )
                specs.append(self.inspect_local_file(path))
                local_files.append(path)
            elif arg.startswith("/"):
                specs.append(self.inspect_local_file(Path(arg)))
                local_files.append(Path(arg))
            elif "*" in arg:
                specs.extend(self.expand_wildcard(arg))
            else:
                spec = PackageSpec(name=arg)
                if release:
                    spec = self.pin_release(spec, release)
                specs.append(spec)

        for spec in specs:
            if spec.is_unresolved:
                raise InvalidPackageSpec(f"Could not resolve package argument: {spec.name!r}")
        return specs, local_files

    # ── Install / purge ─────────────────────────────────────────

    def install(self, app: str, args: Sequence[str]) -> list[PackageSpec]:
        """Install ``args`` on behalf of ``app``.

        Always clears leftover staging first and tears staging down
        afterwards, whatever the outcome.

        Returns:
            The resolved, de-duplicated specs.
        """
        logger.info("Installing for %s: %s", app, " ".join(args))
        self.remove_local()
        try:
            specs, local_files = self.resolve(args)
            if not specs:
                raise InvalidPackageSpec(f"No packages given to install for {app}")
            staged = bool(local_files)
            if staged:
                self.add_local(local_files)
                self.refresh_local_index()
            specs = dedupe_specs(specs)
            self._install_specs(app, specs, staged)
            return specs
        finally:
            self.remove_local()

    def _install_specs(self, app: str, specs: list[PackageSpec], staged: bool) -> None:
        """Install step for flat-tracking backends."""

        def _attempt(attempt: int) -> None:
            if staged:
                self.update_indices(staged=True)
            self.wait_for_lock()
            result = self.runner.run(
                self.install_command(specs, staged), sudo=True, patterns=self.patterns,
            )
            self._raise_for_race(result, staged)
            self.check(result, f"Failed to install the packages for {app}")

        self._with_staging_retry(_attempt, app)
        self.tracking.write(app, (s.qualified_name for s in specs))

    @abstractmethod
    def install_command(self, specs: list[PackageSpec], staged: bool) -> list[str]:
        """Install command line (without sudo)."""

    def purge(self, app: str, is_update: bool = False) -> list[str]:
        """Remove the packages installed for ``app``.

        Args:
            app: Application identifier.
            is_update: Keep now-unneeded dependencies (the app is about
                to be reinstalled).

        Returns:
            Package names that were removed.
        """
        recorded = self.tracking.read(app)
        if not recorded:
            logger.debug("Nothing recorded for %s; nothing to purge", app)
            self.tracking.delete(app)
            return []

        installed = [name for name in recorded if self.package_installed(name)]
        if installed:
            self.wait_for_lock()
            result = self.runner.run(
                self.purge_command(installed, is_update), sudo=True, patterns=self.patterns,
            )
            self.check(result, f"Failed to remove the packages of {app}")
        else:
            logger.info("None of the packages recorded for %s are still installed", app)

        self.tracking.delete(app)
        return installed

    @abstractmethod
    def purge_command(self, names: list[str], is_update: bool) -> list[str]:
        """Removal command line (without sudo)."""

    # ── Queries ─────────────────────────────────────────────────

    @abstractmethod
    def package_installed(self, name: str) -> bool: ...

    @abstractmethod
    def package_available(self, name: str, arch: str | None = None) -> bool: ...

    @abstractmethod
    def package_dependencies(self, name: str) -> list[str]: ...

    @abstractmethod
    def package_installed_version(self, name: str) -> str: ...

    @abstractmethod
    def package_latest_version(self, name: str, repo: str | None = None) -> str: ...

    @abstractmethod
    def package_info(self, name: str) -> str: ...

    # ── External repositories ───────────────────────────────────

    @abstractmethod
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
        """Register a third-party repository (and its signing key).

        Returns:
            False if the repository was already configured.

        Raises:
            RepositoryError: the key or configuration could not be installed.
            DownloadFailure: the key could not be fetched.
        """

    @abstractmethod
    def has_external_repo(self, name: str) -> bool:
        """Whether ``name`` is configured as an external repository."""

    @abstractmethod
    def repo_in_use(self, name: str) -> bool:
        """Whether any installed package came from the ``name`` repository."""

    @abstractmethod
    def drop_external_repo(self, name: str) -> bool:
        """Remove the ``name`` repository and its key unconditionally.

        Returns:
            False if it was not configured.
        """

    def remove_external_repo(self, name: str, force: bool = False) -> bool:
        """Remove the ``name`` repository.

        Unless ``force`` is set the repository is kept while anything
        installed still comes from it.

        Returns:
            True if the repository was removed.
        """
        check_repo_fields(name=name)
        if force:
            return self.drop_external_repo(name)
        return self.remove_repo_if_unused(name)

    def remove_repo_if_unused(self, name: str, *, dry_run: bool = False) -> bool:
        """Remove the ``name`` repository if nothing installed comes from it.

        With ``dry_run`` only reports whether it could be removed.
        """
        if not self.has_external_repo(name):
            logger.debug("Repository %s is not configured", name)
            return False
        if self.repo_in_use(name):
            console.status(f"At least one installed package is keeping the {name} repository in use")
            return False
        if dry_run:
            console.status(f"The {name} repository is not in use and can be removed")
            return True
        console.status(f"Removing the {name} repository as it is not being used")
        return self.drop_external_repo(name)

    def fetch_repo_key(self, url: str) -> bytes:
        console.status(f"Downloading the repository key from {url}")
        return fetch_bytes(url, policy=self.settings.download_retry, sleep=self._sleep)

    def remove_system_files(self, *paths: Path) -> bool:
        """``sudo rm -f`` the paths that exist. Failures are logged."""
        existing = [str(p) for p in paths if p.exists() or p.is_symlink()]
        if not existing:
            return True
        result = self.runner.capture(["rm", "-f", *existing], sudo=True)
        if not result.exit_ok:
            logger.warning("Failed to remove %s: %s", ", ".join(existing), result.output.strip())
        return result.exit_ok

    def ensure_system_dir(self, path: Path) -> None:
        if path.is_dir():
            return
        result = self.runner.capture(["mkdir", "-p", str(path)], sudo=True)
        if not result.exit_ok:
            raise RepositoryError(f"Failed to create {path}", output=result.output)

    # ── Result handling ─────────────────────────────────────────

    def check(self, result: ProcessResult, headline: str) -> None:
        """Raise the matching error if ``result`` is a failure.

        Raises:
            BackendReportedError: error lines were found (even on exit 0).
            ExitCodeOnly: non-zero exit without a recognisable error line.
        """
        if result.ok:
            return
        if result.error_lines:
            raise BackendReportedError(
                headline, output=result.output, error_lines=result.error_lines,
            )
        raise ExitCodeOnly(
            f"{headline}: {result.command[0] if result.command else 'command'} exited with "
            f"status {result.returncode} but reported no error. This can be a sign of a "
            f"damaged package system.",
            returncode=result.returncode,
            output=result.output,
        )

    def _raise_for_race(self, result: ProcessResult, staged: bool) -> None:
        if staged and result.failed and not self.local_source_visible():
            raise TransientStagingRace(
                RACE_HINT, output=result.output, error_lines=result.error_lines,
            )

    def _with_staging_retry(self, attempt: Callable[[int], None], app: str) -> None:
        run_with_retry(
            attempt,
            self.settings.staging_retry,
            retry_on=(TransientStagingRace,),
            sleep=self._sleep,
            label=f"install for {app}",
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


def _split_release_flag(args: Sequence[str]) -> tuple[str | None, list[str]]:
    """Pull ``-t <release>`` out of the argument list."""
    release: str | None = None
    rest: list[str] = []
    it = iter(args)
    for arg in it:
        if arg == "-t":
            release = next(it, None)
            if not release:
                raise InvalidPackageSpec("-t needs a release name")
            continue
        rest.append(arg)
    return release, rest


def check_repo_fields(**fields: str) -> None:
    """Repository names, URIs and suites are single words.

    Raises:
        RepositoryError: a field contains whitespace.
    """
    for label, value in fields.items():
        if value and any(c.isspace() for c in value):
            raise RepositoryError(f"The repository {label} {value!r} contains whitespace")
