"""
Null backend: the full contract with no package manager behind it.

Selected on hosts where no supported package manager is found, so
callers always get a working backend object.  Every mutating operation
succeeds without doing anything; queries report "not installed" and
"not available".  Calls are recorded in ``call_log`` for tests.
"""

from __future__ import annotations

import logging
import platform
from collections.abc import Sequence
from pathlib import Path

from pkgbridge.backends.base import PackageBackend
from pkgbridge.core.errors import PackageNotFound
from pkgbridge.core.execution.lock_wait import LockProfile
from pkgbridge.core.execution.output_filter import PatternTable
from pkgbridge.core.models.package import PackageSpec

logger = logging.getLogger(__name__)


class NullBackend(PackageBackend):
    """No-op backend for unsupported hosts."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.call_log: list[tuple[str, tuple]] = []

    @property
    def name(self) -> str:
        return "null"

    def is_available(self) -> bool:
        return True

    def default_patterns(self) -> PatternTable:
        return PatternTable(backend="null", revision="none")

    def lock_profile(self) -> LockProfile:
        return LockProfile(label="null", lock_files=())

    def detect_architecture(self) -> str:
        return platform.machine() or "unknown"

    def _record(self, operation: str, *args) -> None:
        self.call_log.append((operation, args))
        logger.debug("null backend: %s%r", operation, args)

    # ── Mutations (no-ops) ──────────────────────────────────────

    def add_local(self, files: Sequence[Path]) -> list[Path]:
        self._record("add_local", *files)
        return []

    def refresh_local_index(self) -> None:
        self._record("refresh_local_index")

    def remove_local(self) -> None:
        self._record("remove_local")

    def wait_for_lock(self) -> None:
        self._record("wait_for_lock")

    def update_indices(self, *, staged: bool = False) -> None:
        self._record("update_indices")

    def install(self, app: str, args: Sequence[str]) -> list[PackageSpec]:
        self._record("install", app, *args)
        return []

    def purge(self, app: str, is_update: bool = False) -> list[str]:
        self._record("purge", app, is_update)
        return []

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
        self._record("add_external_repo", name, uris)
        return False

    def has_external_repo(self, name: str) -> bool:
        return False

    def repo_in_use(self, name: str) -> bool:
        return False

    def drop_external_repo(self, name: str) -> bool:
        self._record("drop_external_repo", name)
        return False

    def install_command(self, specs: list[PackageSpec], staged: bool) -> list[str]:
        return []

    def purge_command(self, names: list[str], is_update: bool) -> list[str]:
        return []

    def inspect_local_file(self, path: Path) -> PackageSpec:
        return PackageSpec(name=path.stem)

    def expand_wildcard(self, pattern: str) -> list[PackageSpec]:
        return []

    # ── Queries ─────────────────────────────────────────────────

    def package_installed(self, name: str) -> bool:
        return False

    def package_available(self, name: str, arch: str | None = None) -> bool:
        return False

    def package_dependencies(self, name: str) -> list[str]:
        return []

    def package_installed_version(self, name: str) -> str:
        raise PackageNotFound(f"{name} is not installed")

    def package_latest_version(self, name: str, repo: str | None = None) -> str:
        raise PackageNotFound(f"{name} is not available")

    def package_info(self, name: str) -> str:
        raise PackageNotFound(f"{name} is not available")
