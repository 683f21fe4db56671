"""
Local repository staging directory.

Package files passed to an install as paths or URLs are moved into
``<staging_root>/<arch>``, indexed by the backend, and registered as a
trusted source for the duration of the install.  Only one staging tree
exists per host: every install starts by removing whatever a previous
(crashed or concurrent) install left behind.

This module owns the filesystem part.  Index generation and source
registration are backend specific and live with each backend.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from pkgbridge.core.errors import StagingFailure
from pkgbridge.core.execution.process_runner import ProcessRunner

logger = logging.getLogger(__name__)


class LocalRepository:
    """The architecture-scoped staging directory of one install."""

    def __init__(self, root: Path, arch: str) -> None:
        self.root = root
        self.arch = arch

    @property
    def directory(self) -> Path:
        return self.root / self.arch

    def exists(self) -> bool:
        return self.directory.is_dir()

    def files(self, *patterns: str) -> list[Path]:
        """Staged files matching any glob pattern, sorted by name."""
        if not self.exists():
            return []
        found: set[Path] = set()
        for pattern in patterns or ("*",):
            found.update(p for p in self.directory.glob(pattern) if p.is_file())
        return sorted(found)

    def add(self, files: Iterable[Path]) -> list[Path]:
        """Move ``files`` into the staging directory.

        Every source is checked before anything is copied, so a typo in
        the last argument does not leave a half-populated repository.

        Returns:
            Paths of the staged copies.

        Raises:
            StagingFailure: a source is missing or cannot be copied.
        """
        sources = [Path(f) for f in files]
        missing = [str(s) for s in sources if not s.is_file()]
        if missing:
            raise StagingFailure(f"Local package file(s) not found: {', '.join(missing)}")

        self.directory.mkdir(parents=True, exist_ok=True)
        staged: list[Path] = []
        for src in sources:
            dest = self.directory / src.name
            try:
                shutil.copy2(src, dest)
            except OSError as e:
                raise StagingFailure(f"Failed to copy {src} to {dest}: {e}") from e
            try:
                src.unlink()
            except OSError as e:
                logger.warning("Staged %s but could not remove the original: %s", src, e)
            staged.append(dest)
            logger.debug("Staged %s", dest)
        return staged

    def remove_all(self, runner: ProcessRunner | None = None) -> bool:
        """Delete the whole staging tree (all architectures).

        Already gone counts as success.  If a plain delete is refused and
        a runner is given, the delete is retried with sudo.  Failure is
        only logged.

        Returns:
            True if the tree no longer exists.
        """
        if not self.root.exists():
            return True
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            return True
        except OSError as e:
            if runner is None:
                logger.warning("Failed to remove staging directory %s: %s", self.root, e)
                return False
            logger.debug("rmtree %s failed (%s); retrying with sudo", self.root, e)
            result = runner.capture(["rm", "-rf", str(self.root)], sudo=True)
            if not result.exit_ok:
                logger.warning(
                    "Failed to remove staging directory %s: %s", self.root, result.output.strip(),
                )
                return False
        logger.debug("Removed staging directory %s", self.root)
        return True
