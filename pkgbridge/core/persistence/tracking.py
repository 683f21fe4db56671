"""
Installation tracking store: which packages were installed for an app.

One flat text file per application under ``<data_dir>/installed-packages``,
one package name per line, sorted and de-duplicated.  A missing or empty
file means "nothing to purge".  Writes are atomic (temp file + rename)
so a crash never leaves a half-written record behind.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path

logger = logging.getLogger(__name__)


class TrackingStore:
    """Per-application package lists stored as flat files."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, app: str) -> Path:
        if not app or "/" in app or app in (".", ".."):
            raise ValueError(f"Invalid application name: {app!r}")
        return self.directory / app

    def exists(self, app: str) -> bool:
        return self.path_for(app).is_file()

    def read(self, app: str) -> list[str]:
        """Package names recorded for ``app`` (empty if there is no record)."""
        path = self.path_for(app)
        if not path.is_file():
            return []
        text = path.read_text(encoding="utf-8")
        return [line.strip() for line in text.splitlines() if line.strip()]

    def write(self, app: str, packages: Iterable[str]) -> list[str]:
        """Record ``packages`` for ``app``, sorted and de-duplicated.

        Returns:
            The list that was written.
        """
        names = sorted({p.strip() for p in packages if p.strip()})
        path = self.path_for(app)
        path.parent.mkdir(parents=True, exist_ok=True)

        content = "".join(f"{name}\n" for name in names)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{app}_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            tmp.replace(path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
        logger.debug("Tracking record for %s: %s", app, ", ".join(names))
        return names

    def delete(self, app: str) -> None:
        """Remove the record; a missing record is not an error."""
        self.path_for(app).unlink(missing_ok=True)
        logger.debug("Tracking record for %s removed", app)
