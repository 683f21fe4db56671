"""
Settings: engine configuration loaded from YAML and the environment.

The system paths are fields (not constants) so the whole engine can be
pointed at a sandbox directory tree in tests.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field


def _default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "pkgbridge"


class RetryPolicy(BaseModel):
    """Bounded retry: how many attempts and how long to wait between them.

    The delay before attempt ``n + 1`` is ``delay * backoff ** (n - 1)``,
    capped at ``max_delay``.  ``backoff=1`` gives a fixed interval.
    """

    max_attempts: int = Field(default=5, ge=1)
    delay: float = Field(default=0.0, ge=0)
    backoff: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Seconds to sleep after failed attempt number ``attempt`` (1-based)."""
        if attempt < 1 or self.delay == 0:
            return 0.0
        return min(self.delay * (self.backoff ** (attempt - 1)), self.max_delay)


class LockWaitPolicy(BaseModel):
    """How the lock arbiter polls for a free package database."""

    poll_interval: float = Field(default=1.0, gt=0)
    notice_delay: float = Field(default=5.0, ge=0)
    timeout: float | None = Field(default=None, gt=0)   # None = wait forever


class Settings(BaseModel):
    """Top-level engine settings."""

    data_dir: Path = Field(default_factory=_default_data_dir)
    staging_root: Path = Path("/tmp/pkgbridge-local-packages")
    download_dir: Path = Path("/tmp")
    locale: str = "C.UTF-8"
    backend: str | None = None       # force a backend instead of probing
    repo_name: str = "pkgbridge-local"

    lock: LockWaitPolicy = Field(default_factory=LockWaitPolicy)
    staging_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    download_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=3, delay=1.0, backoff=1.0),
    )

    # ── System paths ────────────────────────────────────────────
    apt_sources_list: Path = Path("/etc/apt/sources.list")
    apt_lists_dir: Path = Path("/var/lib/apt/lists")
    apt_sources_dir: Path = Path("/etc/apt/sources.list.d")
    apt_keyring_dir: Path = Path("/usr/share/keyrings")
    dpkg_status_file: Path = Path("/var/lib/dpkg/status")
    apk_repositories: Path = Path("/etc/apk/repositories")
    apk_keys_dir: Path = Path("/etc/apk/keys")
    pacman_conf: Path = Path("/etc/pacman.conf")
    pacman_sync_dir: Path = Path("/var/lib/pacman/sync")

    apps_dir: Path | None = None

    @property
    def tracking_dir(self) -> Path:
        """Directory holding one flat tracking file per application."""
        return self.data_dir / "installed-packages"

    @property
    def status_dir(self) -> Path:
        return self.data_dir / "status"

    def subprocess_env(self) -> dict[str, str]:
        """Locale variables passed to every package-manager command."""
        return {"LANG": self.locale, "LC_ALL": self.locale, "LANGUAGE": "C"}
