"""
Download package files named by URL in install arguments.

The file is written to a temporary name beside the destination and
renamed into place, so a half-finished download is never staged.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from pathlib import Path
from urllib.parse import urlparse

from pkgbridge import __version__
from pkgbridge.core.errors import DownloadFailure
from pkgbridge.core.models.settings import RetryPolicy
from pkgbridge.core.reliability.retry import run_with_retry

logger = logging.getLogger(__name__)

_TIMEOUT = 60


def _request(url: str) -> urllib.request.Request:
    return urllib.request.Request(url, headers={"User-Agent": f"pkgbridge/{__version__}"})


def filename_for_url(url: str, suffix: str) -> str:
    """Local file name for a package URL.

    Drops a trailing ``/download`` (SourceForge style links) and appends
    ``suffix`` when the URL does not already end with it.
    """
    path = urlparse(url).path.rstrip("/")
    if path.endswith("/download"):
        path = path[: -len("/download")]
    name = os.path.basename(path) or "package"
    if not name.endswith(suffix):
        name += suffix
    return name


def download_package(
    url: str,
    dest_dir: Path,
    *,
    suffix: str,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Path:
    """Download ``url`` into ``dest_dir``.

    Returns:
        Path of the downloaded file.

    Raises:
        DownloadFailure: after the policy's attempts are exhausted.
    """
    policy = policy or RetryPolicy(max_attempts=3, delay=1.0, backoff=1.0)
    dest = dest_dir / filename_for_url(url, suffix)
    dest_dir.mkdir(parents=True, exist_ok=True)

    def _attempt(attempt: int) -> Path:
        logger.debug("Downloading %s -> %s (attempt %d)", url, dest, attempt)
        req = _request(url)
        fd, tmp = tempfile.mkstemp(dir=dest_dir, prefix=".download_", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as out, urllib.request.urlopen(req, timeout=_TIMEOUT) as resp:
                shutil.copyfileobj(resp, out)
            os.replace(tmp, dest)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return dest

    try:
        return run_with_retry(
            _attempt,
            policy,
            retry_on=(urllib.error.URLError, OSError),
            sleep=sleep,
            label=f"download of {url}",
        )
    except (urllib.error.URLError, OSError) as e:
        raise DownloadFailure(
            f"Failed to download {url} after {policy.max_attempts} attempts: {e}",
        ) from e


def fetch_bytes(
    url: str,
    *,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> bytes:
    """Fetch a small resource, such as a repository signing key, into memory.

    Raises:
        DownloadFailure: after the policy's attempts are exhausted.
    """
    policy = policy or RetryPolicy(max_attempts=3, delay=1.0, backoff=1.0)

    def _attempt(attempt: int) -> bytes:
        logger.debug("Fetching %s (attempt %d)", url, attempt)
        with urllib.request.urlopen(_request(url), timeout=_TIMEOUT) as resp:
            return resp.read()

    try:
        return run_with_retry(
            _attempt,
            policy,
            retry_on=(urllib.error.URLError, OSError),
            sleep=sleep,
            label=f"fetch of {url}",
        )
    except (urllib.error.URLError, OSError) as e:
        raise DownloadFailure(f"Failed to fetch {url}: {e}") from e
