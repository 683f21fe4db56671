"""
Lock arbiter: wait until the package database has no other writer.

Called before every command that mutates the package database.  The
wait has three layers:

1. Privilege pre-check: ``sudo -n true``, else a single interactive
   ``sudo -v`` prompt.  Failure raises ``PrivilegeDenied``.
2. Lock-file polling: ``fuser`` on each of the backend's lock files,
   sleeping ``poll_interval`` between polls until none is held.
3. Canary command (optional per backend): a mutating command that is
   guaranteed to fail, repeated while its output says the database is
   locked.  This catches locks held by index updates that the lock
   files do not show.

A timer thread prints a one-time "waiting" notice if the wait lasts
longer than ``notice_delay``, and "Done" afterwards only if the notice
was shown.  The wait is unbounded unless ``LockWaitPolicy.timeout`` is
set, in which case ``LockTimeout`` is raised.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from pkgbridge.core.errors import LockTimeout, PrivilegeDenied
from pkgbridge.core.execution.process_runner import ProcessRunner
from pkgbridge.core.models.settings import LockWaitPolicy
from pkgbridge.core.observability import console

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockProfile:
    """Where a backend keeps its locks and how to detect hidden ones."""

    label: str
    lock_files: tuple[str, ...]
    canary: tuple[str, ...] = ()
    canary_markers: tuple[str, ...] = ()

    def canary_reports_lock(self, output: str) -> bool:
        text = output.lower()
        return any(marker.lower() in text for marker in self.canary_markers)


class _WaitNotice:
    """One-shot delayed "please wait" message."""

    def __init__(self, label: str, delay: float) -> None:
        self._label = label
        self._shown = threading.Event()
        self._timer = threading.Timer(delay, self._show)
        self._timer.daemon = True

    def _show(self) -> None:
        console.status(f"Waiting until {self._label} locks are released... ", nl=False)
        self._shown.set()

    def start(self) -> None:
        self._timer.start()

    def stop(self) -> None:
        self._timer.cancel()
        self._timer.join()
        if self._shown.is_set():
            console.status("Done")

    @property
    def shown(self) -> bool:
        return self._shown.is_set()


class LockArbiter:
    """Blocks until a backend's package database is free."""

    def __init__(
        self,
        runner: ProcessRunner,
        profile: LockProfile,
        policy: LockWaitPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runner = runner
        self.profile = profile
        self.policy = policy or LockWaitPolicy()
        self._sleep = sleep
        self._clock = clock
        self._fuser_missing_logged = False

    def wait(self) -> None:
        """Return once no lock is held.

        Raises:
            PrivilegeDenied: sudo could not be obtained.
            LockTimeout: the configured timeout expired.
        """
        self.ensure_privileges()

        deadline = None
        if self.policy.timeout is not None:
            deadline = self._clock() + self.policy.timeout

        notice = _WaitNotice(self.profile.label, self.policy.notice_delay)
        notice.start()
        try:
            while self._lock_file_held():
                self._pause(deadline)
            if self.profile.canary:
                while self._canary_locked():
                    self._pause(deadline)
        finally:
            notice.stop()
        logger.debug("%s database lock is free", self.profile.label)

    def ensure_privileges(self) -> None:
        """Make sure elevated commands can run, prompting at most once."""
        if self.runner.is_root():
            return
        if self.runner.capture(["sudo", "-n", "true"]).exit_ok:
            return
        console.status("Administrator privileges are required; sudo may ask for your password.")
        if self.runner.run_interactive(["sudo", "-v"]) != 0:
            raise PrivilegeDenied("Unable to obtain root privileges through sudo.")

    # ── Checks ──────────────────────────────────────────────────

    def _lock_file_held(self) -> bool:
        if not self.profile.lock_files:
            return False
        if shutil.which("fuser") is None:
            if not self._fuser_missing_logged:
                logger.warning("fuser not found; skipping lock-file probing")
                self._fuser_missing_logged = True
            return False
        for path in self.profile.lock_files:
            # fuser exits 0 when some process has the file open
            if self.runner.capture(["fuser", path], sudo=True).exit_ok:
                logger.debug("Lock file in use: %s", path)
                return True
        return False

    def _canary_locked(self) -> bool:
        result = self.runner.capture(list(self.profile.canary), sudo=True)
        locked = self.profile.canary_reports_lock(result.output)
        if locked:
            logger.debug("Canary reports %s database locked", self.profile.label)
        return locked

    def _pause(self, deadline: float | None) -> None:
        if deadline is not None and self._clock() >= deadline:
            raise LockTimeout(
                f"Gave up after {self.policy.timeout:g}s waiting for the "
                f"{self.profile.label} package database lock."
            )
        self._sleep(self.policy.poll_interval)
