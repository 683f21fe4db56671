"""
Process runner: the single place package-manager commands are spawned.

Both output streams are drained concurrently by one thread each into a
shared, lock-protected buffer, so the combined text keeps arrival
order.  While draining, lines that are not noise for the backend's
pattern table are mirrored live to the matching terminal stream.

The environment for every command is built per invocation (locale
variables from Settings plus any call-specific overrides); the
process-wide ``os.environ`` is never modified.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
import time
from typing import IO, TextIO

from pkgbridge.core.execution.output_filter import PASSTHROUGH, PatternTable
from pkgbridge.core.models.process import ProcessResult

logger = logging.getLogger(__name__)


class ProcessRunner:
    """Runs external commands with a fixed per-invocation environment.

    Args:
        env: Variables added to the inherited environment of every command
            (normally ``Settings.subprocess_env()``).
        stdout: Live stream for mirrored stdout lines (default: sys.stdout).
        stderr: Live stream for mirrored stderr lines (default: sys.stderr).
    """

    def __init__(
        self,
        env: dict[str, str] | None = None,
        *,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self.env = dict(env or {})
        self._stdout = stdout
        self._stderr = stderr

    # ── Privilege ───────────────────────────────────────────────

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def argv(self, cmd: list[str], *, sudo: bool = False) -> list[str]:
        """Final argument vector, with ``sudo -E`` when elevation is needed."""
        if sudo and not self.is_root():
            return ["sudo", "-E", *cmd]
        return list(cmd)

    def _environment(self, extra: dict[str, str] | None) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        if extra:
            env.update(extra)
        return env

    # ── Execution ───────────────────────────────────────────────

    def run(
        self,
        cmd: list[str],
        *,
        sudo: bool = False,
        patterns: PatternTable = PASSTHROUGH,
        echo: bool = True,
        cwd: str | os.PathLike[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        """Run ``cmd`` to completion and classify its output.

        Args:
            cmd: Command without the sudo prefix.
            sudo: Run elevated (ignored when already root).
            patterns: Backend pattern table used for the live mirror and
                for error extraction.
            echo: Mirror filtered lines to the terminal while running.
            cwd: Working directory.
            env: Extra variables for this invocation only.

        Returns:
            ProcessResult. A missing executable yields return code 127.
        """
        argv = self.argv(cmd, sudo=sudo)
        logger.debug("Running: %s (cwd=%s)", " ".join(argv), cwd or ".")

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                errors="replace",
                cwd=cwd,
                env=self._environment(env),
            )
        except FileNotFoundError:
            logger.debug("Command not found: %s", argv[0])
            return ProcessResult(
                command=argv,
                returncode=127,
                output=f"{argv[0]}: command not found",
            )

        buffer: list[str] = []
        lock = threading.Lock()
        drains = [
            threading.Thread(
                target=self._drain,
                args=(proc.stdout, self._stdout or sys.stdout, buffer, lock, patterns, echo),
                name="drain-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._drain,
                args=(proc.stderr, self._stderr or sys.stderr, buffer, lock, patterns, echo),
                name="drain-stderr",
                daemon=True,
            ),
        ]
        for t in drains:
            t.start()
        for t in drains:
            t.join()
        returncode = proc.wait()

        output = "\n".join(buffer)
        result = ProcessResult(
            command=argv,
            returncode=returncode,
            output=output,
            error_lines=patterns.extract_errors(output),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        logger.debug(
            "Exit %d after %dms (%d error lines): %s",
            returncode, result.duration_ms, len(result.error_lines), argv[0],
        )
        return result

    def capture(
        self,
        cmd: list[str],
        *,
        sudo: bool = False,
        cwd: str | os.PathLike[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessResult:
        """Run quietly: nothing is mirrored to the terminal."""
        return self.run(cmd, sudo=sudo, echo=False, cwd=cwd, env=env)

    def run_interactive(self, cmd: list[str], *, sudo: bool = False) -> int:
        """Run attached to the terminal (e.g. a sudo password prompt)."""
        argv = self.argv(cmd, sudo=sudo)
        logger.debug("Running interactively: %s", " ".join(argv))
        try:
            return subprocess.run(argv, env=self._environment(None), check=False).returncode
        except FileNotFoundError:
            return 127

    @staticmethod
    def _drain(
        stream: IO[str],
        sink: TextIO,
        buffer: list[str],
        lock: threading.Lock,
        patterns: PatternTable,
        echo: bool,
    ) -> None:
        with stream:
            for raw in stream:
                line = raw.rstrip("\n")
                with lock:
                    buffer.append(line)
                    if not echo:
                        continue
                    shown = patterns.filter_line(line)
                    if shown is not None:
                        sink.write(shown + "\n")
                        sink.flush()
