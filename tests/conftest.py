"""
Shared test fixtures and configuration.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable
from pathlib import Path

import pytest

from pkgbridge.core.execution.output_filter import PASSTHROUGH, PatternTable
from pkgbridge.core.execution.process_runner import ProcessRunner
from pkgbridge.core.models.process import ProcessResult
from pkgbridge.core.models.settings import LockWaitPolicy, RetryPolicy, Settings

# (returncode, output) or None to fall through to the default
Effect = Callable[[list[str], Path | None], "tuple[int, str] | None"]


class ScriptedRunner(ProcessRunner):
    """ProcessRunner double: answers commands from rules, records them.

    Rules match on a command prefix; the most recently added matching
    rule wins.  Unmatched commands succeed with empty output, except
    ``cp SRC DEST`` which really copies so system-file writes land in
    the sandbox.
    """

    def __init__(self, *, root: bool = True) -> None:
        super().__init__({"LANG": "C.UTF-8"})
        self.root = root
        self.calls: list[list[str]] = []
        self.sudo_calls: list[list[str]] = []
        self.interactive: list[list[str]] = []
        self.interactive_rc = 0
        self._rules: list[tuple[tuple[str, ...], Effect]] = []

    def on(self, *prefix: str, rc: int = 0, output: str = "", effect: Effect | None = None) -> None:
        if effect is None:
            def effect(cmd, cwd, _rc=rc, _out=output):
                return _rc, _out
        self._rules.append((prefix, effect))

    def is_root(self) -> bool:
        return self.root

    def run(
        self,
        cmd,
        *,
        sudo=False,
        patterns: PatternTable = PASSTHROUGH,
        echo=True,
        cwd=None,
        env=None,
    ) -> ProcessResult:
        cmd = list(cmd)
        self.calls.append(cmd)
        if sudo:
            self.sudo_calls.append(cmd)
        rc, output = self._answer(cmd, Path(cwd) if cwd else None)
        return ProcessResult(
            command=self.argv(cmd, sudo=sudo),
            returncode=rc,
            output=output,
            error_lines=patterns.extract_errors(output),
        )

    def run_interactive(self, cmd, *, sudo=False) -> int:
        self.interactive.append(list(cmd))
        return self.interactive_rc

    def _answer(self, cmd: list[str], cwd: Path | None) -> tuple[int, str]:
        for prefix, effect in reversed(self._rules):
            if tuple(cmd[: len(prefix)]) == prefix:
                answer = effect(cmd, cwd)
                if answer is not None:
                    return answer
        if cmd[0] == "cp" and len(cmd) == 3:
            Path(cmd[2]).parent.mkdir(parents=True, exist_ok=True)
            shutil.copy(cmd[1], cmd[2])
        return 0, ""

    def commands(self, program: str) -> list[list[str]]:
        """Recorded commands whose executable is ``program``."""
        return [c for c in self.calls if c and c[0] == program]


class FakeLock:
    """Stands in for LockArbiter; counts waits."""

    def __init__(self) -> None:
        self.waits = 0

    def wait(self) -> None:
        self.waits += 1


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def fake_lock() -> FakeLock:
    return FakeLock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every system path inside a temporary sandbox."""
    etc = tmp_path / "etc"
    etc.mkdir()
    return Settings(
        data_dir=tmp_path / "data",
        staging_root=tmp_path / "staging",
        download_dir=tmp_path / "downloads",
        apt_sources_list=etc / "sources.list",
        apt_lists_dir=tmp_path / "apt-lists",
        apt_sources_dir=etc / "sources.list.d",
        apt_keyring_dir=tmp_path / "keyrings",
        dpkg_status_file=tmp_path / "dpkg-status",
        apk_repositories=etc / "apk-repositories",
        apk_keys_dir=etc / "apk-keys",
        pacman_conf=etc / "pacman.conf",
        pacman_sync_dir=tmp_path / "pacman-sync",
        lock=LockWaitPolicy(poll_interval=0.01, notice_delay=60),
        staging_retry=RetryPolicy(max_attempts=3),
        download_retry=RetryPolicy(max_attempts=2),
    )


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    def _sleep(seconds: float) -> None:
        return None
    return _sleep
