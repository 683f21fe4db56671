"""
ProcessResult: the outcome of one external command.

Lives only as long as the operation that analyses it.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from pkgbridge.core.execution.output_filter import strip_ansi


class ProcessResult(BaseModel):
    """Exit status, combined output and classified error lines."""

    command: list[str] = Field(default_factory=list)
    returncode: int = 0
    output: str = ""                  # stdout+stderr in arrival order
    error_lines: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def exit_ok(self) -> bool:
        """Whether the process exited with status 0."""
        return self.returncode == 0

    @property
    def ok(self) -> bool:
        """Exit 0 AND no error lines: some tools exit 0 after failing."""
        return self.returncode == 0 and not self.error_lines

    @property
    def failed(self) -> bool:
        return not self.ok

    @property
    def clean_output(self) -> str:
        """Output with terminal colour sequences removed."""
        return strip_ansi(self.output)

    @property
    def lines(self) -> list[str]:
        return self.clean_output.splitlines()
