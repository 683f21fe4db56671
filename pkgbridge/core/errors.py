"""
Error taxonomy for package operations.

Every failure a backend surfaces is a ``PackageError`` carrying a
human-readable message, the raw captured tool output and the lines the
output classifier flagged as errors.  The CLI renders all three.
"""

from __future__ import annotations

from collections.abc import Iterable


class PackageError(Exception):
    """Base class for all package-operation failures."""

    def __init__(
        self,
        message: str,
        *,
        output: str = "",
        error_lines: Iterable[str] = (),
    ) -> None:
        super().__init__(message)
        self.message = message
        self.output = output
        self.error_lines = list(error_lines)

    def __str__(self) -> str:
        return self.message


class PrivilegeDenied(PackageError):
    """Raised when root privileges cannot be obtained through sudo."""


class LockTimeout(PackageError):
    """Raised when a configured lock-wait timeout expires."""


class StagingFailure(PackageError):
    """Raised when a local file cannot be staged or the index cannot be built."""


class DownloadFailure(StagingFailure):
    """Raised when a package URL could not be retrieved."""


class TransientStagingRace(PackageError):
    """Raised when the staging repository vanished under a running install."""


class BackendReportedError(PackageError):
    """Raised when the package manager printed error lines."""


class ExitCodeOnly(PackageError):
    """Raised on a non-zero exit status with no recognisable error line."""

    def __init__(self, message: str, *, returncode: int, output: str = "") -> None:
        super().__init__(message, output=output)
        self.returncode = returncode


class InvalidPackageSpec(PackageError, ValueError):
    """Raised when an install argument cannot be resolved to a package name."""


class PackageNotFound(PackageError, LookupError):
    """Raised by queries when the package manager does not know the package."""


class QueryFailed(PackageError):
    """Raised when a read-only query could not be answered."""


class RepositoryError(PackageError):
    """Raised when an external repository cannot be added or removed."""
