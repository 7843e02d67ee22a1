"""Custom exceptions for crashpack.

Only ``SetupFailure`` and ``UsageError`` (and subclasses) abort a run. The
others are raised by diagnostic actions and absorbed by the orchestrator into a
per-diagnostic outcome.
"""

from typing import List, Optional


class CrashpackError(Exception):
    """Base exception for all crashpack errors."""

    pass


class PreconditionUnmet(CrashpackError):
    """The environment or policy forbids a diagnostic. Recorded as Skipped."""

    pass


class ResourceExhausted(PreconditionUnmet):
    """Not enough free disk for a dump."""

    def __init__(self, message: str, required_mb: int = 0, available_mb: int = 0):
        """
        Initialize resource error.

        Args:
            message: Error message
            required_mb: Estimated size of the dump in MB
            available_mb: Free space on the staging filesystem in MB
        """
        super().__init__(message)
        self.required_mb = required_mb
        self.available_mb = available_mb


class ExternalToolFailure(CrashpackError):
    """A delegated tool exited non-zero or produced unusable output."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
        partial_artifacts: Optional[List] = None,
    ):
        """
        Initialize tool failure.

        Args:
            message: Error message
            returncode: Exit status of the tool, None if it never ran
            stderr: Captured standard error
            partial_artifacts: Files the tool managed to write before failing
        """
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
        self.partial_artifacts = list(partial_artifacts or [])


class TransientToolFailure(ExternalToolFailure):
    """An attach race or contention; worth retrying."""

    pass


class SetupFailure(CrashpackError):
    """Staging directory or archive could not be written. Fatal."""

    pass


class UsageError(CrashpackError):
    """Bad target reference or wrong user relationship. Fatal before collection."""

    pass


class ConsentDeclined(UsageError):
    """The operator declined to continue with skipped diagnostics."""

    pass
