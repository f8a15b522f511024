"""Exception hierarchy for the document runner.

One exception per failure mode of a Run. Process-level failures end the
Run with a failure response; persistence failures are downgraded to
warnings by the runner.
"""
from __future__ import annotations


class DocpilotError(Exception):
    """Base exception for all runner errors."""

    @property
    def kind(self) -> str:
        """Name reported in ``RunResponse.error_kind``."""
        return type(self).__name__


class ConfigurationError(DocpilotError):
    """Executable path is unset or unusable. No Run is attempted."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SpawnError(DocpilotError):
    """The external process could not be started."""
    def __init__(self, executable: str, reason: str):
        self.executable = executable
        self.reason = reason
        super().__init__(f"Failed to spawn {executable}: {reason}")


class RunTimeoutError(DocpilotError):
    """The Run exceeded its wall-clock deadline and was terminated."""
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timed out after {timeout_seconds:g} seconds; process terminated"
        )

    @property
    def kind(self) -> str:
        return "TimeoutError"


class RunCancelledError(DocpilotError):
    """The Run was cancelled by the caller."""
    def __init__(self) -> None:
        super().__init__("Process terminated by user")


class ProcessExitError(DocpilotError):
    """The external process exited with a non-zero code."""
    def __init__(self, returncode: int | None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip()
        message = f"Claude Code exited with code {returncode}"
        if detail:
            message = f"{message}. {detail}"
        super().__init__(message)


class PersistenceError(DocpilotError):
    """A session or history file could not be written."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot persist {path}: {reason}")


class RunInProgressError(DocpilotError):
    """A Run is already active for this document."""
    def __init__(self, document_path: str):
        self.document_path = document_path
        super().__init__(f"A run is already in progress for {document_path}")


class DecodeWarning(UserWarning):
    """A stdout line could not be decoded as a protocol record.

    Never raised: used as a tag on raw passthrough notifications so the
    caller can tell them apart from authoritative output.
    """
