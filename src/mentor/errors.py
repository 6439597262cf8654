"""Application-level exception types for Mentor."""

from __future__ import annotations


class MentorError(Exception):
    """Base exception for Mentor."""


class ConfigurationError(MentorError):
    """Raised when settings or prompt files are unusable."""


class BackendError(MentorError):
    """Base exception for one failed backend invocation."""


class SpawnError(BackendError):
    """Raised when the backend executable cannot be started."""


class BackendTimeoutError(BackendError):
    """Raised when an invocation exceeds its deadline and is terminated."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"backend timed out after {timeout:g}s")
        self.timeout = timeout


class BackendIOError(BackendError):
    """Raised when the pipe to the backend is reset mid-invocation."""


class BackendExitError(BackendError):
    """Raised when the backend exits non-zero."""

    def __init__(self, returncode: int, stderr: str) -> None:
        super().__init__(f"backend exited with code {returncode}: {stderr.strip()}")
        self.returncode = returncode
        self.stderr = stderr


class BrokerOverloadedError(MentorError):
    """Raised when the request queue is at its configured depth."""


class BrokerClosedError(MentorError):
    """Raised for requests submitted to, or still queued in, a closed broker."""
