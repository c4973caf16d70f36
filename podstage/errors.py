"""
Error classes for podstage orchestration.

The taxonomy follows the points at which a build can fail:
- ConfigError: invalid or missing build/job configuration (fatal before the loop)
- SetupError: I/O during setup (decompression, copy, listing), fatal before any stage runs
- DispatchError: a worker unit failed or could not be constructed (first one wins)
- TerminatedError: the run stopped because of a signal or cancellation

Absent artifacts are never errors: the readiness gate absorbs them into
"not ready". Store lookups of missing objects raise ObjectNotFoundError,
which callers that poll treat the same way.
"""

from typing import Optional


class PodstageError(Exception):
    """Base exception for podstage."""
    pass


class ConfigError(PodstageError):
    """
    Configuration error - abort before orchestration starts.

    Examples:
    - Missing BUILD environment value
    - Unsupported build strategy
    - Context directory does not exist
    """
    pass


class JobSpecError(ConfigError):
    """Raised when a job specification cannot be read or is invalid."""
    pass


class SetupError(PodstageError):
    """Raised when a setup step (binary input, script copy, listing) fails."""
    pass


class DispatchError(PodstageError):
    """
    Raised when a worker unit fails or cannot be constructed.

    Dispatch errors are never retried. The first one reported triggers
    termination of the whole run.
    """

    def __init__(self, stage_id: str, message: str, cause: Optional[BaseException] = None):
        self.stage_id = stage_id
        self.cause = cause
        super().__init__(f"Stage '{stage_id}' failed: {message}")


class TerminatedError(PodstageError):
    """Raised when a run stopped on a signal or cancellation."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Orchestration terminated: {reason}")


class NoClientError(PodstageError):
    """Raised when the object-store backend is used before a client is attached."""

    def __init__(self, message: str = "no client configured"):
        super().__init__(message)


class ObjectNotFoundError(PodstageError, FileNotFoundError):
    """Raised when a named object does not exist in either store backend."""
    pass


class ArtifactNotFoundError(PodstageError, KeyError):
    """Raised when a build metadata record does not list an artifact."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
