"""Failure taxonomy for the verification pipeline.

Every per-job failure is one of these classes. ``retryable`` decides whether
the dispatcher consumes an attempt and schedules a retry; a non-zero exit of
the command under test is an outcome, not an exception, and never lands here.
"""

from __future__ import annotations


class VerificationError(Exception):
    """Base class for pipeline failures."""

    retryable: bool = False
    reason_prefix: str = ""

    def __init__(self, message: str, logs: str = ""):
        super().__init__(message)
        self.message = message
        self.logs = logs

    @property
    def reason(self) -> str:
        """Text stored in the job's ``reason`` column."""
        if self.reason_prefix:
            return f"{self.reason_prefix}: {self.message}"
        return self.message


class TransientInfraError(VerificationError):
    """Broker or other shared infrastructure is unreachable.

    Retried at the connection level; never consumes a job attempt.
    """

    retryable = True


class FetchError(VerificationError):
    """Cloning the repository failed (auth, 404, network)."""

    retryable = True
    reason_prefix = "Failed to fetch repository"


class ResolutionError(VerificationError):
    """The instruction resolver failed; always soft-failed."""


class SandboxCreationError(VerificationError):
    """The isolation backend could not create or start an environment."""

    retryable = True
    reason_prefix = "Sandbox error"


class ExecutionTimeoutError(VerificationError):
    """The command or the whole attempt exceeded its deadline."""

    retryable = True
    reason_prefix = "timeout"


class PersistenceError(VerificationError):
    """The job store rejected or could not accept a write."""

    retryable = True


class InvalidTransitionError(VerificationError):
    """A status write would violate the job state machine."""


class JobNotFoundError(PersistenceError):
    """The job row does not exist (yet)."""
