"""Job status state machine.

    pending ──► processing ──► completed
                    │
                    └────────► failed ──► pending   (only while attempts < max)
"""

from __future__ import annotations

from repoverify.errors import InvalidTransitionError
from repoverify.schemas import JobStatus


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
}


def is_terminal(status: JobStatus, attempts: int, max_attempts: int) -> bool:
    """Whether a job in ``status`` can never move again."""
    if status == JobStatus.COMPLETED:
        return True
    return status == JobStatus.FAILED and attempts >= max_attempts


def check_transition(
    current: JobStatus,
    new: JobStatus,
    attempts: int,
    max_attempts: int,
) -> None:
    """Raise InvalidTransitionError unless ``current -> new`` is allowed.

    Args:
        current: Status currently persisted
        new: Status about to be written
        attempts: Attempts consumed so far (after the write, for processing)
        max_attempts: Retry ceiling
    """
    current = JobStatus(current)
    new = JobStatus(new)

    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Illegal transition {current.value} -> {new.value}")

    if current == JobStatus.FAILED and attempts >= max_attempts:
        raise InvalidTransitionError(
            f"Retry not allowed: {attempts} of {max_attempts} attempts used"
        )

    if new == JobStatus.PROCESSING and attempts > max_attempts:
        raise InvalidTransitionError(
            f"Attempt {attempts} exceeds the limit of {max_attempts}"
        )
