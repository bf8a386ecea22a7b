"""Tests for the job status state machine."""

import pytest

from repoverify.errors import InvalidTransitionError
from repoverify.pipeline.state import check_transition, is_terminal
from repoverify.schemas import JobStatus


class TestCheckTransition:
    """Allowed and rejected status edges."""

    @pytest.mark.parametrize(
        "current,new",
        [
            (JobStatus.PENDING, JobStatus.PROCESSING),
            (JobStatus.PROCESSING, JobStatus.COMPLETED),
            (JobStatus.PROCESSING, JobStatus.FAILED),
            (JobStatus.FAILED, JobStatus.PENDING),
        ],
    )
    def test_allowed_edges(self, current, new):
        check_transition(current, new, attempts=1, max_attempts=3)

    @pytest.mark.parametrize(
        "current,new",
        [
            (JobStatus.PENDING, JobStatus.COMPLETED),
            (JobStatus.PENDING, JobStatus.FAILED),
            (JobStatus.COMPLETED, JobStatus.PENDING),
            (JobStatus.COMPLETED, JobStatus.PROCESSING),
            (JobStatus.FAILED, JobStatus.PROCESSING),
            (JobStatus.PROCESSING, JobStatus.PENDING),
        ],
    )
    def test_rejected_edges(self, current, new):
        with pytest.raises(InvalidTransitionError, match="Illegal transition"):
            check_transition(current, new, attempts=1, max_attempts=3)

    def test_retry_refused_once_attempts_are_exhausted(self):
        """
        Test failed -> pending is refused at the attempt ceiling.

        Arrange: Job failed on its third of three attempts
        Act: Attempt the retry edge
        Assert: InvalidTransitionError
        """
        with pytest.raises(InvalidTransitionError, match="Retry not allowed"):
            check_transition(JobStatus.FAILED, JobStatus.PENDING, attempts=3, max_attempts=3)

    def test_processing_beyond_the_ceiling_is_refused(self):
        with pytest.raises(InvalidTransitionError, match="exceeds the limit"):
            check_transition(JobStatus.PENDING, JobStatus.PROCESSING, attempts=4, max_attempts=3)

    def test_accepts_plain_strings(self):
        check_transition("pending", "processing", attempts=1, max_attempts=3)


class TestIsTerminal:
    def test_completed_is_always_terminal(self):
        assert is_terminal(JobStatus.COMPLETED, attempts=1, max_attempts=3)

    def test_failed_is_terminal_only_at_the_ceiling(self):
        assert not is_terminal(JobStatus.FAILED, attempts=2, max_attempts=3)
        assert is_terminal(JobStatus.FAILED, attempts=3, max_attempts=3)

    def test_in_flight_statuses_are_not_terminal(self):
        assert not is_terminal(JobStatus.PENDING, attempts=0, max_attempts=3)
        assert not is_terminal(JobStatus.PROCESSING, attempts=3, max_attempts=3)
