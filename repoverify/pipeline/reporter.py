"""Result reporter.

All job writes made by workers and the watchdog go through here. Transient
persistence failures are retried with a doubling delay; a write that still
fails is parked, together with whatever was meant to follow it, and replayed
by ``flush`` on the next watchdog sweep. Computed results are never dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from repoverify.errors import (
    InvalidTransitionError,
    PersistenceError,
    TransientInfraError,
    VerificationError,
)
from repoverify.pipeline.store import JobStore
from repoverify.schemas import JobOutcome, JobStatus


logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[None]]


class ResultReporter:
    """Retries, orders and parks job store writes."""

    def __init__(
        self,
        store: JobStore,
        retry_attempts: int = 5,
        retry_delay: float = 0.5,
    ):
        self.store = store
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._parked: list[tuple[str, list[Action]]] = []

    @property
    def parked_jobs(self) -> list[str]:
        return [job_id for job_id, _ in self._parked]

    async def _with_retry(self, action: Action) -> None:
        delay = self.retry_delay
        for attempt in range(1, self.retry_attempts + 1):
            try:
                await action()
                return
            except PersistenceError as e:
                if attempt == self.retry_attempts:
                    raise
                logger.warning(
                    f"Persistence failed ({attempt}/{self.retry_attempts}), retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)
                delay *= 2

    async def _run_or_park(self, job_id: str, actions: list[Action]) -> bool:
        for index, action in enumerate(actions):
            try:
                await self._with_retry(action)
            except PersistenceError as e:
                logger.error(f"[{job_id}] Parking {len(actions) - index} write(s): {e}")
                self._parked.append((job_id, actions[index:]))
                return False
        return True

    async def mark_processing(self, job_id: str, attempt: int) -> None:
        """Status-only write when a worker takes the job.

        Raises:
            PersistenceError: The store stayed unavailable
            InvalidTransitionError: The job is not pending (stale message)
        """
        await self._with_retry(
            lambda: self.store.update_job_status(job_id, JobStatus.PROCESSING, attempts=attempt)
        )

    async def record_outcome(self, job_id: str, outcome: JobOutcome) -> bool:
        """Write the terminal outcome of a job.

        Returns:
            True if committed now, False if parked for a later flush
        """
        committed = await self._run_or_park(
            job_id, [lambda: self.store.update_job_result(job_id, outcome)]
        )
        if committed:
            logger.info(f"[{job_id}] Recorded {outcome.status.value}: {outcome.reason}")
        return committed

    async def record_retry(
        self,
        job_id: str,
        outcome: JobOutcome,
        on_committed: Action | None = None,
    ) -> bool:
        """Record a retryable attempt failure, then move the job back to pending.

        ``on_committed`` (re-enqueueing the next attempt) only runs once both
        writes are in, so a retry can never race its own bookkeeping. If it
        fails with the broker down it is parked and replayed by ``flush``.

        Returns:
            True once the follow-up ran, False if anything was parked
        """
        actions: list[Action] = [
            lambda: self.store.update_job_result(job_id, outcome),
            lambda: self.store.update_job_status(job_id, JobStatus.PENDING),
        ]
        committed = await self._run_or_park(job_id, actions)
        if not committed:
            if on_committed is not None:
                self._parked[-1][1].append(on_committed)
            return False

        if on_committed is not None:
            try:
                await on_committed()
            except TransientInfraError as e:
                logger.error(f"[{job_id}] Parking re-enqueue: {e}")
                self._parked.append((job_id, [on_committed]))
                return False
        return True

    async def flush(self) -> int:
        """Replay parked writes in order.

        Returns:
            Number of jobs whose parked writes all went through
        """
        parked, self._parked = self._parked, []
        flushed = 0
        for job_id, actions in parked:
            remaining = list(actions)
            while remaining:
                try:
                    await remaining[0]()
                except InvalidTransitionError as e:
                    logger.error(f"[{job_id}] Dropping parked writes, job moved on: {e}")
                    remaining = None
                    break
                except VerificationError as e:
                    logger.warning(f"[{job_id}] Parked write still failing: {e}")
                    break
                remaining.pop(0)
            if remaining:
                self._parked.append((job_id, remaining))
            elif remaining is not None:
                flushed += 1
        return flushed
