"""Reconciliation sweep for jobs stuck in ``processing``.

A worker that dies between taking a job and writing its outcome leaves the
row in ``processing``. Once such a row has outlived the job deadline plus a
margin, and no local worker holds it, the watchdog either schedules the next
attempt or, when attempts are exhausted, fails the job. Forced failures
carry ``result=None``: the pipeline never produced a result for them.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from repoverify.jobqueue.dispatcher import JobQueue
from repoverify.pipeline.reporter import ResultReporter
from repoverify.pipeline.store import JobStore
from repoverify.schemas import JobMessage, JobOutcome, JobStatus


logger = logging.getLogger(__name__)

STALE_REASON = "Worker lost: processing exceeded deadline"
ABANDONED_REASON = "timeout: job abandoned after exhausting attempts"


class Watchdog:
    """Periodically re-queues or fails abandoned jobs."""

    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        reporter: ResultReporter,
        max_attempts: int = 3,
        stale_after: float = 360.0,
        interval: float = 30.0,
    ):
        self.store = store
        self.queue = queue
        self.reporter = reporter
        self.max_attempts = max_attempts
        self.stale_after = stale_after
        self.interval = interval

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Run one reconciliation pass.

        Returns:
            IDs of the jobs that were re-queued or failed
        """
        flushed = await self.reporter.flush()
        if flushed:
            logger.info(f"Flushed parked writes for {flushed} job(s)")

        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=self.stale_after)
        stale = await self.store.find_stale_jobs(cutoff)

        reconciled: list[str] = []
        for job in stale:
            if job.id in self.queue.in_flight or job.id in self.reporter.parked_jobs:
                continue

            note = f"[watchdog] Job stuck in processing since {job.updated_at.isoformat()}"

            if job.attempts < self.max_attempts:
                message = JobMessage(
                    job_id=job.id,
                    repo_url=job.repo_url,
                    submission_id=job.submission_id,
                    attempt=job.attempts + 1,
                )
                logger.warning(f"[{job.id}] Re-queueing stale job as attempt {message.attempt}")
                await self.reporter.record_retry(
                    job.id,
                    JobOutcome(status=JobStatus.FAILED, reason=STALE_REASON, logs=note),
                    on_committed=lambda m=message: self.queue.requeue(
                        m, max_tries=self.queue.config.requeue_tries
                    ),
                )
            else:
                logger.error(f"[{job.id}] Failing stale job after {job.attempts} attempts")
                outcome = JobOutcome(status=JobStatus.FAILED, reason=ABANDONED_REASON, logs=note)
                await self.reporter.record_outcome(job.id, outcome)
                self.queue.resolve_handle(job.id, outcome)

            reconciled.append(job.id)

        return reconciled

    async def run(self) -> None:
        """Sweep forever; cancel the task to stop."""
        logger.info(f"Watchdog running every {self.interval}s (stale after {self.stale_after}s)")
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Watchdog sweep failed")
            await asyncio.sleep(self.interval)
