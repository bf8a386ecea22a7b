"""Job persistence used by the dispatcher, reporter and watchdog.

Each write loads the row, validates the status transition and commits in a
single transaction, so a reader never observes a half-written outcome.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from repoverify.database.models import Job, Submission
from repoverify.database.session import session_scope
from repoverify.errors import JobNotFoundError, PersistenceError
from repoverify.pipeline.state import check_transition
from repoverify.schemas import JobOutcome, JobStatus, SubmissionStatus


logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Persistence contract required by the verification core."""

    @abstractmethod
    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        attempts: int | None = None,
    ) -> None:
        """Status-only write (entering processing, or the retry edge)."""
        ...

    @abstractmethod
    async def update_job_result(self, job_id: str, outcome: JobOutcome) -> None:
        """Atomic write of one attempt outcome."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        ...

    @abstractmethod
    async def find_stale_jobs(self, cutoff: datetime) -> list[Job]:
        """Jobs still ``processing`` whose last write is older than ``cutoff``."""
        ...


def _accumulate(previous: str | None, new: str) -> str:
    if previous and new:
        return f"{previous}\n{new}"
    return previous or new


class SQLJobStore(JobStore):
    """JobStore over the SQLModel tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], max_attempts: int = 3):
        self.session_factory = session_factory
        self.max_attempts = max_attempts

    async def _load(self, session: AsyncSession, job_id: str) -> Job:
        job = await session.get(Job, job_id, with_for_update=True)
        if job is None:
            # Intake may not have committed yet; the reporter retries this
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        attempts: int | None = None,
    ) -> None:
        try:
            async with session_scope(self.session_factory) as session:
                job = await self._load(session, job_id)
                new_attempts = job.attempts if attempts is None else attempts
                check_transition(JobStatus(job.status), status, new_attempts, self.max_attempts)

                job.status = JobStatus(status).value
                job.attempts = new_attempts
                job.updated_at = datetime.utcnow()
                session.add(job)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update job {job_id}: {e}") from e

    async def update_job_result(self, job_id: str, outcome: JobOutcome) -> None:
        try:
            async with session_scope(self.session_factory) as session:
                job = await self._load(session, job_id)
                check_transition(JobStatus(job.status), outcome.status, job.attempts, self.max_attempts)

                job.status = outcome.status.value
                job.result = outcome.result
                job.reason = outcome.reason
                job.logs = _accumulate(job.logs, outcome.logs)
                if outcome.setup_instructions is not None:
                    job.setup_instructions = outcome.setup_instructions
                job.execution_time_ms = outcome.execution_time_ms
                job.updated_at = datetime.utcnow()
                session.add(job)

                if self._is_final(job) and job.submission_id:
                    await self._count_processed(session, job.submission_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record result for job {job_id}: {e}") from e

    def _is_final(self, job: Job) -> bool:
        if job.status == JobStatus.COMPLETED.value:
            return True
        return job.status == JobStatus.FAILED.value and (
            job.result is not None or job.attempts >= self.max_attempts
        )

    async def _count_processed(self, session: AsyncSession, submission_id: str) -> None:
        submission = await session.get(Submission, submission_id, with_for_update=True)
        if submission is None:
            logger.warning(f"Submission {submission_id} not found")
            return
        submission.processed_repos += 1
        if submission.processed_repos >= submission.total_repos:
            submission.status = SubmissionStatus.COMPLETED.value
        session.add(submission)

    async def get_job(self, job_id: str) -> Job | None:
        try:
            async with self.session_factory() as session:
                return await session.get(Job, job_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load job {job_id}: {e}") from e

    async def find_stale_jobs(self, cutoff: datetime) -> list[Job]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Job)
                    .where(Job.status == JobStatus.PROCESSING.value)
                    .where(Job.updated_at < cutoff)
                    .order_by(Job.updated_at)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to query stale jobs: {e}") from e
