"""Submission intake.

Creates the submission and job rows and schedules every job. The rows are
only committed once every job is in the broker; if the broker is down the
transaction is rolled back, so no job exists that nothing will process.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from repoverify.database.models import Job, Submission
from repoverify.database.session import session_scope
from repoverify.errors import TransientInfraError
from repoverify.jobqueue.dispatcher import JobQueue, QueueHandle


logger = logging.getLogger(__name__)

MAX_REPOS_PER_SUBMISSION = 10


async def submit_repositories(
    session_factory: async_sessionmaker[AsyncSession],
    queue: JobQueue,
    repo_urls: list[str],
    track: bool = False,
) -> tuple[Submission, list[Job], list[QueueHandle]]:
    """Create a submission for ``repo_urls`` and enqueue one job per URL.

    Handles are only returned with ``track``, for callers that run the
    workers in the same process and wait on the outcome.

    Raises:
        ValueError: Empty batch or more than 10 repositories
        TransientInfraError: The broker is unavailable; nothing was created
    """
    if not 1 <= len(repo_urls) <= MAX_REPOS_PER_SUBMISSION:
        raise ValueError(
            f"A submission needs 1 to {MAX_REPOS_PER_SUBMISSION} repositories, got {len(repo_urls)}"
        )

    if not await queue.broker.ping():
        raise TransientInfraError("Job broker is unavailable")

    handles: list[QueueHandle] = []
    async with session_scope(session_factory) as session:
        submission = Submission(total_repos=len(repo_urls))
        session.add(submission)
        await session.flush()

        jobs = [Job(submission_id=submission.id, repo_url=url) for url in repo_urls]
        session.add_all(jobs)
        await session.flush()

        try:
            for job in jobs:
                handle = await queue.enqueue(job.repo_url, job.id, submission.id, track=track)
                if handle is not None:
                    handles.append(handle)
        except TransientInfraError as e:
            for handle in handles:
                queue.discard_handle(handle.job_id, e)
            raise

    logger.info(f"Created submission {submission.id} with {len(jobs)} job(s)")
    return submission, jobs, handles
