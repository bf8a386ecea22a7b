"""FastAPI routes for the RepoVerify API.

Endpoints:
- POST /submissions        - Verify a batch of 1..10 repositories
- GET  /submissions/{id}   - Submission with its jobs
- GET  /jobs/{id}          - Job status, plus queue state while in flight
- GET  /jobs/{id}/logs     - Accumulated logs of a job
- GET  /health             - Health check
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from repoverify.database.models import Job, Submission
from repoverify.errors import TransientInfraError
from repoverify.intake import submit_repositories
from repoverify.jobqueue.dispatcher import JobQueue
from repoverify.schemas import (
    JobLogsResponse,
    JobResponse,
    JobStatus,
    SubmissionCreateRequest,
    SubmissionResponse,
    SubmissionStatus,
)
from repoverify.service import VerifierService


logger = logging.getLogger(__name__)
router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================

def get_service(request: Request) -> VerifierService:
    return request.app.state.service


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Read-only session for request handlers."""
    async with session_factory() as session:
        yield session


def _job_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        submission_id=job.submission_id,
        repo_url=job.repo_url,
        status=JobStatus(job.status),
        result=job.result,
        reason=job.reason,
        setup_instructions=job.setup_instructions,
        execution_time_ms=job.execution_time_ms,
        attempts=job.attempts,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


def _submission_response(submission: Submission, jobs: list[Job]) -> SubmissionResponse:
    return SubmissionResponse(
        id=submission.id,
        batch_id=submission.batch_id,
        status=SubmissionStatus(submission.status),
        total_repos=submission.total_repos,
        processed_repos=submission.processed_repos,
        created_at=submission.created_at,
        jobs=[_job_response(job) for job in jobs],
    )


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health(request: Request, service: VerifierService = Depends(get_service)) -> dict:
    """Health check endpoint."""
    settings = request.app.state.settings
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
        "broker": "ok" if await service.broker.ping() else "unavailable",
        "sandbox": service.runtime.backend_name,
        "resolver": service.resolver.name,
    }


# =============================================================================
# Submissions
# =============================================================================

@router.post("/submissions", response_model=SubmissionResponse)
async def create_submission(
    request: SubmissionCreateRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    service: VerifierService = Depends(get_service),
) -> SubmissionResponse:
    """Create a submission and enqueue one job per repository.

    Jobs run asynchronously; poll GET /jobs/{job_id} for results.
    """
    try:
        submission, jobs, _ = await submit_repositories(
            session_factory,
            service.queue,
            [str(url) for url in request.repo_urls],
        )
    except TransientInfraError as e:
        logger.error(f"Submission rejected: {e}")
        raise HTTPException(status_code=503, detail="Job queue is unavailable, try again later")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _submission_response(submission, jobs)


@router.get("/submissions/{submission_id}", response_model=SubmissionResponse)
async def get_submission(
    submission_id: str,
    db: AsyncSession = Depends(get_db),
) -> SubmissionResponse:
    """Get a submission and its jobs."""
    submission = await db.get(Submission, submission_id)
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")

    result = await db.execute(
        select(Job)
        .where(Job.submission_id == submission_id)
        .order_by(Job.created_at)
    )
    return _submission_response(submission, list(result.scalars().all()))


# =============================================================================
# Jobs
# =============================================================================

async def _queue_details(queue: JobQueue, response: JobResponse) -> None:
    try:
        status = await queue.get_status(response.id)
    except TransientInfraError as e:
        logger.warning(f"[{response.id}] Queue status unavailable: {e}")
        return
    if status is not None:
        response.queue_state = status.state
        response.progress = status.progress


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    service: VerifierService = Depends(get_service),
) -> JobResponse:
    """Get job status by ID."""
    job = await db.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    response = _job_response(job)
    if response.status in (JobStatus.PENDING, JobStatus.PROCESSING):
        await _queue_details(service.queue, response)
    return response


@router.get("/jobs/{job_id}/logs", response_model=JobLogsResponse)
async def get_job_logs(
    job_id: str,
    db: AsyncSession = Depends(get_db),
) -> JobLogsResponse:
    """Get the logs accumulated across every attempt of a job."""
    job = await db.get(Job, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobLogsResponse(
        logs=job.logs or "",
        setup_instructions=job.setup_instructions or "",
        reason=job.reason or "",
    )
