"""SQLModel database tables.

Tables:
- Submission: a batch of 1..10 repositories submitted together
- Job: verification of one repository, mutated by the worker holding it
"""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Column, Index, Text
from sqlmodel import Field, SQLModel


def _new_id() -> str:
    return uuid4().hex


# =============================================================================
# Submission Model
# =============================================================================

class Submission(SQLModel, table=True):
    """A batch of jobs created from one request."""

    __tablename__ = "submissions"

    id: str = Field(default_factory=_new_id, primary_key=True)
    batch_id: str = Field(default_factory=lambda: str(uuid4()), index=True)
    status: str = Field(default="pending")  # Use SubmissionStatus enum values
    total_repos: int = Field(default=0)
    processed_repos: int = Field(default=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# Job Model
# =============================================================================

class Job(SQLModel, table=True):
    """Verification of one repository."""

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_updated", "status", "updated_at"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    submission_id: str | None = Field(default=None, foreign_key="submissions.id", index=True)
    repo_url: str = Field(max_length=500)

    # Status
    status: str = Field(default="pending", index=True)  # Use JobStatus enum values
    attempts: int = Field(default=0)

    # Outcome
    result: bool | None = Field(default=None)
    reason: str | None = Field(default=None, sa_column=Column(Text))
    logs: str | None = Field(default=None, sa_column=Column(Text))
    setup_instructions: str | None = Field(default=None, sa_column=Column(Text))
    execution_time_ms: int | None = Field(default=None)

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
