"""Pydantic schemas for the verification pipeline contracts.

These schemas define the strict contracts between:
- intake and the job queue (queue messages, queue status)
- the pipeline stages (environment specs, execution results)
- the pipeline and the job store (attempt outcomes)
- API endpoints and clients
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, HttpUrl


# =============================================================================
# Enums
# =============================================================================

class JobStatus(str, Enum):
    """Persisted status of a verification job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueState(str, Enum):
    """Broker-side state of a queued job."""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class SubmissionStatus(str, Enum):
    """Status of a batch of jobs."""
    PENDING = "pending"
    COMPLETED = "completed"


# =============================================================================
# Queue Schemas
# =============================================================================

class JobMessage(BaseModel):
    """Unit of work stored in the broker."""
    job_id: str = Field(..., description="Job identifier")
    repo_url: str = Field(..., description="Repository to verify")
    submission_id: str | None = Field(default=None, description="Owning submission")
    attempt: int = Field(default=1, ge=1, description="1-based attempt number")
    enqueued_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def attempt_id(self) -> str:
        """Identifier unique to this attempt of this job."""
        return f"{self.job_id}-a{self.attempt}"

    def next_attempt(self) -> "JobMessage":
        """Message for the retry of this job."""
        return self.model_copy(
            update={"attempt": self.attempt + 1, "enqueued_at": datetime.utcnow()}
        )


class QueueJobStatus(BaseModel):
    """Queue-level status, distinct from the persisted job status."""
    job_id: str
    state: QueueState
    progress: int = Field(default=0, ge=0, le=100)
    attempt: int = 1


# =============================================================================
# Sandbox Schemas
# =============================================================================

class EnvironmentSpec(BaseModel):
    """Everything the runtime needs to create one isolated environment."""
    name: str = Field(..., description="Unique environment name (one per attempt)")
    image: str
    command: list[str]
    workspace_path: str = Field(..., description="Host path bound read/write")
    working_dir: str = "/app"
    memory_limit_bytes: int = 512 * 1024 * 1024
    cpu_quota_percent: int = 50
    network_mode: str = "none"


class ExecutionResult(BaseModel):
    """Result of running a command in the sandbox."""
    success: bool
    exit_code: int
    reason: str
    logs: str = ""
    latency_ms: int | None = None


# =============================================================================
# Outcome Schemas
# =============================================================================

class JobOutcome(BaseModel):
    """The atomic write for one attempt outcome."""
    status: JobStatus
    result: bool | None = None
    reason: str | None = None
    logs: str = ""
    setup_instructions: str | None = None
    execution_time_ms: int | None = None


# =============================================================================
# Tool Schemas
# =============================================================================

class ToolResult(BaseModel):
    """Standard response from any tool call."""
    ok: bool = Field(..., description="Whether the tool call succeeded")
    data: Any | None = Field(default=None, description="Tool-specific response data")
    error_code: str | None = Field(default=None, description="Error code if failed")
    error_message: str | None = Field(default=None, description="Human-readable error message")
    retryable: bool = Field(default=False, description="Whether the error is retryable")
    latency_ms: int | None = Field(default=None, description="Time taken in milliseconds")


# =============================================================================
# API Request/Response Schemas
# =============================================================================

class SubmissionCreateRequest(BaseModel):
    """API request to verify a batch of repositories."""
    repo_urls: list[HttpUrl] = Field(..., min_length=1, max_length=10)

    class Config:
        json_schema_extra = {
            "example": {
                "repo_urls": ["https://github.com/octocat/Hello-World"],
            }
        }


class JobResponse(BaseModel):
    """API response for job detail."""
    id: str
    submission_id: str | None = None
    repo_url: str
    status: JobStatus
    result: bool | None = None
    reason: str | None = None
    setup_instructions: str | None = None
    execution_time_ms: int | None = None
    attempts: int = 0
    created_at: datetime
    updated_at: datetime
    queue_state: QueueState | None = None
    progress: int | None = None


class JobLogsResponse(BaseModel):
    """API response for job logs."""
    logs: str = ""
    setup_instructions: str = ""
    reason: str = ""


class SubmissionResponse(BaseModel):
    """API response for a submission and its jobs."""
    id: str
    batch_id: str
    status: SubmissionStatus
    total_repos: int
    processed_repos: int
    created_at: datetime
    jobs: list[JobResponse] = Field(default_factory=list)
