"""
API request and response type definitions.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from queuectl.constants import JobState
from queuectl.timeutil import isoformat


class CreateJobRequest(BaseModel):
    """Request body for enqueuing a job."""

    command: str = Field(..., min_length=1, description="Shell command to execute")
    run_at: datetime | None = Field(
        default=None, description="Schedule the job for a later time"
    )
    max_retries: int | None = Field(
        default=None, ge=0, description="Retries allowed after the first attempt"
    )


class JobResponse(BaseModel):
    """Full job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    command: str
    state: JobState
    attempts: int
    max_retries: int
    run_at: datetime
    last_error: str | None
    last_exit_code: int | None
    claimed_by: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    @field_serializer("run_at", "created_at", "updated_at", "completed_at")
    def serialize_timestamp(self, value: datetime | None) -> str | None:
        return isoformat(value)


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int
    has_next: bool


class StatusResponse(BaseModel):
    """Job counts per state and live workers."""

    jobs: dict[str, int]
    total: int
    active_workers: int


class RetryJobResponse(BaseModel):
    """Response body after retrying a job from the DLQ."""

    id: UUID
    state: JobState
    attempts: int
    message: str = "Job queued for retry"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime

    @field_serializer("timestamp")
    def serialize_timestamp(self, value: datetime) -> str:
        return isoformat(value)


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
