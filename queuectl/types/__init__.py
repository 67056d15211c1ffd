"""
Type definitions for the job queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from queuectl.types.api import (
    CreateJobRequest,
    ErrorResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    RetryJobResponse,
    StatusResponse,
)
from queuectl.types.job import (
    ClaimedJob,
    ExecutionResult,
    JobSpec,
    QueueStatus,
    RuntimeConfig,
)

__all__ = [
    # API types
    "CreateJobRequest",
    "JobResponse",
    "JobListResponse",
    "StatusResponse",
    "RetryJobResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "JobSpec",
    "ExecutionResult",
    "RuntimeConfig",
    "QueueStatus",
    "ClaimedJob",
]
