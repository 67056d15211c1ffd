"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (claim acquired, run_at due)
    - PROCESSING -> COMPLETED (command exited 0)
    - PROCESSING -> PENDING (failure with retries left, or claim expired)
    - PROCESSING -> DEAD (retries exhausted)
    - DEAD -> PENDING (explicit DLQ retry)

    FAILED is reported by status queries but never assigned by the engine.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


class FailOutcome(StrEnum):
    """Result of reporting a failed attempt to the store."""

    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"
    IGNORED = "ignored"


# Runtime configuration keys stored in the config table
CONFIG_MAX_RETRIES = "max_retries"
CONFIG_BACKOFF_BASE = "backoff_base"
CONFIG_BACKOFF_MAX = "backoff_max"
CONFIG_BACKOFF_JITTER = "backoff_jitter"
CONFIG_LEASE_TIMEOUT = "lease_timeout"
CONFIG_JOB_TIMEOUT = "job_timeout"

CONFIG_KEYS: frozenset[str] = frozenset(
    {
        CONFIG_MAX_RETRIES,
        CONFIG_BACKOFF_BASE,
        CONFIG_BACKOFF_MAX,
        CONFIG_BACKOFF_JITTER,
        CONFIG_LEASE_TIMEOUT,
        CONFIG_JOB_TIMEOUT,
    }
)

# Exit codes recorded when the command itself could not report one
EXIT_CODE_TIMEOUT = 124
EXIT_CODE_SPAWN_FAILED = 127

# Default values
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 500

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "queuectl_queue_depth"
METRIC_JOBS_ENQUEUED = "queuectl_jobs_enqueued_total"
METRIC_JOBS_FINISHED = "queuectl_jobs_finished_total"
METRIC_JOB_DURATION = "queuectl_job_duration_seconds"
METRIC_CLAIMS_ACQUIRED = "queuectl_claims_acquired_total"
METRIC_CLAIMS_EXPIRED = "queuectl_claims_expired_total"
METRIC_API_REQUESTS = "queuectl_api_requests_total"
METRIC_API_LATENCY = "queuectl_api_request_latency_seconds"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
