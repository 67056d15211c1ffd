"""
Job-related type definitions for internal use.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from queuectl.constants import JobState
from queuectl.exceptions import ValidationError
from queuectl.timeutil import to_naive_utc


class JobSpec(BaseModel):
    """
    Job submission structure.
    Validated at enqueue time; unknown keys are ignored.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    command: str = Field(..., min_length=1, description="Shell command to execute")
    run_at: datetime | None = Field(
        default=None, description="Earliest execution time (defaults to now)"
    )
    max_retries: int | None = Field(
        default=None, ge=0, description="Retries allowed after the first attempt"
    )

    @field_validator("run_at")
    @classmethod
    def _normalize_run_at(cls, value: datetime | None) -> datetime | None:
        return None if value is None else to_naive_utc(value)

    @classmethod
    def parse(cls, data: "JobSpec | Mapping[str, Any]") -> "JobSpec":
        """
        Build a JobSpec from user input.

        Raises:
            ValidationError: If the command is missing or a field is malformed.
        """
        if isinstance(data, JobSpec):
            return data
        if not isinstance(data, Mapping):
            raise ValidationError("Job spec must be an object with a 'command' field")
        try:
            return cls.model_validate(dict(data))
        except PydanticValidationError as e:
            problems = {
                ".".join(str(p) for p in err["loc"]) or "spec": err["msg"]
                for err in e.errors()
            }
            summary = "; ".join(f"{k}: {v}" for k, v in problems.items())
            raise ValidationError(f"Invalid job spec ({summary})", problems) from e


class ExecutionResult(BaseModel):
    """
    Result of running a job command.
    Returned by the executor after the child process exits.
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: float | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def error_text(self, limit: int = 2000) -> str:
        """Failure detail stored in last_error."""
        output = (self.stderr or self.stdout).strip()
        text = f"exit_code={self.exit_code}"
        if output:
            text = f"{text}: {output}"
        return text[:limit]


class RuntimeConfig(BaseModel):
    """
    Effective job configuration.
    Persisted overrides layered over environment settings.
    """

    model_config = ConfigDict(allow_inf_nan=False)

    max_retries: int = Field(ge=0)
    backoff_base_seconds: float = Field(gt=0)
    backoff_max_seconds: float = Field(gt=0)
    backoff_jitter_seconds: float = Field(ge=0)
    lease_timeout_seconds: float = Field(gt=0)
    job_timeout_seconds: float | None = Field(default=None, gt=0)

    @property
    def lease_timeout(self) -> timedelta:
        return timedelta(seconds=self.lease_timeout_seconds)


@dataclass
class QueueStatus:
    """Aggregate view of the queue: jobs per state and live workers."""

    counts: dict[str, int] = field(default_factory=dict)
    active_workers: int = 0

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobs": {state.value: self.counts.get(state.value, 0) for state in JobState},
            "total": self.total,
            "active_workers": self.active_workers,
        }


@dataclass
class ClaimedJob:
    """
    A job held by a worker.
    Carries the claim token needed to report the outcome.
    """

    id: Any
    command: str
    claim_token: str
    attempts: int
    max_retries: int
    claimed_by: str
    claimed_at: datetime
    timeout_seconds: float | None = None
    lease_seconds: float | None = None

    @property
    def attempt_number(self) -> int:
        """1-based number of the attempt being executed."""
        return self.attempts + 1
