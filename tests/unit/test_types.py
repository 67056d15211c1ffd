"""
Unit tests for job types and timestamps.
"""

from datetime import datetime, timezone

import pytest

from queuectl.exceptions import ValidationError
from queuectl.timeutil import isoformat, parse_timestamp
from queuectl.types.job import ClaimedJob, JobSpec, QueueStatus


class TestJobSpec:
    """Tests for JobSpec parsing."""

    def test_minimal(self):
        spec = JobSpec.parse({"command": "echo hi"})

        assert spec.command == "echo hi"
        assert spec.run_at is None
        assert spec.max_retries is None

    def test_unknown_keys_are_ignored(self):
        spec = JobSpec.parse({"command": "true", "id": "job1", "priority": 5})

        assert spec.command == "true"

    def test_run_at_is_normalized_to_naive_utc(self):
        spec = JobSpec.parse({"command": "true", "run_at": "2026-01-01T14:00:00+02:00"})

        assert spec.run_at == datetime(2026, 1, 1, 12, 0, 0)
        assert spec.run_at.tzinfo is None

    def test_error_details_name_the_field(self):
        with pytest.raises(ValidationError) as exc_info:
            JobSpec.parse({"max_retries": 1})

        assert "command" in exc_info.value.details

    def test_rejects_non_mapping(self):
        with pytest.raises(ValidationError):
            JobSpec.parse(["echo hi"])


class TestQueueStatus:
    def test_to_dict_fills_every_state(self):
        status = QueueStatus(counts={"pending": 2, "dead": 1}, active_workers=3)

        assert status.total == 3
        assert status.to_dict() == {
            "jobs": {"pending": 2, "processing": 0, "completed": 0, "failed": 0, "dead": 1},
            "total": 3,
            "active_workers": 3,
        }


class TestClaimedJob:
    def test_attempt_numbers(self):
        job = ClaimedJob(
            id="id",
            command="true",
            claim_token="t",
            attempts=2,
            max_retries=2,
            claimed_by="w",
            claimed_at=datetime(2026, 1, 1),
        )

        assert job.attempt_number == 3


class TestTimestamps:
    def test_parse_accepts_z_suffix(self):
        assert parse_timestamp("2026-01-01T00:00:00Z") == datetime(2026, 1, 1)

    def test_parse_converts_offsets(self):
        aware = datetime(2026, 1, 1, 5, tzinfo=timezone.utc)
        assert parse_timestamp(aware.isoformat()) == datetime(2026, 1, 1, 5)

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_timestamp("tomorrow")

    def test_isoformat(self):
        assert isoformat(datetime(2026, 1, 1)) == "2026-01-01T00:00:00Z"
        assert isoformat(None) is None
