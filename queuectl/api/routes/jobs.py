"""
Job management routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from queuectl import service
from queuectl.constants import API_V1_PREFIX, DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, JobState
from queuectl.db import get_async_session
from queuectl.db.repository import JobRepository
from queuectl.observability.metrics import get_metrics
from queuectl.types.api import (
    CreateJobRequest,
    JobListResponse,
    JobResponse,
    StatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=API_V1_PREFIX, tags=["Jobs"])


@router.post(
    "/jobs",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description="Submit a shell command to the queue, optionally scheduled for later.",
)
async def create_job(
    request: CreateJobRequest,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Enqueue a new job.

    Args:
        request: Job creation request.
        session: Database session.

    Returns:
        JobResponse with the stored job.
    """
    repo = JobRepository(session)
    job = await repo.enqueue(request.model_dump())
    await session.commit()

    get_metrics().record_job_enqueued()
    return JobResponse.model_validate(job)


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
)
async def get_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        HTTPException: If the job is not found.
    """
    job = await JobRepository(session).get_job(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return JobResponse.model_validate(job)


@router.get(
    "/jobs",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs, newest first, with optional state filtering.",
)
async def list_jobs(
    state: JobState | None = Query(default=None),
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_async_session),
) -> JobListResponse:
    """
    List jobs.

    Args:
        state: Optional state filter.
        limit: Page size.
        offset: Number of jobs to skip.
        session: Database session.
    """
    jobs, total = await JobRepository(session).list_jobs(
        state=state,
        limit=limit,
        offset=offset,
    )

    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
        has_next=(offset + limit) < total,
    )


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Queue status",
    description="Job counts per state and the number of live workers.",
)
async def get_status() -> StatusResponse:
    """Get queue status."""
    queue_status = await service.get_status()
    return StatusResponse(**queue_status.to_dict())
