"""
Dead letter queue routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from queuectl.constants import API_V1_PREFIX, DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT
from queuectl.db import get_async_session
from queuectl.db.repository import JobRepository
from queuectl.types.api import JobResponse, RetryJobResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/dlq", tags=["Dead Letter Queue"])


@router.get(
    "",
    response_model=list[JobResponse],
    summary="List dead jobs",
    description="Jobs that exhausted their retries, most recently failed first.",
)
async def list_dead_jobs(
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_async_session),
) -> list[JobResponse]:
    """List the dead letter queue."""
    jobs = await JobRepository(session).dlq_list(limit=limit, offset=offset)
    return [JobResponse.model_validate(job) for job in jobs]


@router.post(
    "/{job_id}/retry",
    response_model=RetryJobResponse,
    summary="Retry a job from DLQ",
    description="Move a dead job back to pending with its attempts reset.",
)
async def retry_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_async_session),
) -> RetryJobResponse:
    """
    Retry a job from the DLQ.

    Raises:
        HTTPException: If the job is unknown or not in the DLQ.
    """
    repo = JobRepository(session)

    if not await repo.dlq_retry(job_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found in DLQ",
        )
    await session.commit()

    job = await repo.get_job(job_id)
    return RetryJobResponse(
        id=job.id,
        state=job.state,
        attempts=job.attempts,
    )
