"""
Read-only views of the job queue.
"""

from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from api.dependencies import ApiKeyDep, JobStoreDep
from lienflow.database.models import JobStatus
from lienflow.models.jobs import JobListResponse, JobStatusResponse, QueueStatsResponse
from lienflow.utils.exceptions import JobNotFoundError

router = APIRouter(prefix="/queue", tags=["Queue"])

StatusQuery = Annotated[JobStatus | None, Query(alias="status", description="Only this status")]
LimitQuery = Annotated[int, Query(ge=1, le=100, description="Page size")]
OffsetQuery = Annotated[int, Query(ge=0, description="Jobs to skip")]


@router.get("/stats", response_model=QueueStatsResponse, summary="Job counts per status")
async def queue_stats(store: JobStoreDep, _api_key: ApiKeyDep) -> QueueStatsResponse:
    return QueueStatsResponse.from_counts(await store.count_by_status())


@router.get("/jobs", response_model=JobListResponse, summary="Page through jobs, newest first")
async def list_jobs(
    store: JobStoreDep,
    _api_key: ApiKeyDep,
    status_filter: StatusQuery = None,
    limit: LimitQuery = 20,
    offset: OffsetQuery = 0,
) -> JobListResponse:
    page = await store.list_jobs(status=status_filter, limit=limit, offset=offset)
    counts = await store.count_by_status()

    return JobListResponse(
        jobs=[JobStatusResponse.from_job(job) for job in page],
        total=counts[status_filter.value] if status_filter else sum(counts.values()),
        limit=limit,
        offset=offset,
    )


@router.get("/jobs/{job_id}", response_model=JobStatusResponse, summary="One job")
async def get_job(job_id: int, store: JobStoreDep, _api_key: ApiKeyDep) -> JobStatusResponse:
    try:
        return JobStatusResponse.from_job(await store.get(job_id))
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e
