"""
Pydantic schemas for the scrape trigger and queue inspection API.

Defines request/response models for the HTTP API. The queue row itself is
the ORM model in ``lienflow.database.models``.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lienflow.database.models import JobStatus
from lienflow.models.records import ExtractionCursor

DATE_FORMAT = "%m/%d/%Y"


class ScanMode(str, Enum):
    """
    Where discovered rows go.

    QUEUED stores filing identities as jobs for the worker; SYNC delivers the
    extracted records straight to the sink.
    """

    QUEUED = "queued"
    SYNC = "sync"


class ScrapeRequest(BaseModel):
    """
    Request schema for a discovery scrape.

    Example:
        {
            "site": "ca_sos",
            "date_start": "01/01/2026",
            "date_end": "01/31/2026",
            "max_records": 500,
            "mode": "sync"
        }
    """

    model_config = ConfigDict(extra="forbid")

    site: str = Field(default="ca_sos", description="Source identifier")
    date_start: str = Field(description="Window start, MM/DD/YYYY")
    date_end: str = Field(description="Window end, MM/DD/YYYY")
    max_records: int | None = Field(
        default=None, ge=1, description="Records to collect (default from settings)"
    )
    mode: ScanMode = Field(default=ScanMode.SYNC, description="Deliver or enqueue")
    resume_cursor: ExtractionCursor | None = Field(
        default=None, description="Continue a previous scrape from this position"
    )

    @field_validator("date_start", "date_end")
    @classmethod
    def validate_date(cls, v: str) -> str:
        """Dates must parse as MM/DD/YYYY."""
        datetime.strptime(v, DATE_FORMAT)
        return v


class ScrapeResponse(BaseModel):
    """
    Response schema for a finished scrape.

    Example:
        {
            "success": true,
            "records_scraped": 42,
            "rows_uploaded": 42,
            "jobs_enqueued": 0,
            "duration_seconds": 311.4,
            "cursor": {"page": 3, "row_index": 2}
        }
    """

    success: bool = Field(default=True)
    records_scraped: int = Field(default=0, description="Records read from the source")
    rows_uploaded: int = Field(default=0, description="Rows accepted by the sink")
    jobs_enqueued: int = Field(default=0, description="New jobs inserted into the queue")
    windows: int = Field(default=1, description="Date windows searched after splitting")
    duration_seconds: float = Field(default=0.0)
    cursor: ExtractionCursor | None = Field(
        default=None, description="Position reached in the last window searched"
    )


class ErrorResponse(BaseModel):
    """Failure body of the scrape trigger."""

    success: bool = Field(default=False)
    error: str = Field(description="Error message")
    details: dict[str, Any] = Field(default_factory=dict)


class JobStatusResponse(BaseModel):
    """
    One queue job.

    Used by GET /api/v1/queue/jobs/{job_id}.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    fingerprint: str
    site: str
    filing_number: str
    filing_date: str
    status: JobStatus
    attempts: int
    locked_until: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Any) -> Self:
        return cls.model_validate(job)


class JobListResponse(BaseModel):
    """
    Response schema for listing jobs.

    Used by GET /api/v1/queue/jobs.
    """

    jobs: list[JobStatusResponse] = Field(description="List of jobs")
    total: int = Field(description="Total number of jobs matching filters")
    limit: int = Field(description="Maximum jobs returned")
    offset: int = Field(description="Number of jobs skipped")


class QueueStatsResponse(BaseModel):
    """
    Queue counts per status.

    Used by GET /api/v1/queue/stats.
    """

    total: int = Field(description="Total number of jobs")
    pending: int = Field(default=0, description="Queued or processing")
    queued: int = Field(default=0)
    processing: int = Field(default=0)
    done: int = Field(default=0)
    failed: int = Field(default=0)
    abandoned: int = Field(default=0)

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> Self:
        return cls(
            total=sum(counts.values()),
            pending=counts.get("queued", 0) + counts.get("processing", 0),
            **counts,
        )


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""

    status: str = Field(default="healthy", description="Service status")
    version: str = Field(description="API version")
    database: str = Field(default="connected", description="Database connection status")
