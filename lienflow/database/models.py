"""
Queue job table: one row per discovered filing, keyed by its fingerprint.

Also carries the lease and retry bookkeeping the workers coordinate through.
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class JobStatus(str, PyEnum):
    """
    Status enum for queue jobs.

    Lifecycle: QUEUED → PROCESSING → DONE
                             ↘ FAILED → (backoff) → PROCESSING ...
                             ↘ ABANDONED (max attempts reached)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    ABANDONED = "abandoned"


PENDING_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)


class QueueJob(Base):
    """
    ORM model for discovery jobs.

    Attributes:
        id: Store-assigned job identifier
        fingerprint: SHA-256 of (site, filing_number, filing_date), unique
        site: Source identifier (e.g. ``ca_sos``)
        filing_number: File number as listed by the source
        filing_date: Filing date as listed by the source (MM/DD/YYYY)
        status: Current job status
        locked_until: Lease expiry, or backoff expiry after a failure
        attempts: Number of times the job has been claimed
        last_error: Message of the most recent failure
        created_at: Discovery timestamp
        updated_at: Last modification timestamp
    """

    __tablename__ = "queue_jobs"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment="Store-assigned job identifier",
    )
    fingerprint: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="De-duplication key",
    )
    site: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Source identifier",
    )
    filing_number: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Filing file number",
    )
    filing_date: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Filing date as listed (MM/DD/YYYY)",
    )

    # Lease bookkeeping
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=JobStatus.QUEUED,
        comment="Current job status",
    )
    locked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Lease or backoff expiry",
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Claim counter",
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Most recent failure message",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Discovery timestamp",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last modification timestamp",
    )

    __table_args__ = (
        Index("ix_queue_jobs_status", "status"),
        Index("ix_queue_jobs_locked_until", "locked_until"),
        Index("ix_queue_jobs_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"QueueJob(id={self.id!r}, filing_number={self.filing_number!r}, "
            f"status={self.status!r}, attempts={self.attempts!r})"
        )
