"""
Job store: lease-based work queue over the ``queue_jobs`` table.

Every operation runs in its own transaction and either fully applies or
fully fails. Claiming is a single ``UPDATE ... WHERE id IN (SELECT ...)
RETURNING`` statement, so two workers can never both see a row as eligible
and take it: the write that flips a row to ``processing`` is the same
statement that selected it. On PostgreSQL the inner select additionally
takes ``FOR UPDATE SKIP LOCKED`` so concurrent claimers skip each other's
rows instead of blocking on them.
"""

from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lienflow.core.fingerprint import fingerprint
from lienflow.database.models import PENDING_STATUSES, JobStatus, QueueJob
from lienflow.models.records import DiscoveredFiling
from lienflow.utils.exceptions import JobNotFoundError, StoreError
from lienflow.utils.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]

# Rows per INSERT statement; all chunks share one transaction.
INSERT_CHUNK_SIZE = 500


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStore:
    """
    Persistent queue of discovery jobs.

    Usage:
        store = JobStore(get_session_factory())
        await store.insert_many(discovered)
        jobs = await store.claim_batch(1)
        await store.mark_done([job.id for job in jobs])

    Args:
        session_factory: Factory producing sessions bound to the queue database
        clock: Returns the current time; injected by tests to move time forward
        lease_seconds: Lease length written to ``locked_until`` on claim
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utcnow,
        lease_seconds: int = 0,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._lease = timedelta(seconds=lease_seconds)

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Open a session in a transaction; storage failures become StoreError."""
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error("Job store operation failed", operation=operation, error=str(e))
            raise StoreError(
                f"Job store {operation} failed: {e}",
                operation=operation,
                table=QueueJob.__tablename__,
            ) from e

    @staticmethod
    def _dialect(session: AsyncSession) -> str:
        return session.bind.dialect.name if session.bind is not None else "sqlite"

    # ===================
    # Queue operations
    # ===================

    async def insert_many(self, discovered: Iterable[DiscoveredFiling]) -> int:
        """
        Enqueue discovered filings, ignoring ones already known.

        Duplicates, whether already stored or repeated inside ``discovered``,
        are skipped through the unique fingerprint. The whole batch is one
        transaction.

        Returns:
            Number of newly inserted jobs
        """
        now = self._clock()
        rows: dict[str, dict] = {}
        for item in discovered:
            key = fingerprint(item.source, item.file_number, item.filing_date)
            rows.setdefault(
                key,
                {
                    "fingerprint": key,
                    "site": item.source,
                    "filing_number": item.file_number,
                    "filing_date": item.filing_date,
                    "status": JobStatus.QUEUED,
                    "attempts": 0,
                    "created_at": now,
                    "updated_at": now,
                },
            )

        if not rows:
            return 0

        values = list(rows.values())
        inserted = 0

        async with self._transaction("insert") as session:
            dialect_insert = (
                postgresql.insert if self._dialect(session) == "postgresql" else sqlite.insert
            )
            for start in range(0, len(values), INSERT_CHUNK_SIZE):
                stmt = (
                    dialect_insert(QueueJob)
                    .values(values[start : start + INSERT_CHUNK_SIZE])
                    .on_conflict_do_nothing(index_elements=[QueueJob.fingerprint])
                )
                result = await session.execute(stmt)
                inserted += max(result.rowcount or 0, 0)

        logger.info(
            "Jobs enqueued",
            discovered=len(values),
            inserted=inserted,
            duplicates=len(values) - inserted,
        )
        return inserted

    async def claim_batch(self, limit: int) -> list[QueueJob]:
        """
        Atomically lease up to ``limit`` eligible jobs, oldest first.

        Eligible: ``queued``, or ``failed`` whose backoff has elapsed.
        Claimed rows move to ``processing`` with ``attempts + 1``.

        Returns:
            Claimed jobs; an empty list means the queue is drained
        """
        if limit <= 0:
            return []

        now = self._clock()

        async with self._transaction("claim") as session:
            eligible = (
                select(QueueJob.id)
                .where(
                    or_(
                        QueueJob.status == JobStatus.QUEUED,
                        and_(
                            QueueJob.status == JobStatus.FAILED,
                            or_(QueueJob.locked_until.is_(None), QueueJob.locked_until <= now),
                        ),
                    )
                )
                .order_by(QueueJob.created_at, QueueJob.id)
                .limit(limit)
            )
            if self._dialect(session) == "postgresql":
                eligible = eligible.with_for_update(skip_locked=True)

            stmt = (
                update(QueueJob)
                .where(QueueJob.id.in_(eligible))
                .values(
                    status=JobStatus.PROCESSING,
                    attempts=QueueJob.attempts + 1,
                    locked_until=now + self._lease,
                    updated_at=now,
                )
                .returning(QueueJob)
                .execution_options(synchronize_session=False, populate_existing=True)
            )
            result = await session.execute(stmt)
            jobs = sorted(result.scalars().all(), key=lambda job: (job.created_at, job.id))

        if jobs:
            logger.info("Jobs claimed", count=len(jobs), job_ids=[job.id for job in jobs])
        return jobs

    async def mark_done(self, ids: Sequence[int]) -> None:
        """Complete jobs and clear their lease. Already-done jobs are left untouched."""
        if not ids:
            return

        async with self._transaction("mark_done") as session:
            await session.execute(
                update(QueueJob)
                .where(QueueJob.id.in_(ids), QueueJob.status != JobStatus.DONE)
                .values(status=JobStatus.DONE, locked_until=None, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )

        logger.info("Jobs done", job_ids=list(ids))

    async def mark_failed(
        self,
        ids: Sequence[int],
        backoff_ms: int,
        error: str | None = None,
    ) -> None:
        """
        Fail jobs and hold them back for ``backoff_ms``.

        The caller picks the backoff; the store only records when the job
        becomes claimable again.
        """
        if not ids:
            return

        now = self._clock()
        retry_at = now + timedelta(milliseconds=backoff_ms)

        async with self._transaction("mark_failed") as session:
            await session.execute(
                update(QueueJob)
                .where(QueueJob.id.in_(ids))
                .values(
                    status=JobStatus.FAILED,
                    locked_until=retry_at,
                    last_error=error,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

        logger.warning("Jobs failed", job_ids=list(ids), retry_at=retry_at.isoformat(), error=error)

    async def mark_abandoned(self, ids: Sequence[int], error: str | None = None) -> None:
        """Give up on jobs for good; they are never claimed again."""
        if not ids:
            return

        async with self._transaction("mark_abandoned") as session:
            await session.execute(
                update(QueueJob)
                .where(QueueJob.id.in_(ids))
                .values(
                    status=JobStatus.ABANDONED,
                    locked_until=None,
                    last_error=error,
                    updated_at=self._clock(),
                )
                .execution_options(synchronize_session=False)
            )

    async def get_pending_count(self) -> int:
        """Count jobs still queued or being processed."""
        async with self._transaction("count") as session:
            result = await session.execute(
                select(func.count(QueueJob.id)).where(QueueJob.status.in_(PENDING_STATUSES))
            )
            return result.scalar_one()

    # ===================
    # Operator queries
    # ===================

    async def get(self, job_id: int) -> QueueJob:
        """
        Get a job by ID.

        Raises:
            JobNotFoundError: If job doesn't exist
        """
        async with self._transaction("select") as session:
            job = await session.get(QueueJob, job_id)

        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[QueueJob]:
        """List jobs newest first, optionally filtered by status."""
        query = select(QueueJob).order_by(QueueJob.created_at.desc(), QueueJob.id.desc())

        if status is not None:
            query = query.where(QueueJob.status == status)

        async with self._transaction("select") as session:
            result = await session.execute(query.limit(limit).offset(offset))
            return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        """Job counts for every status (zero-filled)."""
        async with self._transaction("count") as session:
            result = await session.execute(
                select(QueueJob.status, func.count(QueueJob.id).label("count")).group_by(
                    QueueJob.status
                )
            )
            counts = {status.value: 0 for status in JobStatus}
            for row in result:
                counts[JobStatus(row.status).value] = row.count

        return counts
