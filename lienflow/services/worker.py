"""
Worker loop: drains the job queue one filing at a time.

Each iteration claims a batch, re-extracts every claimed filing through a
detail-mode session (search by file number), appends the record to the sink
and marks the job done. A job that fails goes back to the queue with a fixed
backoff until it has been claimed ``max_attempts`` times, after which it is
abandoned.

Store failures are never absorbed: if the queue itself cannot be updated the
loop stops with the error, so a job is never reported done without the
store having recorded it.
"""

import asyncio
from dataclasses import dataclass

from lienflow.core.config import Settings
from lienflow.core.sources import get_source
from lienflow.database.models import QueueJob
from lienflow.database.repository import JobStore
from lienflow.extractors.driver import AutomationDriver
from lienflow.extractors.fields import FieldExtractor
from lienflow.extractors.session import ExtractionSession, SearchQuery, SessionOptions
from lienflow.models.records import LienRecord
from lienflow.services.sinks import Sink
from lienflow.utils.exceptions import DatabaseError, LienflowError, SessionError
from lienflow.utils.logging import bound_context, get_logger
from lienflow.utils.throttle import Limiter, NoopLimiter

logger = get_logger(__name__)


@dataclass
class WorkerStats:
    """Counters for one or more worker iterations."""

    claimed: int = 0
    done: int = 0
    failed: int = 0
    abandoned: int = 0

    def add(self, other: "WorkerStats") -> None:
        self.claimed += other.claimed
        self.done += other.done
        self.failed += other.failed
        self.abandoned += other.abandoned


class WorkerLoop:
    """
    Sequential queue consumer. Run one per process; scale out with processes.

    Args:
        store: Job store to claim from
        driver: Automation capability used for every job
        sink: Destination of finished records
        options: Session tuning (deadline, retries, downloads)
        limiter: Paces calls to the source
        batch_size: Jobs claimed per iteration
        max_attempts: Claims after which a failing job is abandoned
        backoff_ms: Delay before a failed job is claimable again
        idle_sleep: Seconds slept between iterations

    Usage:
        worker = WorkerLoop(store, driver, sink, limiter=limiter)
        stats = await worker.run()
    """

    def __init__(
        self,
        store: JobStore,
        driver: AutomationDriver,
        sink: Sink,
        *,
        options: SessionOptions | None = None,
        limiter: Limiter | None = None,
        extractor: FieldExtractor | None = None,
        batch_size: int = 1,
        max_attempts: int = 3,
        backoff_ms: int = 300000,
        idle_sleep: float = 2.0,
    ) -> None:
        self._store = store
        self._driver = driver
        self._sink = sink
        self._options = options or SessionOptions()
        self._limiter = limiter or NoopLimiter()
        self._extractor = extractor
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._backoff_ms = backoff_ms
        self._idle_sleep = idle_sleep
        self._stopping = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: JobStore,
        driver: AutomationDriver,
        sink: Sink,
        limiter: Limiter | None = None,
    ) -> "WorkerLoop":
        return cls(
            store,
            driver,
            sink,
            options=SessionOptions.from_settings(settings),
            limiter=limiter,
            batch_size=settings.worker_batch_size,
            max_attempts=settings.worker_max_attempts,
            backoff_ms=settings.worker_backoff_ms,
            idle_sleep=settings.worker_idle_sleep,
        )

    def stop(self) -> None:
        """Ask the loop to finish the current iteration and return."""
        self._stopping.set()

    async def run(self, stop_when_drained: bool = True) -> WorkerStats:
        """
        Process jobs until stopped, or until nothing is claimable.

        Raises:
            StoreError: If the queue could not be read or updated
        """
        total = WorkerStats()
        self._stopping.clear()
        logger.info("worker_start", batch_size=self._batch_size, max_attempts=self._max_attempts)

        while not self._stopping.is_set():
            stats = await self.run_once()
            total.add(stats)

            if stats.claimed == 0 and stop_when_drained:
                logger.info("queue_drained")
                break

            await self._sleep()

        logger.info(
            "worker_stop",
            claimed=total.claimed,
            done=total.done,
            failed=total.failed,
            abandoned=total.abandoned,
        )
        return total

    async def _sleep(self) -> None:
        if self._idle_sleep <= 0:
            return
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self._idle_sleep)
        except TimeoutError:
            pass

    async def run_once(self) -> WorkerStats:
        """Claim one batch and process it."""
        stats = WorkerStats()
        jobs = await self._store.claim_batch(self._batch_size)
        stats.claimed = len(jobs)

        for job in jobs:
            with bound_context(job_id=job.id, file_number=job.filing_number):
                await self._handle(job, stats)

        return stats

    async def _handle(self, job: QueueJob, stats: WorkerStats) -> None:
        logger.info("job_start", attempts=job.attempts, site=job.site)
        try:
            record = await self._extract(job)
            await self._sink.append([record])
        except DatabaseError:
            raise
        except LienflowError as e:
            await self._fail(job, e.message, stats)
            return
        except Exception as e:
            logger.exception("job_crashed", error=str(e))
            await self._fail(job, f"{type(e).__name__}: {e}", stats)
            return

        await self._store.mark_done([job.id])
        stats.done += 1
        logger.info("job_done", partial=record.is_partial)

    async def _extract(self, job: QueueJob) -> LienRecord:
        profile = get_source(job.site)
        session = ExtractionSession(
            self._driver,
            profile,
            self._options,
            limiter=self._limiter,
            extractor=self._extractor,
        )
        result = await session.run(SearchQuery.for_file_number(job.filing_number))

        wanted = job.filing_number.strip().upper()
        record = next(
            (r for r in result.records if r.file_number.strip().upper() == wanted),
            None,
        )
        if record is None:
            raise SessionError(
                f"No record found for {job.filing_number}",
                details={"total_results": result.total_results},
            )

        defaults = {
            "filing_date": job.filing_date,
            "source": job.site,
            "state": profile.state,
        }
        return record.model_copy(
            update={key: value for key, value in defaults.items() if not getattr(record, key)}
        )

    async def _fail(self, job: QueueJob, error: str, stats: WorkerStats) -> None:
        if job.attempts >= self._max_attempts:
            await self._store.mark_abandoned([job.id], error=error)
            stats.abandoned += 1
            logger.warning("job_abandoned", attempts=job.attempts, error=error)
            return

        await self._store.mark_failed([job.id], self._backoff_ms, error=error)
        stats.failed += 1
        logger.warning("job_failed", attempts=job.attempts, error=error)
