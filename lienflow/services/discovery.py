"""
Discovery scan: one listing search over a date window.

Runs a listing-mode extraction session and routes what it finds. In queued
mode only the filing identities are stored as jobs (rows are not opened);
in sync mode the fully extracted records go straight to the sink.
"""

from dataclasses import dataclass, field

from lienflow.core.sources import SourceProfile
from lienflow.database.repository import JobStore
from lienflow.extractors.driver import AutomationDriver
from lienflow.extractors.fields import FieldExtractor
from lienflow.extractors.session import ExtractionSession, SearchQuery, SessionOptions
from lienflow.models.jobs import ScanMode
from lienflow.models.records import ExtractionCursor, LienRecord
from lienflow.services.sinks import Sink
from lienflow.utils.exceptions import ConfigurationError, LienflowError, SessionError
from lienflow.utils.logging import get_logger
from lienflow.utils.throttle import Limiter, NoopLimiter

logger = get_logger(__name__)

__all__ = ["DiscoveryScan", "ScanMode", "ScanOutcome"]


@dataclass
class ScanOutcome:
    """Result of one scan."""

    records_scraped: int = 0
    rows_delivered: int = 0
    jobs_enqueued: int = 0
    cursor: ExtractionCursor = field(default_factory=ExtractionCursor)
    too_many_results: bool = False
    total_results: int = 0
    duration_seconds: float = 0.0


class DiscoveryScan:
    """
    Listing search routed to the job store or a sink.

    Args:
        driver: Automation capability shared with the session
        profile: Source being scanned
        store: Job store (required for queued mode)
        sink: Record sink (required for sync mode)
        options: Session tuning
        limiter: Paces calls to the source
        search_term: Name searched for
        file_type: Document type filter

    Usage:
        scan = DiscoveryScan(driver, CA_SOS, store=store, limiter=limiter)
        outcome = await scan.run("01/01/2026", "01/31/2026", mode=ScanMode.QUEUED)
    """

    def __init__(
        self,
        driver: AutomationDriver,
        profile: SourceProfile,
        *,
        store: JobStore | None = None,
        sink: Sink | None = None,
        options: SessionOptions | None = None,
        limiter: Limiter | None = None,
        extractor: FieldExtractor | None = None,
        search_term: str = "Internal Revenue Service",
        file_type: str | None = "Federal Tax Lien",
    ) -> None:
        self._driver = driver
        self._profile = profile
        self._store = store
        self._sink = sink
        self._options = options or SessionOptions()
        self._limiter = limiter or NoopLimiter()
        self._extractor = extractor
        self._search_term = search_term
        self._file_type = file_type

    async def run(
        self,
        date_start: str,
        date_end: str,
        *,
        mode: ScanMode = ScanMode.QUEUED,
        max_records: int = 1000,
        cursor: ExtractionCursor | None = None,
    ) -> ScanOutcome:
        """
        Scan one date window.

        ``too_many_results`` on the outcome means nothing was collected and
        the caller should split the window.

        Raises:
            ConfigurationError: If the destination for ``mode`` is missing
            SessionError: If the session failed; rows collected before the
                failure are delivered first, so its cursor resumes without gaps
            StoreError: If the discovered jobs could not be stored
            SinkError: If the records could not be delivered
        """
        if mode is ScanMode.QUEUED and self._store is None:
            raise ConfigurationError("Queued scans need a job store")
        if mode is ScanMode.SYNC and self._sink is None:
            raise ConfigurationError("Sync scans need a sink")

        session = ExtractionSession(
            self._driver,
            self._profile,
            self._options,
            limiter=self._limiter,
            extractor=self._extractor,
        )
        query = SearchQuery(
            term=self._search_term,
            file_type=self._file_type,
            date_start=date_start,
            date_end=date_end,
            max_records=max_records,
            cursor=cursor,
            open_rows=mode is ScanMode.SYNC,
        )
        try:
            result = await session.run(query)
        except SessionError as e:
            await self._salvage(e, mode, query.cursor or ExtractionCursor())
            raise

        outcome = ScanOutcome(
            records_scraped=len(result.records),
            cursor=result.cursor,
            too_many_results=result.too_many_results,
            total_results=result.total_results,
            duration_seconds=result.duration_seconds,
        )
        if result.too_many_results or not result.records:
            return outcome

        if mode is ScanMode.QUEUED:
            outcome.jobs_enqueued = await self._route(mode, result.records)
        else:
            outcome.rows_delivered = await self._route(mode, result.records)

        logger.info(
            "scan_complete",
            site=self._profile.site,
            mode=mode.value,
            date_start=date_start,
            date_end=date_end,
            records=outcome.records_scraped,
            enqueued=outcome.jobs_enqueued,
            delivered=outcome.rows_delivered,
        )
        return outcome

    async def _route(self, mode: ScanMode, records: list[LienRecord]) -> int:
        if mode is ScanMode.QUEUED:
            return await self._store.insert_many(record.discovered() for record in records)
        return await self._sink.append(records)

    async def _salvage(self, error: SessionError, mode: ScanMode, start: ExtractionCursor) -> None:
        """
        Deliver the records a failed session collected before it failed.

        Afterwards the error's cursor is a gap-free resume point. If the
        delivery itself fails, that failure is raised instead, carrying the
        cursor the session started from.
        """
        if not error.records:
            return
        try:
            delivered = await self._route(mode, error.records)
        except LienflowError as delivery_error:
            delivery_error.details["cursor"] = {"page": start.page, "row_index": start.row_index}
            logger.error(
                "salvage_failed",
                collected=len(error.records),
                error=delivery_error.message,
                resume_cursor=start.as_tuple(),
            )
            raise delivery_error from error

        error.details["salvaged"] = len(error.records)
        logger.warning(
            "session_salvaged",
            mode=mode.value,
            collected=len(error.records),
            delivered=delivered,
            resume_cursor=error.cursor,
        )
