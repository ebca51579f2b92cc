"""
Scrape trigger: runs discovery for a requested date range.

A search reporting more results than the source will list is split into two
halves, recursively, down to single days. Windows are scanned oldest first
and the record budget (``max_records``) is shared across them.
"""

import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime, timedelta

from lienflow.core.config import Settings, get_settings
from lienflow.core.sources import get_source
from lienflow.database.repository import JobStore
from lienflow.extractors.driver import AutomationDriver, PlaywrightDriver
from lienflow.extractors.session import SessionOptions
from lienflow.models.jobs import DATE_FORMAT, ScanMode, ScrapeRequest, ScrapeResponse
from lienflow.models.records import ExtractionCursor
from lienflow.services.discovery import DiscoveryScan, ScanOutcome
from lienflow.services.sinks import Sink
from lienflow.utils.exceptions import DateRangeError, LienflowError
from lienflow.utils.logging import get_logger
from lienflow.utils.throttle import Limiter, RateLimiter

logger = get_logger(__name__)

DriverFactory = Callable[[], AbstractAsyncContextManager[AutomationDriver]]


def parse_date(value: str) -> date:
    """
    Parse an MM/DD/YYYY date.

    Raises:
        DateRangeError: If the value is not a valid date
    """
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except ValueError as e:
        raise DateRangeError(f"Invalid date: {value!r}", details={"format": "MM/DD/YYYY"}) from e


def format_date(value: date) -> str:
    return value.strftime(DATE_FORMAT)


def split_range(start: date, end: date) -> tuple[tuple[date, date], tuple[date, date]]:
    """
    Split ``[start, end]`` into two adjacent halves.

    Raises:
        DateRangeError: If the range is a single day
    """
    if start >= end:
        raise DateRangeError(
            f"Cannot split single-day window {format_date(start)}",
            details={"date": format_date(start)},
        )
    middle = start + (end - start) // 2
    return (start, middle), (middle + timedelta(days=1), end)


class ScrapeService:
    """
    Runs a scrape request end to end.

    Args:
        store: Job store for queued mode
        sink: Sink for sync mode
        settings: Source defaults and session tuning
        driver_factory: Opens an automation driver for the duration of a scrape
        limiter: Paces calls to the source

    Usage:
        service = ScrapeService(store, sink)
        response = await service.scrape(ScrapeRequest(date_start="01/01/2026",
                                                       date_end="01/31/2026"))
    """

    def __init__(
        self,
        store: JobStore | None,
        sink: Sink | None,
        settings: Settings | None = None,
        driver_factory: DriverFactory | None = None,
        limiter: Limiter | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._settings = settings or get_settings()
        self._driver_factory = driver_factory or (lambda: PlaywrightDriver(self._settings))
        self._limiter = limiter or RateLimiter(
            self._settings.rate_limit_min_interval_ms,
            self._settings.rate_limit_max_concurrent,
        )

    async def scrape(self, request: ScrapeRequest) -> ScrapeResponse:
        """
        Scrape the requested window, splitting it while it is too large.

        Raises:
            SourceNotSupportedError: Unknown site
            DateRangeError: Malformed window, or a single day above the ceiling
            SessionError: Session-fatal failure. Its details name the failing
                window; resume that window with the cursor, then scrape from
                the day after ``window_end`` to ``request_end``.
        """
        profile = get_source(request.site)
        start, end = parse_date(request.date_start), parse_date(request.date_end)
        if start > end:
            raise DateRangeError(
                "date_start must not be after date_end",
                details={"date_start": request.date_start, "date_end": request.date_end},
            )

        budget = request.max_records or self._settings.default_max_records
        started = time.monotonic()
        response = ScrapeResponse(windows=0)

        logger.info(
            "scrape_start",
            site=request.site,
            date_start=request.date_start,
            date_end=request.date_end,
            mode=request.mode.value,
            max_records=budget,
        )

        async with self._driver_factory() as driver:
            scan = DiscoveryScan(
                driver,
                profile,
                store=self._store,
                sink=self._sink,
                options=SessionOptions.from_settings(self._settings),
                limiter=self._limiter,
                search_term=self._settings.search_term,
                file_type=self._settings.file_type,
            )
            pending = [(start, end, request.resume_cursor)]
            while pending and response.records_scraped < budget:
                window_start, window_end, cursor = pending.pop(0)
                try:
                    outcome = await self._scan(
                        scan,
                        window_start,
                        window_end,
                        request.mode,
                        budget - response.records_scraped,
                        cursor,
                    )
                except LienflowError as e:
                    # the cursor on the error is relative to this window only
                    e.details.update(
                        window_start=format_date(window_start),
                        window_end=format_date(window_end),
                        request_end=format_date(end),
                        windows_completed=response.windows,
                    )
                    raise
                if outcome.too_many_results:
                    first, second = split_range(window_start, window_end)
                    logger.info(
                        "window_split",
                        total_results=outcome.total_results,
                        first=[format_date(d) for d in first],
                        second=[format_date(d) for d in second],
                    )
                    pending[:0] = [(*first, None), (*second, None)]
                    continue

                response.windows += 1
                response.records_scraped += outcome.records_scraped
                response.rows_uploaded += outcome.rows_delivered
                response.jobs_enqueued += outcome.jobs_enqueued
                response.cursor = outcome.cursor

        response.duration_seconds = round(time.monotonic() - started, 2)
        logger.info(
            "scrape_complete",
            records=response.records_scraped,
            rows_uploaded=response.rows_uploaded,
            jobs_enqueued=response.jobs_enqueued,
            windows=response.windows,
            duration_seconds=response.duration_seconds,
        )
        return response

    async def _scan(
        self,
        scan: DiscoveryScan,
        start: date,
        end: date,
        mode: ScanMode,
        max_records: int,
        cursor: ExtractionCursor | None,
    ) -> ScanOutcome:
        return await scan.run(
            format_date(start),
            format_date(end),
            mode=mode,
            max_records=max_records,
            cursor=cursor,
        )
