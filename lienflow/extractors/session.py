"""
Extraction session: the search → paginate → row → detail → history →
download → close interaction with a filing source, as an explicit state
machine.

Each state has one handler returning the next state. Every UI transition
goes through the same bounded retry (``ui_retrying``). A failure inside a
row degrades that row to a partial record; only failures that leave the
session without a usable listing (navigation, search form, result counter)
end the session with ``SessionError``.

    INIT → SEARCHING → PAGINATING → ROW_OPEN → DETAIL_EXTRACTED → HISTORY_OPEN
         → DOWNLOADED | NO_DOWNLOAD → ROW_CLOSED → PAGINATING ... → DONE

    SEARCHING → TOO_MANY_RESULTS   (result count above the ceiling)
    any       → ERROR              (session-fatal failure, raised)

A session can be resumed from an ``ExtractionCursor``: it jumps to the
cursor's page and starts that page at the cursor's row.
"""

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Self

from lienflow.core.config import Settings
from lienflow.core.sources import SourceProfile
from lienflow.extractors.base import ui_retrying
from lienflow.extractors.driver import AutomationDriver
from lienflow.extractors.fields import FieldExtractor
from lienflow.models.records import ExtractionCursor, LienRecord, RecordError
from lienflow.utils.exceptions import FileError, SessionError, SessionTimeoutError, UIActionError
from lienflow.utils.files import document_filename, ensure_dir
from lienflow.utils.logging import get_logger
from lienflow.utils.throttle import Limiter, NoopLimiter, human_delay

logger = get_logger(__name__)

_RESULT_COUNT = re.compile(r"Results:\s*([\d,]+)")


class SessionState(str, Enum):
    """States of an extraction session."""

    INIT = "init"
    SEARCHING = "searching"
    PAGINATING = "paginating"
    ROW_OPEN = "row_open"
    DETAIL_EXTRACTED = "detail_extracted"
    HISTORY_OPEN = "history_open"
    DOWNLOADED = "downloaded"
    NO_DOWNLOAD = "no_download"
    ROW_CLOSED = "row_closed"
    DONE = "done"
    TOO_MANY_RESULTS = "too_many_results"
    ERROR = "error"


TERMINAL_STATES = frozenset({SessionState.DONE, SessionState.TOO_MANY_RESULTS, SessionState.ERROR})


@dataclass(frozen=True)
class SearchQuery:
    """
    What to search for.

    Listing mode sets a date window and a document type; detail mode searches
    one file number with no filters. With ``open_rows`` off only the listing
    columns are read.
    """

    term: str
    file_type: str | None = None
    date_start: str | None = None
    date_end: str | None = None
    max_records: int = 1000
    cursor: ExtractionCursor | None = None
    open_rows: bool = True

    @classmethod
    def for_file_number(cls, file_number: str) -> Self:
        return cls(term=file_number, max_records=1)


@dataclass(frozen=True)
class SessionOptions:
    """Tuning knobs of a session, normally derived from ``Settings``."""

    result_ceiling: int = 1000
    ui_attempts: int = 2
    ui_wait_timeout_ms: int = 8000
    delay_min_ms: int = 800
    delay_max_ms: int = 1800
    download_dir: Path = Path("./data/downloads")
    download_timeout_ms: int = 30000
    tag_missing_download: bool = False
    deadline_seconds: float | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> Self:
        return cls(
            result_ceiling=settings.result_ceiling,
            ui_attempts=settings.ui_retry_attempts,
            ui_wait_timeout_ms=settings.ui_wait_timeout,
            delay_min_ms=settings.human_delay_min_ms,
            delay_max_ms=settings.human_delay_max_ms,
            download_dir=Path(settings.download_dir),
            download_timeout_ms=settings.download_timeout,
            tag_missing_download=settings.tag_missing_download,
            deadline_seconds=settings.session_deadline_seconds,
        )


@dataclass
class SessionResult:
    """
    Outcome of one session.

    ``cursor`` points at the next row that was not processed, so passing it
    back as ``SearchQuery.cursor`` continues without gaps or duplicates.
    On the too-many-results path ``records`` is empty and ``total_results``
    carries the reported count.
    """

    records: list[LienRecord] = field(default_factory=list)
    cursor: ExtractionCursor = field(default_factory=ExtractionCursor)
    total_results: int = 0
    too_many_results: bool = False
    state: SessionState = SessionState.DONE
    duration_seconds: float = 0.0


@dataclass
class _Row:
    """Scratch state of the row being processed."""

    index: int
    summary: dict[str, str] = field(default_factory=dict)
    fields: dict[str, str] = field(default_factory=dict)
    error: RecordError | None = None
    history_open: bool = False
    panel_open: bool = False
    skipped: bool = False


class ExtractionSession:
    """
    One stateful interaction with a filing source.

    Args:
        driver: Automation capability (browser)
        profile: Layout of the source
        options: Retry, delay, ceiling and download settings
        limiter: Paces navigation and page loads against the source
        extractor: Label/value lookup for detail and history views

    Usage:
        session = ExtractionSession(driver, CA_SOS, SessionOptions(), limiter)
        result = await session.run(SearchQuery(term="Internal Revenue Service",
                                               file_type="Federal Tax Lien",
                                               date_start="01/01/2026",
                                               date_end="01/31/2026"))
    """

    def __init__(
        self,
        driver: AutomationDriver,
        profile: SourceProfile,
        options: SessionOptions | None = None,
        limiter: Limiter | None = None,
        extractor: FieldExtractor | None = None,
    ) -> None:
        self._driver = driver
        self._profile = profile
        self._options = options or SessionOptions()
        self._limiter = limiter or NoopLimiter()
        self._extractor = extractor or FieldExtractor()
        self._retrying = ui_retrying(
            attempts=self._options.ui_attempts,
            min_delay_ms=self._options.delay_min_ms,
            max_delay_ms=self._options.delay_max_ms,
        )
        self._handlers: dict[SessionState, Callable[[], Awaitable[SessionState]]] = {
            SessionState.INIT: self._on_init,
            SessionState.SEARCHING: self._on_searching,
            SessionState.PAGINATING: self._on_paginating,
            SessionState.ROW_OPEN: self._on_row_open,
            SessionState.DETAIL_EXTRACTED: self._on_detail_extracted,
            SessionState.HISTORY_OPEN: self._on_history_open,
            SessionState.DOWNLOADED: self._on_download_settled,
            SessionState.NO_DOWNLOAD: self._on_download_settled,
            SessionState.ROW_CLOSED: self._on_row_closed,
        }
        self._reset(SearchQuery(term=""))

    def _reset(self, query: SearchQuery) -> None:
        start = query.cursor or ExtractionCursor()
        self._query = query
        self._state = SessionState.INIT
        self._start = start
        self._page = start.page
        self._row_index = start.row_index
        self._row_count: int | None = None
        self._row: _Row | None = None
        self._records: list[LienRecord] = []
        self._total = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def cursor(self) -> ExtractionCursor:
        """Next unprocessed ``(page, row_index)``."""
        return ExtractionCursor(page=self._page, row_index=self._row_index)

    # ===================
    # Driving
    # ===================

    async def run(self, query: SearchQuery) -> SessionResult:
        """
        Run the session to a terminal state.

        Returns:
            SessionResult (``too_many_results`` set instead of raising)

        Raises:
            SessionError: Session-fatal failure, with the cursor reached
            SessionTimeoutError: Overall deadline exceeded
        """
        self._reset(query)
        started = time.monotonic()
        logger.info(
            "session_start",
            site=self._profile.site,
            term=query.term,
            date_start=query.date_start,
            date_end=query.date_end,
            cursor=self._start.as_tuple(),
        )

        try:
            async with asyncio.timeout(self._options.deadline_seconds):
                await self._drive()
        except TimeoutError as e:
            self._state = SessionState.ERROR
            await self._capture("deadline")
            timeout = SessionTimeoutError(
                f"Session exceeded {self._options.deadline_seconds}s deadline",
                cursor=self.cursor.as_tuple(),
            )
            timeout.records = list(self._records)
            logger.error(
                "session_timeout", cursor=self.cursor.as_tuple(), collected=len(self._records)
            )
            raise timeout from e
        except SessionError as e:
            self._state = SessionState.ERROR
            if e.cursor is None:
                e.cursor = self.cursor.as_tuple()
                e.details["cursor"] = {"page": self._page, "row_index": self._row_index}
            e.records = list(self._records)
            await self._capture("fatal-error")
            logger.error(
                "session_error",
                error=e.message,
                cursor=self.cursor.as_tuple(),
                collected=len(self._records),
            )
            raise

        result = SessionResult(
            records=list(self._records) if self._state is SessionState.DONE else [],
            cursor=self.cursor,
            total_results=self._total,
            too_many_results=self._state is SessionState.TOO_MANY_RESULTS,
            state=self._state,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        logger.info(
            "session_complete",
            state=self._state.value,
            records=len(result.records),
            total_results=self._total,
            cursor=result.cursor.as_tuple(),
        )
        return result

    async def _drive(self) -> None:
        while self._state not in TERMINAL_STATES:
            handler = self._handlers[self._state]
            try:
                self._state = await handler()
            except UIActionError as e:
                if self._row is None:
                    raise SessionError(
                        f"{self._state.value} failed: {e.message}", details=e.details
                    ) from e
                self._state = await self._skip_row(e)

    async def _skip_row(self, error: UIActionError) -> SessionState:
        """
        Give up on the current row after an unexpected UI failure.

        A row whose file number was read is kept as a ``row_failed`` partial
        record; one without is dropped.
        """
        row = self._row
        assert row is not None
        logger.warning(
            "row_error",
            state=self._state.value,
            page=self._page,
            row_index=row.index,
            file_number=row.summary.get("file_number"),
            error=error.message,
        )
        await self._close_quietly("Escape")
        if row.summary.get("file_number") and not row.skipped:
            row.error = RecordError.ROW_FAILED
            self._records.append(self._build_record(row))
        self._row_index = row.index + 1
        self._row = None
        return SessionState.PAGINATING

    async def _attempt(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run one UI action under the bounded retry; re-raises the last UIActionError."""
        return await self._retrying.copy()(fn, *args)

    async def _required(self, step: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """A UI action the session cannot continue without."""
        try:
            return await self._attempt(fn, *args)
        except UIActionError as e:
            raise SessionError(f"{step} failed: {e.message}", details=e.details) from e

    async def _pause(self) -> None:
        await human_delay(self._options.delay_min_ms, self._options.delay_max_ms)

    async def _safe_text(self, target: str) -> str:
        try:
            return await self._driver.text(target, timeout_ms=3000)
        except UIActionError:
            return ""

    async def _capture(self, label: str) -> None:
        """Best-effort debug screenshot."""
        path = self._options.download_dir.parent / f"debug-{label}-{int(time.time() * 1000)}.png"
        try:
            await self._driver.screenshot(path)
            logger.info("screenshot_saved", path=str(path), label=label)
        except Exception as e:  # noqa: BLE001
            logger.warning("screenshot_failed", label=label, error=str(e))

    # ===================
    # Search
    # ===================

    async def _on_init(self) -> SessionState:
        profile = self._profile
        logger.info("navigate", url=profile.search_url)
        await self._limiter.schedule(lambda: self._driver.goto(profile.search_url))
        await self._required(
            "search form", self._driver.wait_visible, profile.search_input, self._options.ui_wait_timeout_ms
        )
        await self._pause()
        return SessionState.SEARCHING

    async def _on_searching(self) -> SessionState:
        profile, query, driver = self._profile, self._query, self._driver

        logger.info("fill_search", term=query.term)
        await self._required("fill search", driver.fill, profile.search_input, query.term)
        await self._pause()

        if query.file_type or query.date_start or query.date_end:
            await self._required("open advanced", driver.click, profile.advanced_button)
            if query.file_type:
                await self._required(
                    "select file type", driver.select_option, profile.file_type_select, query.file_type
                )
                await self._pause()
            if query.date_start:
                await self._required("fill date start", driver.fill, profile.date_start_input, query.date_start)
                await self._pause()
            if query.date_end:
                await self._required("fill date end", driver.fill, profile.date_end_input, query.date_end)
                await self._attempt(driver.press, "Tab", profile.date_end_input)
                await self._pause()

        logger.info("submit_search")
        await self._required("submit search", driver.click, profile.submit_button)
        await self._limiter.schedule(driver.wait_for_load)
        await self._pause()

        await self._required("result count", driver.wait_visible, profile.result_count, 30000)
        self._total = self._parse_count(await driver.text(profile.result_count))
        logger.info("results_found", total=self._total)

        if self._total > self._options.result_ceiling:
            logger.warning(
                "too_many_results", total=self._total, ceiling=self._options.result_ceiling
            )
            return SessionState.TOO_MANY_RESULTS

        if self._total == 0:
            return SessionState.DONE

        if self._page > 1:
            logger.info("resume_jump", page=self._page, row_index=self._row_index)
            await self._required("jump to page", driver.click, profile.page(self._page))
            await self._limiter.schedule(driver.wait_for_load)

        return SessionState.PAGINATING

    @staticmethod
    def _parse_count(text: str) -> int:
        match = _RESULT_COUNT.search(text or "")
        if match is None:
            raise SessionError("Result counter unreadable", details={"text": text})
        return int(match.group(1).replace(",", ""))

    # ===================
    # Pagination
    # ===================

    def _limit_reached(self) -> bool:
        return len(self._records) >= self._query.max_records

    async def _on_paginating(self) -> SessionState:
        if self._row_count is None:
            self._row_count = await self._driver.count(self._profile.rows)
            logger.debug("page_loaded", page=self._page, rows=self._row_count)

        if self._limit_reached():
            return SessionState.DONE

        if self._row_index < self._row_count:
            self._row = _Row(index=self._row_index)
            return SessionState.ROW_OPEN

        if not await self._driver.is_visible(self._profile.next_page_button):
            return SessionState.DONE

        await self._required("next page", self._driver.click, self._profile.next_page_button)
        await self._limiter.schedule(self._driver.wait_for_load)
        await self._pause()
        self._page += 1
        self._row_index = 0
        self._row_count = None
        return SessionState.PAGINATING

    # ===================
    # Row handling
    # ===================

    async def _on_row_open(self) -> SessionState:
        row, profile = self._row, self._profile
        assert row is not None

        for column in profile.columns:
            row.summary[column] = await self._safe_text(profile.cell(row.index, column))

        file_number = row.summary.get("file_number", "")
        if not file_number:
            row.skipped = True
            return SessionState.ROW_CLOSED

        if not self._query.open_rows:
            return SessionState.ROW_CLOSED

        try:
            await self._attempt(self._open_panel, row.index, file_number)
        except UIActionError as e:
            logger.warning("panel_failed", file_number=file_number, error=e.message)
            row.error = RecordError.PANEL_FAILED
            return SessionState.ROW_CLOSED

        row.panel_open = True
        return SessionState.DETAIL_EXTRACTED

    async def _open_panel(self, row_index: int, file_number: str) -> None:
        await self._driver.click(self._profile.row_control(row_index))
        await self._driver.wait_visible(
            self._profile.panel_for(file_number), self._options.ui_wait_timeout_ms
        )

    async def _on_detail_extracted(self) -> SessionState:
        row = self._row
        assert row is not None
        file_number = row.summary["file_number"]

        try:
            html = await self._driver.html(self._profile.panel_for(file_number), timeout_ms=3000)
        except UIActionError as e:
            logger.warning("detail_unreadable", file_number=file_number, error=e.message)
            html = ""
        row.fields.update(self._extractor.extract_many(html, self._profile.detail_labels))

        try:
            await self._attempt(self._open_history)
        except UIActionError as e:
            logger.warning("history_failed", file_number=file_number, error=e.message)
            row.error = RecordError.HISTORY_FAILED
            return SessionState.ROW_CLOSED

        row.history_open = True
        return SessionState.HISTORY_OPEN

    async def _open_history(self) -> None:
        await self._driver.click(self._profile.history_button)
        await self._driver.wait_visible(self._profile.history_dialog, self._options.ui_wait_timeout_ms)

    async def _on_history_open(self) -> SessionState:
        row, profile, driver = self._row, self._profile, self._driver
        assert row is not None
        file_number = row.summary["file_number"]

        try:
            html = await driver.html(profile.history_dialog, timeout_ms=3000)
        except UIActionError:
            html = ""
        row.fields.update(self._extractor.extract_many(html, profile.history_labels))

        if not await driver.is_visible(profile.download_link):
            logger.info("no_download", file_number=file_number)
            return SessionState.NO_DOWNLOAD

        filename = document_filename(file_number, row.summary.get("filing_date", ""))
        dest = self._options.download_dir / filename
        try:
            ensure_dir(self._options.download_dir)
            await driver.download(profile.download_link, dest, self._options.download_timeout_ms)
        except (UIActionError, FileError, OSError) as e:
            logger.warning("pdf_fail", file_number=file_number, error=str(e))
            row.fields["pdf_filename"] = ""
            return SessionState.DOWNLOADED

        row.fields["pdf_filename"] = filename
        logger.info("pdf_downloaded", file_number=file_number, path=str(dest))
        return SessionState.DOWNLOADED

    async def _on_download_settled(self) -> SessionState:
        row = self._row
        assert row is not None
        if self._state is SessionState.NO_DOWNLOAD and self._options.tag_missing_download:
            row.error = RecordError.NO_DOWNLOAD_AVAILABLE
        return SessionState.ROW_CLOSED

    async def _on_row_closed(self) -> SessionState:
        row = self._row
        assert row is not None

        if row.history_open:
            await self._close_quietly("Escape")
        if row.panel_open or row.error is RecordError.PANEL_FAILED:
            try:
                await self._driver.click(self._profile.close_button)
            except UIActionError:
                await self._close_quietly("Escape")

        if not row.skipped:
            record = self._build_record(row)
            self._records.append(record)
            logger.info(
                "record_collected",
                total=len(self._records),
                file_number=record.file_number,
                error=record.error,
                page=self._page,
                row_index=row.index,
            )

        self._row_index = row.index + 1
        self._row = None
        return SessionState.PAGINATING

    async def _close_quietly(self, key: str) -> None:
        try:
            await self._driver.press(key)
        except UIActionError as e:
            logger.debug("close_gesture_failed", key=key, error=e.message)

    def _build_record(self, row: _Row) -> LienRecord:
        values = {**row.summary, **row.fields}
        return LienRecord(
            state=self._profile.state,
            source=self._profile.site,
            **values,
            processed=row.error is None,
            error=row.error.value if row.error else None,
        )
