"""
Pytest configuration and fixtures.

Provides shared fixtures for testing Lienflow.

Modern pytest-asyncio configuration (v0.23+):

Configuration in pyproject.toml:
    asyncio_mode = "auto"
        - Auto-detects async test functions
        - No need for @pytest.mark.asyncio decorator

    asyncio_default_fixture_loop_scope = "session"
        - Async fixtures share session-scoped event loop by default

Fixture scoping patterns:
    @pytest_asyncio.fixture(loop_scope="session", scope="function")
        - loop_scope: which event loop to run in (session = shared)
        - scope: how long to cache fixture value (function = fresh each test)

The ``FakeDriver`` below stands in for the browser. It understands the
locators ``CA_SOS`` produces and serves a paginated listing of
``FakeFiling`` rows, with knobs for injecting UI failures.
"""

import asyncio
import re
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from lienflow.core.config import Settings
from lienflow.core.sources import CA_SOS, SourceProfile
from lienflow.database.connection import create_engine_for, create_session_factory, init_db
from lienflow.database.models import Base
from lienflow.database.repository import JobStore
from lienflow.extractors.session import SessionOptions
from lienflow.models.records import DiscoveredFiling
from lienflow.utils.exceptions import SessionError, UIActionError

# ============================================================
# Settings Fixtures
# ============================================================


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with in-memory database."""
    return Settings(
        app_name="Lienflow Test",
        debug=True,
        log_level="DEBUG",
        api_key="test-api-key-for-testing-purposes-1234567890",
        database_url="sqlite+aiosqlite:///:memory:",
        playwright_headless=True,
        playwright_timeout=10000,
        download_dir=str(tmp_path / "downloads"),
        human_delay_min_ms=0,
        human_delay_max_ms=0,
        rate_limit_min_interval_ms=0,
        worker_idle_sleep=0,
        sink="memory",
    )


@pytest.fixture
def session_options(tmp_path: Path) -> SessionOptions:
    """Session options without human delays, downloading into tmp_path."""
    return SessionOptions(
        delay_min_ms=0,
        delay_max_ms=0,
        ui_wait_timeout_ms=10,
        download_dir=tmp_path / "downloads",
    )


# ============================================================
# Database Fixtures
# ============================================================


class MutableClock:
    """Clock the tests move forward by hand."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 20, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest_asyncio.fixture(loop_scope="session", scope="function")
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a test database engine with in-memory SQLite.

    Uses session-scoped event loop but function-scoped caching
    for test isolation.
    """
    engine = create_engine_for("sqlite+aiosqlite:///:memory:")
    await init_db(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession], clock: MutableClock) -> JobStore:
    """Job store over the in-memory database with a hand-driven clock."""
    return JobStore(session_factory, clock=clock)


@pytest.fixture
def discovered() -> Callable[..., DiscoveredFiling]:
    def _make(file_number: str, filing_date: str = "01/20/2026", source: str = "ca_sos"):
        return DiscoveredFiling(source=source, file_number=file_number, filing_date=filing_date)

    return _make


# ============================================================
# Automation Fixtures
# ============================================================


@dataclass
class FakeFiling:
    """One row of the fake listing with its detail and history views."""

    file_number: str
    filing_date: str = "01/20/2026"
    ucc_type: str = "Federal Tax Lien"
    status: str = "Active"
    lapse_date: str = "12/31/9999"
    debtor_name: str = "JOHN SMITH"
    debtor_address: str = "1 MAIN ST, SACRAMENTO, CA"
    secured_party_name: str = "INTERNAL REVENUE SERVICE"
    secured_party_address: str = "PO BOX 145595, CINCINNATI, OH"
    document_type: str = "Lien Financing Stmt"
    has_download: bool = True

    def cells(self) -> list[str]:
        return [
            self.ucc_type,
            self.debtor_name,
            self.file_number,
            self.secured_party_name,
            self.status,
            self.filing_date,
            self.lapse_date,
        ]


_ROW_CELL = re.compile(r"nth=(\d+) >> td >> nth=(\d+)$")
_ROW_CONTROL = re.compile(r"nth=(\d+) >> .* >> nth=0$")
_HAS_TEXT = re.compile(r':has-text\("(.+)"\)$')
_PAGE_BUTTON = re.compile(r"^role=button:\^(\d+)\$$")


@dataclass
class FakeDriver:
    """
    In-memory automation driver serving a paginated listing.

    Failure knobs:
        reported_total: Overrides the "Results: N" counter
        total_for: Computes the counter from the submitted form (None: real count)
        panel_failures: file number -> failing panel opens (-1 forever)
        history_failures: file number -> failing history opens (-1 forever)
        download_failures: file numbers whose download raises
        fail_goto: navigation raises SessionError
        fail_row_reads: rows (page, index) whose cells cannot be read
        broken_next_pages: pages whose Next Page click raises
        download_check_failures: file numbers whose download-link check raises
        stall_on_page: page whose load hangs for ``stall_seconds``
    """

    filings: list[FakeFiling] = field(default_factory=list)
    page_size: int = 3
    profile: SourceProfile = CA_SOS
    reported_total: int | None = None
    total_for: Callable[[dict[str, str]], int | None] | None = None
    panel_failures: dict[str, int] = field(default_factory=dict)
    history_failures: dict[str, int] = field(default_factory=dict)
    download_failures: set[str] = field(default_factory=set)
    fail_goto: bool = False
    fail_row_reads: set[tuple[int, int]] = field(default_factory=set)
    broken_next_pages: set[int] = field(default_factory=set)
    download_check_failures: set[str] = field(default_factory=set)
    stall_on_page: int | None = None
    stall_seconds: float = 5.0

    calls: list[tuple[str, Any]] = field(default_factory=list)
    searches: list[dict[str, str]] = field(default_factory=list)
    downloads: list[Path] = field(default_factory=list)
    opened_rows: list[str] = field(default_factory=list)
    closed: bool = False

    def __post_init__(self) -> None:
        self._form: dict[str, str] = {}
        self._results: list[FakeFiling] = []
        self._page = 1
        self._open: FakeFiling | None = None
        self._history_open = False

    async def __aenter__(self) -> "FakeDriver":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ----- listing helpers -----

    def _page_rows(self) -> list[FakeFiling]:
        start = (self._page - 1) * self.page_size
        return self._results[start : start + self.page_size]

    def _page_count(self) -> int:
        return max(1, -(-len(self._results) // self.page_size))

    def _run_search(self) -> None:
        term = self._form.get(self.profile.search_input, "")
        self.searches.append(dict(self._form))
        if self.profile.file_type_select in self._form:
            self._results = list(self.filings)
        else:
            self._results = [f for f in self.filings if f.file_number == term]
        self._page = 1

    @staticmethod
    def _consume(failures: dict[str, int], file_number: str) -> bool:
        remaining = failures.get(file_number, 0)
        if remaining == 0:
            return False
        if remaining > 0:
            failures[file_number] = remaining - 1
        return True

    # ----- AutomationDriver -----

    async def goto(self, url: str) -> None:
        self.calls.append(("goto", url))
        if self.fail_goto:
            raise SessionError(f"Navigation failed: {url}")
        self._form = {}
        self._results = []
        self._open = None
        self._history_open = False

    async def fill(self, target: str, value: str) -> None:
        self.calls.append(("fill", (target, value)))
        self._form[target] = value

    async def select_option(self, target: str, label: str) -> None:
        self.calls.append(("select_option", (target, label)))
        self._form[target] = label

    async def click(self, target: str) -> None:
        self.calls.append(("click", target))
        profile = self.profile

        if target == profile.submit_button:
            self._run_search()
        elif target == profile.next_page_button:
            if self._page >= self._page_count():
                raise UIActionError("Next Page not visible", action="click", locator=target)
            if self._page in self.broken_next_pages:
                raise UIActionError("Next Page click intercepted", action="click", locator=target)
            self._page += 1
        elif target == profile.history_button:
            if self._open is None:
                raise UIActionError("No panel open", action="click", locator=target)
            if not self._consume(self.history_failures, self._open.file_number):
                self._history_open = True
        elif target == profile.close_button:
            self._open = None
            self._history_open = False
        elif target == profile.advanced_button:
            pass
        elif match := _PAGE_BUTTON.match(target):
            page = int(match.group(1))
            if page > self._page_count():
                raise UIActionError(f"Page {page} not available", action="click", locator=target)
            self._page = page
        elif match := _ROW_CONTROL.search(target):
            rows = self._page_rows()
            index = int(match.group(1))
            if index >= len(rows):
                raise UIActionError("Row not found", action="click", locator=target)
            filing = rows[index]
            self.opened_rows.append(filing.file_number)
            if not self._consume(self.panel_failures, filing.file_number):
                self._open = filing
        else:
            raise UIActionError(f"Unknown target {target}", action="click", locator=target)

    async def press(self, key: str, target: str | None = None) -> None:
        self.calls.append(("press", key))
        if key == "Escape":
            if self._history_open:
                self._history_open = False
            else:
                self._open = None

    async def wait_for_load(self) -> None:
        if self._page == self.stall_on_page:
            await asyncio.sleep(self.stall_seconds)

    async def wait_visible(self, target: str, timeout_ms: int | None = None) -> None:
        if not await self.is_visible(target):
            raise UIActionError("Not visible", action="wait_visible", locator=target)

    async def is_visible(self, target: str, timeout_ms: int = 0) -> bool:
        profile = self.profile
        if target in (profile.search_input, profile.result_count):
            return True
        if target == profile.next_page_button:
            return self._page < self._page_count()
        if target == profile.history_dialog:
            return self._history_open
        if target == profile.download_link:
            if self._open and self._open.file_number in self.download_check_failures:
                raise UIActionError(
                    "Download link check failed", action="is_visible", locator=target
                )
            return bool(self._history_open and self._open and self._open.has_download)
        if match := _HAS_TEXT.search(target):
            return self._open is not None and self._open.file_number == match.group(1)
        return False

    async def count(self, target: str) -> int:
        return len(self._page_rows())

    async def text(self, target: str, timeout_ms: int | None = None) -> str:
        if target == self.profile.result_count:
            total = self.reported_total
            if self.total_for is not None:
                total = self.total_for(self.searches[-1])
            if total is None:
                total = len(self._results)
            return f"Results: {total:,}"
        if match := _ROW_CELL.search(target):
            index, column = int(match.group(1)), int(match.group(2))
            rows = self._page_rows()
            if index >= len(rows) or (self._page, index) in self.fail_row_reads:
                raise UIActionError("Cell not found", action="text", locator=target)
            return rows[index].cells()[column]
        raise UIActionError(f"Unknown target {target}", action="text", locator=target)

    async def html(self, target: str, timeout_ms: int | None = None) -> str:
        if target == self.profile.history_dialog and self._history_open and self._open:
            return (
                "<div role='dialog'><h2>History</h2><dl>"
                f"<dt>Document Type</dt><dd>{self._open.document_type}</dd>"
                "</dl></div>"
            )
        if await self.is_visible(target) and self._open:
            f = self._open
            return (
                "<div class='detail-panel'><dl>"
                f"<dt>Debtor Name</dt><dd>{f.debtor_name}</dd>"
                f"<dt>Debtor Address</dt><dd>{f.debtor_address}</dd>"
                f"<dt>Secured Party Name</dt><dd>{f.secured_party_name}</dd>"
                f"<dt>Secured Party Address</dt><dd>{f.secured_party_address}</dd>"
                "</dl></div>"
            )
        raise UIActionError("Not visible", action="html", locator=target)

    async def download(self, target: str, dest: Path, timeout_ms: int) -> Path:
        if self._open is None or self._open.file_number in self.download_failures:
            raise UIActionError("Download did not start", action="download", locator=target)
        dest.write_bytes(b"%PDF-1.4 fake")
        self.downloads.append(dest)
        return dest

    async def screenshot(self, path: Path) -> None:
        self.calls.append(("screenshot", path))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_filings() -> Callable[[int], list[FakeFiling]]:
    def _make(count: int, start: int = 1) -> list[FakeFiling]:
        return [
            FakeFiling(file_number=f"U2600059{n:05d}", debtor_name=f"DEBTOR {n}")
            for n in range(start, start + count)
        ]

    return _make


@pytest.fixture
def fake_filing() -> type[FakeFiling]:
    """The ``FakeFiling`` class, for rows with custom fields."""
    return FakeFiling


@pytest.fixture
def make_driver() -> Callable[..., FakeDriver]:
    def _make(filings: list[FakeFiling] | None = None, **kwargs: Any) -> FakeDriver:
        return FakeDriver(filings=list(filings or []), **kwargs)

    return _make
