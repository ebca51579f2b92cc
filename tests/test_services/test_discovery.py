"""
Tests for DiscoveryScan.
"""

from collections.abc import Sequence

import pytest

from lienflow.core.sources import CA_SOS
from lienflow.models.records import ExtractionCursor, LienRecord
from lienflow.services.discovery import DiscoveryScan, ScanMode
from lienflow.services.sinks import MemorySink
from lienflow.utils.exceptions import ConfigurationError, SessionError, SinkError


class RejectingSink(MemorySink):
    """Sink that rejects every batch."""

    name = "rejecting"

    async def append(self, records: Sequence[LienRecord]) -> int:
        raise SinkError("Sheets unavailable", sink=self.name, status_code=503)


class TestQueuedScan:
    """Tests for scans that enqueue filing identities."""

    @pytest.mark.unit
    async def test_enqueues_discovered_filings(
        self, store, make_driver, make_filings, session_options
    ) -> None:
        filings = make_filings(4)
        driver = make_driver(filings)
        scan = DiscoveryScan(driver, CA_SOS, store=store, options=session_options)

        outcome = await scan.run("01/01/2026", "01/31/2026", mode=ScanMode.QUEUED)

        assert outcome.records_scraped == 4
        assert outcome.jobs_enqueued == 4
        assert outcome.rows_delivered == 0
        assert driver.opened_rows == []
        jobs = await store.list_jobs()
        assert sorted(j.filing_number for j in jobs) == sorted(f.file_number for f in filings)

    @pytest.mark.unit
    async def test_rescan_enqueues_nothing_new(
        self, store, make_driver, make_filings, session_options
    ) -> None:
        filings = make_filings(3)
        scan = DiscoveryScan(make_driver(filings), CA_SOS, store=store, options=session_options)

        await scan.run("01/01/2026", "01/31/2026")
        outcome = await scan.run("01/01/2026", "01/31/2026")

        assert outcome.records_scraped == 3
        assert outcome.jobs_enqueued == 0
        assert await store.get_pending_count() == 3

    @pytest.mark.unit
    async def test_too_many_results_enqueues_nothing(
        self, store, make_driver, session_options
    ) -> None:
        scan = DiscoveryScan(
            make_driver(reported_total=1001), CA_SOS, store=store, options=session_options
        )

        outcome = await scan.run("01/01/2026", "12/31/2026")

        assert outcome.too_many_results is True
        assert outcome.total_results == 1001
        assert outcome.jobs_enqueued == 0
        assert await store.get_pending_count() == 0

    @pytest.mark.unit
    async def test_requires_store(self, make_driver, session_options) -> None:
        scan = DiscoveryScan(make_driver(), CA_SOS, options=session_options)

        with pytest.raises(ConfigurationError):
            await scan.run("01/01/2026", "01/31/2026", mode=ScanMode.QUEUED)


class TestSyncScan:
    """Tests for scans that deliver records directly."""

    @pytest.mark.unit
    async def test_delivers_records(self, make_driver, make_filings, session_options) -> None:
        filings = make_filings(2)
        sink = MemorySink()
        scan = DiscoveryScan(make_driver(filings), CA_SOS, sink=sink, options=session_options)

        outcome = await scan.run("01/01/2026", "01/31/2026", mode=ScanMode.SYNC)

        assert outcome.rows_delivered == 2
        assert outcome.jobs_enqueued == 0
        assert [r.debtor_name for r in sink.records] == [f.debtor_name for f in filings]

    @pytest.mark.unit
    async def test_cursor_reported(self, make_driver, make_filings, session_options) -> None:
        scan = DiscoveryScan(
            make_driver(make_filings(5), page_size=2),
            CA_SOS,
            sink=MemorySink(),
            options=session_options,
        )

        outcome = await scan.run("01/01/2026", "01/31/2026", mode=ScanMode.SYNC, max_records=3)

        assert outcome.records_scraped == 3
        assert outcome.cursor.as_tuple() == (2, 1)

    @pytest.mark.unit
    async def test_requires_sink(self, make_driver, session_options) -> None:
        scan = DiscoveryScan(make_driver(), CA_SOS, options=session_options)

        with pytest.raises(ConfigurationError):
            await scan.run("01/01/2026", "01/31/2026", mode=ScanMode.SYNC)


class TestFailedSession:
    """Rows collected before a session failure are not lost."""

    @pytest.mark.unit
    async def test_collected_rows_delivered_before_error(
        self, make_driver, make_filings, session_options
    ) -> None:
        filings = make_filings(6)
        sink = MemorySink()
        broken = make_driver(filings, page_size=3, broken_next_pages={1})
        scan = DiscoveryScan(broken, CA_SOS, sink=sink, options=session_options)

        with pytest.raises(SessionError) as exc_info:
            await scan.run("01/01/2026", "01/31/2026", mode=ScanMode.SYNC)

        assert exc_info.value.details["salvaged"] == 3
        page, row_index = exc_info.value.cursor
        resumed = DiscoveryScan(
            make_driver(filings, page_size=3), CA_SOS, sink=sink, options=session_options
        )
        await resumed.run(
            "01/01/2026",
            "01/31/2026",
            mode=ScanMode.SYNC,
            cursor=ExtractionCursor(page=page, row_index=row_index),
        )

        assert [r.file_number for r in sink.records] == [f.file_number for f in filings]

    @pytest.mark.unit
    async def test_collected_filings_enqueued_before_error(
        self, store, make_driver, make_filings, session_options
    ) -> None:
        filings = make_filings(6)
        driver = make_driver(filings, page_size=3, broken_next_pages={1})
        scan = DiscoveryScan(driver, CA_SOS, store=store, options=session_options)

        with pytest.raises(SessionError):
            await scan.run("01/01/2026", "01/31/2026", mode=ScanMode.QUEUED)

        jobs = await store.list_jobs()
        assert sorted(j.filing_number for j in jobs) == [f.file_number for f in filings[:3]]

    @pytest.mark.unit
    async def test_failed_delivery_reports_start_cursor(
        self, make_driver, make_filings, session_options
    ) -> None:
        filings = make_filings(6)
        driver = make_driver(filings, page_size=3, broken_next_pages={1})
        scan = DiscoveryScan(driver, CA_SOS, sink=RejectingSink(), options=session_options)

        with pytest.raises(SinkError) as exc_info:
            await scan.run("01/01/2026", "01/31/2026", mode=ScanMode.SYNC)

        assert exc_info.value.details["cursor"] == {"page": 1, "row_index": 0}
        assert isinstance(exc_info.value.__cause__, SessionError)
