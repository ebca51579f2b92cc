"""
Tests for WorkerLoop.

Runs the worker against the in-memory store, the FakeDriver and a
MemorySink.
"""

import asyncio
from collections.abc import Sequence

import pytest
from structlog.testing import capture_logs

from lienflow.database.models import JobStatus
from lienflow.database.repository import JobStore
from lienflow.extractors.session import SessionOptions
from lienflow.models.records import LienRecord
from lienflow.services.sinks import MemorySink
from lienflow.services.worker import WorkerLoop, WorkerStats
from lienflow.utils.exceptions import SinkError, StoreError


class FailingSink(MemorySink):
    """Sink that rejects every batch."""

    name = "failing"

    async def append(self, records: Sequence[LienRecord]) -> int:
        raise SinkError("Sheets unavailable", sink=self.name, status_code=503)


class BrokenStore(JobStore):
    """Store whose completion writes fail."""

    async def mark_done(self, ids: Sequence[int]) -> None:
        raise StoreError("database is locked", operation="mark_done")


def make_worker(store, driver, sink, options: SessionOptions, **kwargs) -> WorkerLoop:
    kwargs.setdefault("idle_sleep", 0)
    return WorkerLoop(store, driver, sink, options=options, **kwargs)


class TestWorkerSuccess:
    """Tests for jobs that extract and deliver."""

    @pytest.mark.unit
    async def test_job_delivered_and_done(
        self, store, discovered, make_driver, make_filings, session_options
    ) -> None:
        [filing] = make_filings(1)
        await store.insert_many([discovered(filing.file_number)])
        sink = MemorySink()

        stats = await make_worker(store, make_driver([filing]), sink, session_options).run()

        assert stats == WorkerStats(claimed=1, done=1)
        [record] = sink.records
        assert record.file_number == filing.file_number
        assert record.debtor_name == filing.debtor_name
        assert await store.get_pending_count() == 0
        [job] = await store.list_jobs()
        assert job.status is JobStatus.DONE

    @pytest.mark.unit
    async def test_drains_queue_in_order(
        self, store, discovered, make_driver, make_filings, session_options
    ) -> None:
        filings = make_filings(3)
        await store.insert_many([discovered(f.file_number) for f in filings])
        sink = MemorySink()

        stats = await make_worker(store, make_driver(filings), sink, session_options).run()

        assert stats.done == 3
        assert [r.file_number for r in sink.records] == [f.file_number for f in filings]

    @pytest.mark.unit
    async def test_identity_defaults_from_job(
        self, store, discovered, make_driver, fake_filing, session_options
    ) -> None:
        await store.insert_many([discovered("U1", "02/03/2026")])
        sink = MemorySink()
        driver = make_driver([fake_filing(file_number="U1", filing_date="")])

        await make_worker(store, driver, sink, session_options).run()

        [record] = sink.records
        assert record.filing_date == "02/03/2026"
        assert record.source == "ca_sos"
        assert record.state == "CA"

    @pytest.mark.unit
    async def test_partial_record_still_completes_job(
        self, store, discovered, make_driver, make_filings, session_options
    ) -> None:
        [filing] = make_filings(1)
        await store.insert_many([discovered(filing.file_number)])
        sink = MemorySink()
        driver = make_driver([filing], history_failures={filing.file_number: -1})

        stats = await make_worker(store, driver, sink, session_options).run()

        assert stats.done == 1
        assert sink.records[0].error == "history_failed"

    @pytest.mark.unit
    async def test_empty_queue_returns_immediately(
        self, store, make_driver, session_options
    ) -> None:
        stats = await make_worker(store, make_driver(), MemorySink(), session_options).run()

        assert stats == WorkerStats()


class TestWorkerFailures:
    """Tests for failing jobs."""

    @pytest.mark.unit
    async def test_missing_record_fails_with_backoff(
        self, store, discovered, make_driver, session_options, clock
    ) -> None:
        await store.insert_many([discovered("U404")])
        worker = make_worker(store, make_driver(), MemorySink(), session_options, backoff_ms=60_000)

        stats = await worker.run_once()

        assert stats == WorkerStats(claimed=1, failed=1)
        [job] = await store.list_jobs()
        assert job.status is JobStatus.FAILED
        assert "No record found" in job.last_error
        assert await store.claim_batch(1) == []

        clock.advance(minutes=1)
        [again] = await store.claim_batch(1)
        assert again.attempts == 2

    @pytest.mark.unit
    async def test_session_error_fails_job(
        self, store, discovered, make_driver, session_options
    ) -> None:
        await store.insert_many([discovered("U1")])
        worker = make_worker(store, make_driver(fail_goto=True), MemorySink(), session_options)

        stats = await worker.run_once()

        assert stats.failed == 1
        [job] = await store.list_jobs()
        assert job.status is JobStatus.FAILED
        assert "Navigation failed" in job.last_error

    @pytest.mark.unit
    async def test_timed_out_session_fails_job_with_backoff(
        self, store, discovered, make_driver, make_filings, clock, tmp_path
    ) -> None:
        [filing] = make_filings(1)
        await store.insert_many([discovered(filing.file_number)])
        options = SessionOptions(
            delay_min_ms=0,
            delay_max_ms=0,
            ui_wait_timeout_ms=10,
            download_dir=tmp_path / "downloads",
            deadline_seconds=0.2,
        )
        driver = make_driver([filing], stall_on_page=1)
        worker = make_worker(store, driver, MemorySink(), options, backoff_ms=60_000)

        stats = await worker.run_once()

        assert stats == WorkerStats(claimed=1, failed=1)
        [job] = await store.list_jobs()
        assert job.status is JobStatus.FAILED
        assert "deadline" in job.last_error
        assert await store.claim_batch(1) == []

        clock.advance(minutes=1)
        assert len(await store.claim_batch(1)) == 1

    @pytest.mark.unit
    async def test_sink_failure_keeps_job_retryable(
        self, store, discovered, make_driver, make_filings, session_options, clock
    ) -> None:
        [filing] = make_filings(1)
        await store.insert_many([discovered(filing.file_number)])
        worker = make_worker(store, make_driver([filing]), FailingSink(), session_options)

        stats = await worker.run_once()

        assert stats.failed == 1
        [job] = await store.list_jobs()
        assert job.status is JobStatus.FAILED
        assert job.last_error == "Sheets unavailable"

        clock.advance(minutes=5)
        assert len(await store.claim_batch(1)) == 1

    @pytest.mark.unit
    async def test_poison_job_abandoned_after_max_attempts(
        self, store, discovered, make_driver, session_options, clock
    ) -> None:
        await store.insert_many([discovered("U404")])
        worker = make_worker(
            store, make_driver(), MemorySink(), session_options, max_attempts=3, backoff_ms=1000
        )

        with capture_logs() as logs:
            for _ in range(3):
                await worker.run_once()
                clock.advance(seconds=1)

        [job] = await store.list_jobs()
        assert job.status is JobStatus.ABANDONED
        assert job.attempts == 3
        assert await store.claim_batch(1) == []

        abandoned = [entry for entry in logs if entry["event"] == "job_abandoned"]
        assert len(abandoned) == 1
        assert abandoned[0]["log_level"] == "warning"
        assert abandoned[0]["attempts"] == 3

    @pytest.mark.unit
    async def test_store_error_propagates(
        self, session_factory, clock, discovered, make_driver, make_filings, session_options
    ) -> None:
        store = BrokenStore(session_factory, clock=clock)
        [filing] = make_filings(1)
        await store.insert_many([discovered(filing.file_number)])
        worker = make_worker(store, make_driver([filing]), MemorySink(), session_options)

        with pytest.raises(StoreError):
            await worker.run()

        [job] = await store.list_jobs()
        assert job.status is JobStatus.PROCESSING


class TestWorkerLifecycle:
    """Tests for stopping the loop."""

    @pytest.mark.unit
    async def test_stop_ends_polling_loop(self, store, make_driver, session_options) -> None:
        worker = make_worker(store, make_driver(), MemorySink(), session_options, idle_sleep=0.01)

        task = asyncio.create_task(worker.run(stop_when_drained=False))
        await asyncio.sleep(0.05)
        worker.stop()
        stats = await asyncio.wait_for(task, timeout=5)

        assert stats.claimed == 0

    @pytest.mark.unit
    def test_from_settings(self, test_settings, store, make_driver) -> None:
        worker = WorkerLoop.from_settings(test_settings, store, make_driver(), MemorySink())

        assert worker._batch_size == test_settings.worker_batch_size
        assert worker._max_attempts == 3
        assert worker._backoff_ms == 300_000
