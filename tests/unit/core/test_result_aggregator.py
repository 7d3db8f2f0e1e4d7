"""Tests for per-item recording and job finalization."""

from datetime import UTC, datetime, timedelta
from unittest.mock import Mock

import pytest

from batchgate.core.aggregator import ResultAggregator
from batchgate.core.types import Item, ItemOutcome, ItemStatus, JobStatus

STARTED = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
FINISHED = STARTED + timedelta(seconds=42)


def _outcome(index, ok=True, duration_ms=100.0, queued_at=10.0, settled_at=10.5):
    item = Item(id=f"job-1:{index}", index=index, payload="p")
    if ok:
        return ItemOutcome.succeeded(
            item, duration_ms=duration_ms, queued_at=queued_at, settled_at=settled_at
        )
    return ItemOutcome.failed(
        item, "rejected", duration_ms=duration_ms, queued_at=queued_at, settled_at=settled_at
    )


@pytest.fixture
def aggregator(job_store):
    return ResultAggregator(job_store, wall_clock=lambda: FINISHED)


class TestSummarize:
    """Tests for the pure outcome reduction."""

    def test_counts_and_durations(self):
        outcomes = [
            _outcome(0, duration_ms=100.0, queued_at=10.0, settled_at=10.2),
            _outcome(1, ok=False, duration_ms=300.0, queued_at=10.0, settled_at=11.5),
            _outcome(2, duration_ms=200.0, queued_at=10.1, settled_at=10.9),
        ]

        summary = ResultAggregator.summarize(outcomes)

        assert summary.succeeded == 2
        assert summary.failed == 1
        assert summary.total == 3
        assert summary.duration_ms == pytest.approx(1500.0)
        assert summary.avg_item_duration_ms == pytest.approx(200.0)

    def test_empty(self):
        summary = ResultAggregator.summarize([])
        assert summary.total == 0
        assert summary.duration_ms == 0.0

    @pytest.mark.parametrize(
        "settled,total,expected", [(0, 4, 0), (1, 4, 25), (1, 3, 33), (4, 4, 100), (0, 0, 100)]
    )
    def test_progress(self, settled, total, expected):
        assert ResultAggregator.progress(settled, total) == expected


class TestRecordItem:
    """Tests for immediate per-item persistence."""

    def test_writes_terminal_item_state(self, aggregator, job_store):
        aggregator.mark_processing("job-1", 0, "job-1:0")
        assert job_store.get_items("job-1")[0]["status"] is ItemStatus.PROCESSING

        aggregator.record_item("job-1", 0, _outcome(0))

        (record,) = job_store.get_items("job-1")
        assert record["status"] is ItemStatus.COMPLETED
        assert record["duration_ms"] == 100.0

    def test_store_errors_are_swallowed(self, caplog):
        store = Mock()
        store.upsert_item_result.side_effect = ConnectionError("db gone")
        store.mark_item.side_effect = ConnectionError("db gone")
        store.update_job_status.side_effect = ConnectionError("db gone")
        aggregator = ResultAggregator(store)

        aggregator.mark_processing("job-1", 0, "job-1:0")
        aggregator.record_item("job-1", 0, _outcome(0, ok=False))
        aggregator.report_progress("job-1", 1, 2, 0, 1)

        assert "Failed to record item 0 of job job-1" in caplog.text
        assert "Failed to publish progress" in caplog.text

    def test_report_progress(self, aggregator, job_store):
        aggregator.report_progress("job-1", 1, 4, 1, 0)

        job = job_store.get_job("job-1")
        assert job["status"] is JobStatus.RUNNING
        assert job["progress"] == 25
        assert job["succeeded"] == 1


class TestFinalizeJob:
    """Tests for writing the terminal job state."""

    def test_completed_even_with_failures(self, aggregator, job_store):
        job_store.update_job_status("job-1", JobStatus.RUNNING, {"started_at": STARTED})
        outcomes = [_outcome(0), _outcome(1, ok=False)]

        summary = aggregator.finalize_job("job-1", outcomes)

        job = job_store.get_job("job-1")
        assert job["status"] is JobStatus.COMPLETED
        assert job["succeeded"] == summary.succeeded == 1
        assert job["failed"] == summary.failed == 1
        assert job["progress"] == 100
        assert job["finished_at"] == FINISHED
        assert job["duration_seconds"] == 42
        assert "cancelled" not in job

    def test_idempotent(self, aggregator, job_store):
        """Finalizing twice with the same outcomes yields the same summary and record."""
        outcomes = [_outcome(0), _outcome(1, ok=False), _outcome(2)]

        first = aggregator.finalize_job("job-1", outcomes)
        record = job_store.get_job("job-1")
        second = aggregator.finalize_job("job-1", outcomes)

        assert first == second
        assert job_store.get_job("job-1") == record

    def test_cancelled_flag(self, aggregator, job_store):
        aggregator.finalize_job("job-1", [_outcome(0)], cancelled=True)
        assert job_store.get_job("job-1")["cancelled"] is True

    def test_missing_start_time_skips_duration(self, aggregator, job_store):
        aggregator.finalize_job("job-1", [_outcome(0)])
        assert "duration_seconds" not in job_store.get_job("job-1")
