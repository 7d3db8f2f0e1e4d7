"""Per-item persistence and job-level summaries.

Items are written to the store the moment they settle so a client polling a
long-running job sees individual results appear. The job's final summary is a
pure reduction over the outcome list; the store is only written, never read
back for counting.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Sequence

from batchgate.core.interfaces import JobStore
from batchgate.core.types import ItemOutcome, ItemStatus, JobStatus, JobSummary

logger = logging.getLogger(__name__)

WallClock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ResultAggregator:
    """Records item outcomes as they arrive and finalizes jobs.

    Safe to share between jobs and threads; it holds no per-job state.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        wall_clock: WallClock = _utcnow,
    ) -> None:
        """Initialize the aggregator.

        Args:
            store: Persistence collaborator for job and item records.
            wall_clock: Source of timezone-aware timestamps for records.
        """
        self._store = store
        self._wall_clock = wall_clock

    def mark_processing(self, job_id: str, index: int, item_id: str) -> None:
        """Record that an item's external call is about to start."""
        try:
            self._store.mark_item(job_id, index, item_id, ItemStatus.PROCESSING)
        except Exception:
            logger.exception("Failed to mark item %s of job %s as processing", index, job_id)

    def record_item(self, job_id: str, index: int, outcome: ItemOutcome) -> None:
        """Persist one item's terminal state immediately.

        A storage failure is logged and swallowed: bookkeeping for one item
        must not fail the item's siblings.
        """
        try:
            self._store.upsert_item_result(job_id, index, outcome)
        except Exception:
            logger.exception(
                "Failed to record item %s of job %s (status=%s)",
                index,
                job_id,
                outcome.status.value,
            )
            return

        if outcome.ok:
            logger.debug(
                "Job %s item %d completed in %.0fms: %s",
                job_id,
                index,
                outcome.duration_ms,
                outcome.result_ref,
            )
        else:
            logger.debug("Job %s item %d failed: %s", job_id, index, outcome.error)

    def report_progress(
        self, job_id: str, settled: int, total: int, succeeded: int, failed: int
    ) -> None:
        """Publish running counters while a job is in flight."""
        try:
            self._store.update_job_status(
                job_id,
                JobStatus.RUNNING,
                {
                    "progress": self.progress(settled, total),
                    "succeeded": succeeded,
                    "failed": failed,
                },
            )
        except Exception:
            logger.exception("Failed to publish progress for job %s", job_id)

    @staticmethod
    def progress(settled: int, total: int) -> int:
        """Whole-number percentage of settled items."""
        if total <= 0:
            return 100
        return min(100, int(settled * 100 / total))

    @staticmethod
    def summarize(outcomes: Sequence[ItemOutcome]) -> JobSummary:
        """Reduce outcomes to a ``JobSummary``.

        ``duration_ms`` spans from the first item entering the scheduler to the
        last item settling; ``avg_item_duration_ms`` averages API time only.
        """
        total = len(outcomes)
        if total == 0:
            return JobSummary(
                succeeded=0, failed=0, total=0, duration_ms=0.0, avg_item_duration_ms=0.0
            )

        succeeded = sum(1 for outcome in outcomes if outcome.ok)
        api_ms = sum(outcome.duration_ms for outcome in outcomes)
        first = min(outcome.queued_at for outcome in outcomes)
        last = max(outcome.settled_at for outcome in outcomes)
        return JobSummary(
            succeeded=succeeded,
            failed=total - succeeded,
            total=total,
            duration_ms=max(0.0, (last - first) * 1000.0),
            avg_item_duration_ms=api_ms / total,
        )

    def finalize_job(
        self,
        job_id: str,
        outcomes: Sequence[ItemOutcome],
        *,
        cancelled: bool = False,
    ) -> JobSummary:
        """Compute the job summary and write the job's terminal state once.

        The job is marked ``completed`` even when some items failed; the counts
        carry the failures. Calling this twice with the same outcomes yields
        the same summary.

        Args:
            job_id: Job being finalized.
            outcomes: Every settled outcome of the job.
            cancelled: Whether the job stopped early on a user abort.

        Returns:
            The job summary.
        """
        summary = self.summarize(outcomes)
        finished_at = self._wall_clock()

        fields: Dict[str, Any] = {
            **summary.as_dict(),
            "finished_at": finished_at,
            "progress": 100,
        }
        if cancelled:
            fields["cancelled"] = True

        started_at = self._store.read_job_started_at(job_id)
        if started_at is not None:
            fields["duration_seconds"] = int((finished_at - started_at).total_seconds())

        self._store.update_job_status(job_id, JobStatus.COMPLETED, fields)

        logger.info(
            "Job %s completed: %d succeeded, %d failed, %d total (%.0fms, avg %.0fms per item)",
            job_id,
            summary.succeeded,
            summary.failed,
            summary.total,
            summary.duration_ms,
            summary.avg_item_duration_ms,
        )
        return summary


__all__ = ["ResultAggregator", "WallClock"]
