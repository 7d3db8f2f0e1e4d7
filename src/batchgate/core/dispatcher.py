"""Job admission from the external queue.

The dispatcher pulls deliveries from a ``JobSource`` and runs at most
``max_concurrent_jobs`` of them at a time. A slot on the job semaphore is taken
*before* dequeuing, so the process never holds a delivery it cannot start.

Per job the state machine is ``pending -> running -> {completed, failed}``:

* ``running`` is written as soon as the payload parses.
* ``completed`` is written by the handler (through
  ``ResultAggregator.finalize_job``) and acknowledged here. Item failures alone
  never fail a job.
* ``failed`` is written here when the payload does not parse or the handler
  raises; the delivery is then ``nack``-ed so the queue can redeliver it.
"""

from __future__ import annotations

import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any, Callable, Optional

from batchgate.core.config.schema import ControllerSettings
from batchgate.core.exceptions import FatalJobError
from batchgate.core.interfaces import JobSource, JobStore
from batchgate.core.types import Delivery, Job, JobResult, JobStatus

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], JobResult]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobDispatcher:
    """Bounded, FIFO job runner on top of an external queue.

    Attributes:
        max_concurrent_jobs: Jobs allowed to run at once.
        poll_timeout_s: Upper bound on a single blocking wait in the loop.
    """

    def __init__(
        self,
        source: JobSource,
        store: JobStore,
        handle: JobHandler,
        *,
        max_concurrent_jobs: int = 3,
        poll_timeout_s: float = 1.0,
        wall_clock: Callable[[], datetime] = _utcnow,
        metrics: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            source: Queue collaborator to pull deliveries from.
            store: Persistence collaborator for job status.
            handle: Per-job handler; returns a ``JobResult`` or raises.
            max_concurrent_jobs: Jobs running at once, >= 1.
            poll_timeout_s: Seconds a single dequeue or slot wait may block.
            wall_clock: Source of timezone-aware timestamps.
            metrics: Optional collectors from ``create_metrics()``.
        """
        if max_concurrent_jobs < 1:
            raise ValueError(f"max_concurrent_jobs must be >= 1, got {max_concurrent_jobs}")

        self.max_concurrent_jobs = max_concurrent_jobs
        self.poll_timeout_s = poll_timeout_s
        self._source = source
        self._store = store
        self._handle = handle
        self._wall_clock = wall_clock
        self._metrics = metrics

        self._slots = threading.BoundedSemaphore(max_concurrent_jobs)
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._in_flight = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self._loop_thread: Optional[threading.Thread] = None

    @classmethod
    def from_settings(
        cls,
        source: JobSource,
        store: JobStore,
        handle: JobHandler,
        settings: ControllerSettings,
        *,
        wall_clock: Callable[[], datetime] = _utcnow,
        metrics: Optional[dict[str, Any]] = None,
    ) -> JobDispatcher:
        """Build a dispatcher with the job bound and poll timeout from ``settings``."""
        return cls(
            source,
            store,
            handle,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            poll_timeout_s=settings.poll_timeout_s,
            wall_clock=wall_clock,
            metrics=metrics,
        )

    @property
    def running_count(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def is_running(self) -> bool:
        thread = self._loop_thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        """Start pulling jobs in a background thread.

        Raises:
            RuntimeError: If the dispatcher is already running.
        """
        if self.is_running:
            raise RuntimeError("dispatcher is already running")

        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_concurrent_jobs, thread_name_prefix="batchgate-jobs"
        )
        self._loop_thread = threading.Thread(
            target=self._loop, name="batchgate-dispatcher", daemon=True
        )
        self._loop_thread.start()
        logger.info("Dispatcher started: %d parallel jobs", self.max_concurrent_jobs)

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop dequeuing; optionally wait for in-flight jobs to drain.

        In-flight jobs are never interrupted.

        Args:
            wait: Block until running jobs finish.
            timeout: Max seconds to wait for the loop thread to exit.
        """
        self._stop_event.set()
        if self._loop_thread is not None:
            self._loop_thread.join(timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
        logger.info("Dispatcher stopped (%d jobs still running)", self.running_count)

    def run_forever(self) -> None:
        """Start, block until a stop is requested, then drain running jobs."""
        self.start()
        while not self._stop_event.wait(self.poll_timeout_s):
            pass
        self.stop(wait=True)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is running. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)

    def install_signal_handlers(self) -> None:
        """Stop gracefully on SIGTERM and SIGINT. Call from the main thread."""

        def _on_signal(signum: int, _frame: Any) -> None:
            logger.info("Received %s, draining jobs", signal.Signals(signum).name)
            self._stop_event.set()

        signal.signal(signal.SIGTERM, _on_signal)
        signal.signal(signal.SIGINT, _on_signal)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._slots.acquire(timeout=self.poll_timeout_s):
                continue

            try:
                delivery = self._source.dequeue(timeout=self.poll_timeout_s)
            except Exception:
                logger.exception("Dequeue failed")
                self._slots.release()
                self._stop_event.wait(self.poll_timeout_s)
                continue

            if delivery is None:
                self._slots.release()
                continue

            if self._stop_event.is_set():
                self._slots.release()
                self._safe_nack(delivery.job_id, "worker shutting down")
                break

            with self._lock:
                self._in_flight += 1
            assert self._executor is not None
            self._executor.submit(self._run_and_release, delivery)

    def _run_and_release(self, delivery: Delivery) -> None:
        try:
            self.run_job(delivery)
        except Exception:
            logger.exception("Unhandled error running job %s", delivery.job_id)
        finally:
            self._slots.release()
            with self._idle:
                self._in_flight -= 1
                self._idle.notify_all()

    def run_job(self, delivery: Delivery) -> Optional[JobResult]:
        """Run one delivery through the job state machine.

        Args:
            delivery: Delivery pulled from the queue.

        Returns:
            The handler's result, or None when the job failed.
        """
        job_id = delivery.job_id
        try:
            job = Job.from_payload(job_id, delivery.payload)
            job.status = JobStatus.RUNNING
            job.started_at = self._wall_clock()
            self._store.update_job_status(
                job_id,
                JobStatus.RUNNING,
                {"started_at": job.started_at, "total": job.total, "progress": 0},
            )
            logger.info(
                "Processing job %s (%s, %d items, model %s, attempt %d)",
                job_id,
                job.workflow_type,
                job.total,
                job.model,
                delivery.attempt,
            )
            result = self._handle(job)
        except Exception as exc:
            self._fail(job_id, exc)
            return None

        job.status = JobStatus.COMPLETED
        job.succeeded = result.summary.succeeded
        job.failed = result.summary.failed
        self._count("completed")
        logger.info(
            "Job %s completed: %d/%d succeeded%s",
            job_id,
            result.summary.succeeded,
            result.summary.total,
            " (cancelled)" if result.cancelled else "",
        )
        try:
            self._source.ack(job_id)
        except Exception:
            logger.exception("Failed to ack job %s", job_id)
        return result

    def _fail(self, job_id: str, exc: BaseException) -> None:
        reason = str(exc) or type(exc).__name__
        if isinstance(exc, FatalJobError):
            logger.error("Job %s failed: %s", job_id, reason)
        else:
            logger.error("Job %s failed with unexpected error", job_id, exc_info=exc)

        try:
            self._store.update_job_status(
                job_id,
                JobStatus.FAILED,
                {"error": reason, "finished_at": self._wall_clock()},
            )
        except Exception:
            logger.exception("Failed to update status of job %s", job_id)

        self._count("failed")
        self._safe_nack(job_id, reason)

    def _safe_nack(self, job_id: str, reason: str) -> None:
        try:
            self._source.nack(job_id, reason)
        except Exception:
            logger.exception("Failed to nack job %s", job_id)

    def _count(self, status: str) -> None:
        if self._metrics:
            self._metrics["jobs"].labels(status=status).inc()


__all__ = ["JobDispatcher", "JobHandler"]
