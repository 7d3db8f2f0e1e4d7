"""Batch generation handler.

``BatchJobHandler`` is the per-job callable a ``JobDispatcher`` runs. It checks
the job's fatal preconditions, runs every item through the ``ItemScheduler``
and hands each settled item to the ``ResultAggregator`` straight away.
"""

from __future__ import annotations

import logging
import mimetypes
import threading
from datetime import UTC, datetime
from typing import Callable, Dict, List, Optional

from batchgate._internal.concurrency import QuotaRegistry
from batchgate.core.aggregator import ResultAggregator
from batchgate.core.config.schema import ControllerSettings
from batchgate.core.exceptions import FatalJobError, ItemError
from batchgate.core.interfaces import ArtifactStore, CredentialResolver, GenerationClient
from batchgate.core.scheduler import ItemScheduler, ProcessOne, with_timeout
from batchgate.core.types import Item, ItemOutcome, ItemResult, Job, JobResult

logger = logging.getLogger(__name__)

# Options consumed by the controller itself and never forwarded to the API.
_RESERVED_OPTIONS = frozenset({"api_key"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


def artifact_key(job_id: str, index: int, timestamp_ms: int, mime_type: str) -> str:
    """Storage key ``<job_id>/<index>_<timestamp>.<ext>`` for one artifact."""
    extension = mimetypes.guess_extension(mime_type.split(";")[0].strip()) or ".bin"
    return f"{job_id}/{index}_{timestamp_ms}{extension}"


class BatchJobHandler:
    """Runs one job's items against the generation API.

    The same handler instance serves every job of a dispatcher; per-job state
    (the cancel event and the progress counters) lives for the duration of a
    single call.
    """

    def __init__(
        self,
        registry: QuotaRegistry,
        scheduler: ItemScheduler,
        aggregator: ResultAggregator,
        client: GenerationClient,
        settings: ControllerSettings,
        *,
        credentials: Optional[CredentialResolver] = None,
        artifacts: Optional[ArtifactStore] = None,
        wall_clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._scheduler = scheduler
        self._aggregator = aggregator
        self._client = client
        self._settings = settings
        self._credentials = credentials
        self._artifacts = artifacts
        self._wall_clock = wall_clock

        self._lock = threading.Lock()
        self._cancel_events: Dict[str, threading.Event] = {}

    def cancel(self, job_id: str) -> bool:
        """Request a user abort of a running job.

        Items already in flight settle normally; items that have not started
        are skipped. Returns False if the job is not running on this handler.
        """
        with self._lock:
            event = self._cancel_events.get(job_id)
        if event is None:
            return False
        logger.info("Cancellation requested for job %s", job_id)
        event.set()
        return True

    def __call__(self, job: Job) -> JobResult:
        """Run ``job`` to completion.

        Raises:
            FatalJobError: If the job cannot start (no credential, no items).
        """
        if not job.items:
            raise FatalJobError(f"Job {job.id} has no items", context={"job_id": job.id})

        api_key: Optional[str] = None
        if self._credentials is not None:
            api_key = self._credentials.resolve(job)

        model_class = self._registry.classify(job.model)
        max_concurrent = self._scheduler.max_concurrent_for(job.model, self._settings)
        logger.info(
            "Job %s: %d items on %s (%s), max %d concurrent",
            job.id,
            job.total,
            job.model,
            model_class,
            max_concurrent,
        )

        process_one = self._process_one_for(job, api_key)
        if self._settings.item_timeout_s:
            process_one = with_timeout(process_one, self._settings.item_timeout_s)

        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[job.id] = cancel_event
        try:
            outcomes = self._scheduler.run_batch(
                job.items,
                job.model,
                process_one,
                max_concurrent,
                cancel_event=cancel_event,
                on_started=self._started_callback(job),
                on_settled=self._settled_callback(job),
                job_id=job.id,
            )
        finally:
            with self._lock:
                self._cancel_events.pop(job.id, None)

        cancelled = cancel_event.is_set() and len(outcomes) < job.total
        summary = self._aggregator.finalize_job(job.id, outcomes, cancelled=cancelled)
        self._apply(job, outcomes)
        return JobResult(job_id=job.id, summary=summary, cancelled=cancelled)

    def _process_one_for(self, job: Job, api_key: Optional[str]) -> ProcessOne:
        options = {k: v for k, v in job.options.items() if k not in _RESERVED_OPTIONS}

        def process_one(item: Item, index: int) -> ItemResult:
            result = self._client.generate(item.payload, job.model, api_key=api_key, **options)
            if not result.success:
                raise ItemError(
                    result.error or "generation failed",
                    context={"job_id": job.id, "index": index},
                )
            if result.data is None or self._artifacts is None:
                return ItemResult(metadata={"mime_type": result.mime_type})

            timestamp_ms = int(self._wall_clock().timestamp() * 1000)
            key = artifact_key(job.id, index, timestamp_ms, result.mime_type)
            ref = self._artifacts.put(key, result.data, result.mime_type)
            return ItemResult(
                result_ref=ref,
                metadata={"mime_type": result.mime_type, "size": len(result.data)},
            )

        return process_one

    def _started_callback(self, job: Job) -> Callable[[Item, int], None]:
        def on_started(item: Item, index: int) -> None:
            self._aggregator.mark_processing(job.id, index, item.id)

        return on_started

    def _settled_callback(self, job: Job) -> Callable[[ItemOutcome], None]:
        lock = threading.Lock()
        counts = {"settled": 0, "succeeded": 0, "failed": 0}

        def on_settled(outcome: ItemOutcome) -> None:
            self._aggregator.record_item(job.id, outcome.index, outcome)
            # Written under the lock so published counters never go backwards.
            with lock:
                counts["settled"] += 1
                counts["succeeded" if outcome.ok else "failed"] += 1
                self._aggregator.report_progress(
                    job.id,
                    counts["settled"],
                    job.total,
                    counts["succeeded"],
                    counts["failed"],
                )

        return on_settled

    @staticmethod
    def _apply(job: Job, outcomes: List[ItemOutcome]) -> None:
        for outcome in outcomes:
            item = job.items[outcome.index]
            item.status = outcome.status
            item.result_ref = outcome.result_ref
            item.error = outcome.error
            item.duration_ms = outcome.duration_ms


__all__ = ["BatchJobHandler", "artifact_key"]
