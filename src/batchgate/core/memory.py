"""In-process implementations of the collaborator interfaces.

They back the test-suite and single-process deployments. Each one is
thread-safe; none of them survives a restart.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from batchgate.core.exceptions import FatalJobError
from batchgate.core.types import Delivery, ItemOutcome, ItemStatus, Job, JobStatus

logger = logging.getLogger(__name__)


class InMemoryJobSource:
    """FIFO queue with ack/nack bookkeeping and bounded redelivery.

    A ``nack`` puts the delivery back at the tail until it has been handed out
    ``max_deliveries`` times; after that it is dead-lettered.
    """

    def __init__(self, max_deliveries: int = 3) -> None:
        if max_deliveries < 1:
            raise ValueError(f"max_deliveries must be >= 1, got {max_deliveries}")
        self.max_deliveries = max_deliveries
        self._lock = threading.Lock()
        self._ready = threading.Condition(self._lock)
        self._queue: Deque[Delivery] = deque()
        self._in_flight: Dict[str, Delivery] = {}
        self.acked: List[str] = []
        self.nacked: List[Tuple[str, str]] = []
        self.dead_letters: List[Tuple[Delivery, str]] = []

    def enqueue(self, job_id: str, payload: Mapping[str, Any]) -> Delivery:
        delivery = Delivery(job_id=job_id, payload=dict(payload))
        with self._ready:
            self._queue.append(delivery)
            self._ready.notify()
        return delivery

    def dequeue(self, timeout: Optional[float] = None) -> Optional[Delivery]:
        with self._ready:
            if not self._ready.wait_for(lambda: bool(self._queue), timeout=timeout):
                return None
            delivery = self._queue.popleft()
            self._in_flight[delivery.job_id] = delivery
            return delivery

    def ack(self, job_id: str) -> None:
        with self._lock:
            self._in_flight.pop(job_id, None)
            self.acked.append(job_id)

    def nack(self, job_id: str, reason: str) -> None:
        with self._ready:
            self.nacked.append((job_id, reason))
            delivery = self._in_flight.pop(job_id, None)
            if delivery is None:
                logger.warning("nack for unknown delivery %s", job_id)
                return
            if delivery.attempt >= self.max_deliveries:
                logger.warning(
                    "Job %s dead-lettered after %d deliveries: %s",
                    job_id,
                    delivery.attempt,
                    reason,
                )
                self.dead_letters.append((delivery, reason))
                return
            self._queue.append(
                Delivery(job_id=job_id, payload=delivery.payload, attempt=delivery.attempt + 1)
            )
            self._ready.notify()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)


class InMemoryJobStore:
    """Dictionary-backed job and item records keyed by ``(job_id, index)``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._items: Dict[Tuple[str, int], Dict[str, Any]] = {}
        self.history: List[Tuple[str, JobStatus]] = []

    def update_job_status(
        self, job_id: str, status: JobStatus, fields: Optional[Mapping[str, Any]] = None
    ) -> None:
        with self._lock:
            record = self._jobs.setdefault(job_id, {"id": job_id})
            record.update(fields or {})
            record["status"] = status
            if not self.history or self.history[-1] != (job_id, status):
                self.history.append((job_id, status))

    def mark_item(self, job_id: str, index: int, item_id: str, status: ItemStatus) -> None:
        with self._lock:
            record = self._items.setdefault(
                (job_id, index), {"job_id": job_id, "index": index, "item_id": item_id}
            )
            record["status"] = status

    def upsert_item_result(self, job_id: str, index: int, outcome: ItemOutcome) -> None:
        with self._lock:
            record = self._items.setdefault((job_id, index), {"job_id": job_id, "index": index})
            record.update(
                item_id=outcome.item_id,
                status=outcome.status,
                result_ref=outcome.result_ref,
                error=outcome.error,
                duration_ms=outcome.duration_ms,
                wait_ms=outcome.wait_ms,
                attempts=outcome.attempts,
            )

    def read_job_started_at(self, job_id: str) -> Optional[datetime]:
        with self._lock:
            return self._jobs.get(job_id, {}).get("started_at")

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._jobs.get(job_id)
            return copy.deepcopy(record) if record is not None else None

    def get_items(self, job_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            records = [dict(r) for (jid, _), r in self._items.items() if jid == job_id]
        return sorted(records, key=lambda record: record["index"])


class InMemoryArtifactStore:
    """Keeps artifacts in a dict and hands out ``memory://`` references."""

    def __init__(self, bucket: str = "results") -> None:
        self.bucket = bucket
        self._lock = threading.Lock()
        self._objects: Dict[str, Tuple[bytes, str]] = {}

    def put(self, key: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self._objects[key] = (bytes(data), content_type)
        return f"memory://{self.bucket}/{key}"

    def get(self, key: str) -> Tuple[bytes, str]:
        with self._lock:
            return self._objects[key]

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._objects)


class StaticCredentialResolver:
    """Resolves a job's API key from its options or a process-wide default.

    Decryption of stored credentials happens upstream; by the time a job
    reaches the controller, ``options[option_key]`` holds a usable key.
    """

    def __init__(self, api_key: Optional[str] = None, *, option_key: str = "api_key") -> None:
        self._api_key = api_key
        self.option_key = option_key

    def resolve(self, job: Job) -> str:
        key = job.options.get(self.option_key) or self._api_key
        if not key or not isinstance(key, str):
            raise FatalJobError(
                f"Missing API key for job {job.id}",
                context={"job_id": job.id, "tenant_id": job.tenant_id},
            )
        return key


__all__ = [
    "InMemoryArtifactStore",
    "InMemoryJobSource",
    "InMemoryJobStore",
    "StaticCredentialResolver",
]
