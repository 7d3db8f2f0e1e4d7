"""Interfaces of the collaborators the controller talks to.

The controller never owns queueing, storage, credentials or the generation API
itself. It consumes them through the protocols below, so a worker process can
plug in a Redis queue, a SQL database or an HTTP provider, and tests can plug
in the in-memory versions from ``batchgate.core.memory``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from batchgate.core.types import (
    Delivery,
    GenerationResult,
    ItemOutcome,
    ItemStatus,
    Job,
    JobStatus,
)


@runtime_checkable
class JobSource(Protocol):
    """External queue delivering job payloads with at-least-once semantics.

    Retry and backoff metadata belong to the queue; the controller only
    reports the terminal outcome of each delivery.
    """

    def dequeue(self, timeout: Optional[float] = None) -> Optional[Delivery]:
        """Block up to ``timeout`` seconds for the next delivery."""
        ...

    def ack(self, job_id: str) -> None:
        """Mark the delivery as done."""
        ...

    def nack(self, job_id: str, reason: str) -> None:
        """Hand the delivery back to the queue for redelivery."""
        ...


@runtime_checkable
class JobStore(Protocol):
    """Persistent store for job and item records.

    ``upsert_item_result`` calls arrive concurrently and out of order; records
    are keyed by ``(job_id, index)``.
    """

    def update_job_status(
        self, job_id: str, status: JobStatus, fields: Optional[Mapping[str, Any]] = None
    ) -> None: ...

    def upsert_item_result(self, job_id: str, index: int, outcome: ItemOutcome) -> None: ...

    def mark_item(
        self, job_id: str, index: int, item_id: str, status: ItemStatus
    ) -> None: ...

    def read_job_started_at(self, job_id: str) -> Optional[datetime]: ...


@runtime_checkable
class GenerationClient(Protocol):
    """The third-party generation API."""

    def generate(
        self, prompt: Any, model_id: str, *, api_key: Optional[str] = None, **options: Any
    ) -> GenerationResult: ...


@runtime_checkable
class ArtifactStore(Protocol):
    """Object storage for generated artifacts."""

    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` and return a reference (URL or path) to it."""
        ...


@runtime_checkable
class CredentialResolver(Protocol):
    """Resolves the API credential a job runs with.

    Raises ``FatalJobError`` when no usable credential exists.
    """

    def resolve(self, job: Job) -> str: ...


__all__ = [
    "ArtifactStore",
    "CredentialResolver",
    "GenerationClient",
    "JobSource",
    "JobStore",
]
