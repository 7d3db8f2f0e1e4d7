"""Shared data types for jobs, items and their outcomes.

Jobs and items are plain mutable dataclasses owned by the dispatcher and the
aggregator. Outcomes and summaries are frozen: once an item settles its outcome
never changes, which keeps ``finalize_job`` a pure reduction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from batchgate.core.exceptions import FatalJobError


class JobStatus(str, Enum):
    """Lifecycle of a job: ``pending -> running -> {completed, failed}``."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ItemStatus(str, Enum):
    """Lifecycle of an item: ``queued -> processing -> {completed, failed}``."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPayload(BaseModel):
    """Validated shape of a raw queue payload.

    Attributes:
        tenant_id: Owning tenant (client) identifier.
        model: Free-text model identifier; classified into a quota class.
        prompts: Ordered item inputs. At least one is required.
        workflow_type: Name of the per-job handler to use.
        options: Handler options (aspect ratio, resolution, credential reference).
    """

    model_config = ConfigDict(extra="ignore")

    tenant_id: str = Field(min_length=1)
    model: str = Field(min_length=1)
    prompts: List[Any] = Field(min_length=1)
    workflow_type: str = "batch_generation"
    options: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class Item:
    """One unit of work (one external API call) inside a job."""

    id: str
    index: int
    payload: Any
    status: ItemStatus = ItemStatus.QUEUED
    result_ref: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[float] = None


@dataclass
class Job:
    """One batch execution request containing multiple items."""

    id: str
    tenant_id: str
    model: str
    items: List[Item] = field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    workflow_type: str = "batch_generation"
    options: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    succeeded: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return len(self.items)

    @classmethod
    def from_payload(cls, job_id: str, payload: Mapping[str, Any]) -> Job:
        """Build a pending job from a raw queue payload.

        Args:
            job_id: Identifier assigned by the queue collaborator.
            payload: Raw mapping delivered by the queue.

        Returns:
            A ``Job`` in ``pending`` state with one ``queued`` item per prompt.

        Raises:
            FatalJobError: If the payload does not validate.
        """
        try:
            parsed = JobPayload.model_validate(payload)
        except ValidationError as exc:
            raise FatalJobError(
                f"Unparseable payload for job {job_id}: {exc.error_count()} validation error(s)",
                context={"job_id": job_id, "errors": exc.errors(include_url=False)},
            ) from exc

        items = [
            Item(id=f"{job_id}:{index}", index=index, payload=prompt)
            for index, prompt in enumerate(parsed.prompts)
        ]
        return cls(
            id=job_id,
            tenant_id=parsed.tenant_id,
            model=parsed.model,
            items=items,
            workflow_type=parsed.workflow_type,
            options=dict(parsed.options),
        )


@dataclass(frozen=True, slots=True)
class Delivery:
    """A job payload handed out by a ``JobSource``."""

    job_id: str
    payload: Mapping[str, Any]
    attempt: int = 1


@dataclass(frozen=True, slots=True)
class GenerationResult:
    """Response of the external generation API.

    Either ``data`` (on success) or ``error`` (on failure) is populated.
    """

    success: bool
    data: Optional[bytes] = None
    mime_type: str = "application/octet-stream"
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ItemResult:
    """What a ``process_one`` callable returns for a successful item."""

    result_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ItemOutcome:
    """Terminal state of one item.

    ``duration_ms`` covers only the external API attempt(s); ``wait_ms`` covers
    the time spent on the item semaphore and the quota gate before that.
    ``queued_at`` and ``settled_at`` are monotonic seconds bracketing the item.
    """

    index: int
    item_id: str
    status: ItemStatus
    result_ref: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    wait_ms: float = 0.0
    attempts: int = 1
    queued_at: float = 0.0
    settled_at: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is ItemStatus.COMPLETED

    @classmethod
    def succeeded(
        cls,
        item: Item,
        result: Optional[ItemResult] = None,
        *,
        duration_ms: float = 0.0,
        wait_ms: float = 0.0,
        attempts: int = 1,
        queued_at: float = 0.0,
        settled_at: float = 0.0,
    ) -> ItemOutcome:
        return cls(
            index=item.index,
            item_id=item.id,
            status=ItemStatus.COMPLETED,
            result_ref=result.result_ref if result is not None else None,
            duration_ms=duration_ms,
            wait_ms=wait_ms,
            attempts=attempts,
            queued_at=queued_at,
            settled_at=settled_at,
        )

    @classmethod
    def failed(
        cls,
        item: Item,
        error: BaseException | str,
        *,
        duration_ms: float = 0.0,
        wait_ms: float = 0.0,
        attempts: int = 1,
        queued_at: float = 0.0,
        settled_at: float = 0.0,
    ) -> ItemOutcome:
        message = error if isinstance(error, str) else (str(error) or type(error).__name__)
        return cls(
            index=item.index,
            item_id=item.id,
            status=ItemStatus.FAILED,
            error=message,
            duration_ms=duration_ms,
            wait_ms=wait_ms,
            attempts=attempts,
            queued_at=queued_at,
            settled_at=settled_at,
        )


@dataclass(frozen=True, slots=True)
class JobSummary:
    """Aggregate counts and timings for a finished job."""

    succeeded: int
    failed: int
    total: int
    duration_ms: float
    avg_item_duration_ms: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "total": self.total,
            "duration_ms": self.duration_ms,
            "avg_item_duration_ms": self.avg_item_duration_ms,
        }


@dataclass(frozen=True, slots=True)
class JobResult:
    """Value returned by a per-job handler."""

    job_id: str
    summary: JobSummary
    cancelled: bool = False


@dataclass(frozen=True, slots=True)
class LimiterStats:
    """Point-in-time snapshot of one quota limiter."""

    active_count: int
    capacity: int
    queued_count: int
    available_slots: int
    utilization_percent: int

    def as_dict(self) -> Dict[str, int]:
        return {
            "active_count": self.active_count,
            "capacity": self.capacity,
            "queued_count": self.queued_count,
            "available_slots": self.available_slots,
            "utilization_percent": self.utilization_percent,
        }


__all__ = [
    "Delivery",
    "GenerationResult",
    "Item",
    "ItemOutcome",
    "ItemResult",
    "ItemStatus",
    "Job",
    "JobPayload",
    "JobResult",
    "JobStatus",
    "JobSummary",
    "LimiterStats",
]
