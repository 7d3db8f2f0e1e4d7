"""Per-job item scheduling.

``ItemScheduler.run_batch`` fans the items of one job out to worker threads
with two gates in front of every external call:

1. a counting semaphore local to the batch (caps memory and connections), and
2. the shared ``QuotaRegistry`` (caps API throughput across every job).

Every item settles independently. A ``process_one`` that raises becomes a
failed ``ItemOutcome``; it never cancels or delays its siblings. Durations on
the outcome cover only the external call(s), while the time from submission
until a batch slot frees up, plus every quota wait, is reported separately as
``wait_ms``.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, List, Optional, Sequence

from batchgate._internal.concurrency import Clock, QuotaRegistry
from batchgate.core.config.schema import ControllerSettings
from batchgate.core.exceptions import ItemError
from batchgate.core.types import Item, ItemOutcome, ItemResult
from batchgate.core.utils.retry_utils import IRetryStrategy, NoRetryStrategy, item_retry_strategy

logger = logging.getLogger(__name__)

ProcessOne = Callable[[Item, int], Any]
SettledCallback = Callable[[ItemOutcome], None]
StartedCallback = Callable[[Item, int], None]


def with_timeout(process_one: ProcessOne, timeout_s: float) -> ProcessOne:
    """Wrap ``process_one`` so that a slow call fails after ``timeout_s``.

    The underlying call keeps running on a daemon thread and its result is
    discarded; in-flight external calls are never interrupted.

    Args:
        process_one: The item callable to guard.
        timeout_s: Seconds the call may take.

    Returns:
        A callable with the same signature that raises ``ItemError`` on timeout.
    """
    if timeout_s <= 0:
        raise ValueError(f"timeout_s must be > 0, got {timeout_s}")

    def guarded(item: Item, index: int) -> Any:
        box: dict[str, Any] = {}

        def target() -> None:
            try:
                box["result"] = process_one(item, index)
            except BaseException as exc:  # re-raised on the calling thread
                box["error"] = exc

        worker = threading.Thread(
            target=target, name=f"batchgate-item-{item.id}", daemon=True
        )
        worker.start()
        worker.join(timeout_s)
        if worker.is_alive():
            raise ItemError(
                f"Item {item.id} timed out after {timeout_s:g}s",
                context={"item_id": item.id, "timeout_s": timeout_s},
            )
        if "error" in box:
            raise box["error"]
        return box.get("result")

    return guarded


class ItemScheduler:
    """Runs the items of one job with bounded, quota-aware concurrency.

    One scheduler can serve many jobs at once; all per-batch state lives inside
    ``run_batch``.
    """

    def __init__(
        self,
        registry: QuotaRegistry,
        *,
        clock: Clock = time.monotonic,
        retry_strategy: Optional[IRetryStrategy[Any]] = None,
        metrics: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            registry: Shared quota registry consulted before every attempt.
            clock: Monotonic time source in seconds.
            retry_strategy: Sequential retry policy per item. Each attempt
                acquires quota again. Defaults to a single attempt.
            metrics: Optional collectors from ``create_metrics()``.
        """
        self._registry = registry
        self._clock = clock
        self._retry = retry_strategy or NoRetryStrategy()
        self._metrics = metrics

    @classmethod
    def from_settings(
        cls,
        registry: QuotaRegistry,
        settings: ControllerSettings,
        *,
        clock: Clock = time.monotonic,
        metrics: Optional[dict[str, Any]] = None,
    ) -> ItemScheduler:
        """Build a scheduler whose item retries follow ``settings``."""
        retry_strategy = item_retry_strategy(
            settings.item_max_attempts,
            min_wait=settings.item_retry_min_wait_s,
            max_wait=settings.item_retry_max_wait_s,
        )
        return cls(registry, clock=clock, retry_strategy=retry_strategy, metrics=metrics)

    @property
    def registry(self) -> QuotaRegistry:
        return self._registry

    def max_concurrent_for(self, model_id: str, settings: ControllerSettings) -> int:
        """Configured in-flight item bound for the model's class."""
        model_class = self._registry.classify(model_id)
        return settings.class_config(model_class).max_concurrent_items

    def run_batch(
        self,
        items: Sequence[Item],
        model_id: str,
        process_one: ProcessOne,
        max_concurrent: int,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_started: Optional[StartedCallback] = None,
        on_settled: Optional[SettledCallback] = None,
        job_id: Optional[str] = None,
    ) -> List[ItemOutcome]:
        """Run every item and return their outcomes in index order.

        Items are submitted in index order and may complete in any order.
        Failures never short-circuit the batch.

        Args:
            items: Non-empty list of items. Empty batches are rejected upstream.
            model_id: Model identifier; selects the quota class.
            process_one: Called as ``process_one(item, index)``. Returns an
                ``ItemResult`` (or a result reference, or None) on success and
                raises on failure.
            max_concurrent: In-flight bound for this batch, >= 1.
            cancel_event: When set, items that have not started are skipped
                and in-flight items settle normally.
            on_started: Called as ``on_started(item, index)`` once an item holds
                its batch slot, before its first quota wait. Neither
                ``duration_ms`` nor ``wait_ms`` includes it. Exceptions are
                logged and ignored.
            on_settled: Called with each outcome as soon as the item settles,
                from the worker thread. Exceptions are logged and ignored.
            job_id: Only used in log lines.

        Returns:
            One outcome per settled item, sorted by index. Without
            cancellation this is exactly one outcome per input item.

        Raises:
            ValueError: If ``items`` is empty or ``max_concurrent`` < 1.
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        items = list(items)
        if not items:
            raise ValueError("items must not be empty")

        model_class = self._registry.classify(model_id)
        semaphore = threading.BoundedSemaphore(max_concurrent)
        label = job_id or "batch"

        logger.debug(
            "Starting %s: %d items, model %s (%s), concurrency %d, quota %s",
            label,
            len(items),
            model_id,
            model_class,
            max_concurrent,
            self._registry.stats(model_id),
        )

        outcomes: List[ItemOutcome] = []
        skipped = 0
        workers = min(max_concurrent, len(items))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="batchgate-items"
        ) as executor:
            futures = [
                executor.submit(
                    self._run_item,
                    item,
                    index,
                    model_id,
                    model_class,
                    process_one,
                    semaphore,
                    self._clock(),
                    cancel_event,
                    on_started,
                    on_settled,
                )
                for index, item in enumerate(items)
            ]
            for future in as_completed(futures):
                outcome = future.result()
                if outcome is None:
                    skipped += 1
                    continue
                outcomes.append(outcome)
                logger.debug("%s: %d/%d items settled", label, len(outcomes), len(items))

        if skipped:
            logger.info("%s cancelled: %d items never started", label, skipped)

        outcomes.sort(key=lambda outcome: outcome.index)
        return outcomes

    def _run_item(
        self,
        item: Item,
        index: int,
        model_id: str,
        model_class: str,
        process_one: ProcessOne,
        semaphore: threading.BoundedSemaphore,
        queued_at: float,
        cancel_event: Optional[threading.Event],
        on_started: Optional[StartedCallback],
        on_settled: Optional[SettledCallback],
    ) -> Optional[ItemOutcome]:
        attempts = 0
        api_s = 0.0
        wait_s = 0.0

        def attempt() -> Any:
            nonlocal attempts, api_s, wait_s
            gate_at = self._clock()
            self._registry.acquire(model_id, tag=item.id)
            started_at = self._clock()
            wait_s += started_at - gate_at
            attempts += 1
            try:
                return process_one(item, index)
            finally:
                api_s += self._clock() - started_at

        with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return None
            wait_s += self._clock() - queued_at
            if on_started is not None:
                try:
                    on_started(item, index)
                except Exception:
                    logger.exception("Started callback failed for item %s", item.id)
            try:
                result = self._retry.execute(attempt)
            except Exception as exc:
                logger.warning(
                    "Item %s failed after %d attempt(s): %s", item.id, attempts, exc
                )
                outcome = ItemOutcome.failed(
                    item,
                    exc,
                    duration_ms=api_s * 1000.0,
                    wait_ms=wait_s * 1000.0,
                    attempts=max(attempts, 1),
                    queued_at=queued_at,
                    settled_at=self._clock(),
                )
            else:
                outcome = ItemOutcome.succeeded(
                    item,
                    _as_item_result(result),
                    duration_ms=api_s * 1000.0,
                    wait_ms=wait_s * 1000.0,
                    attempts=attempts,
                    queued_at=queued_at,
                    settled_at=self._clock(),
                )

        self._observe(model_class, outcome)
        if on_settled is not None:
            try:
                on_settled(outcome)
            except Exception:
                logger.exception("Settled callback failed for item %s", item.id)
        return outcome

    def _observe(self, model_class: str, outcome: ItemOutcome) -> None:
        if not self._metrics:
            return
        self._metrics["items"].labels(model_class=model_class, status=outcome.status.value).inc()
        self._metrics["item_api_seconds"].labels(model_class=model_class).observe(
            outcome.duration_ms / 1000.0
        )
        self._metrics["item_wait_seconds"].labels(model_class=model_class).observe(
            outcome.wait_ms / 1000.0
        )


def _as_item_result(result: Any) -> ItemResult:
    if isinstance(result, ItemResult):
        return result
    if result is None:
        return ItemResult()
    return ItemResult(result_ref=str(result))


__all__ = ["ItemScheduler", "ProcessOne", "SettledCallback", "StartedCallback", "with_timeout"]
