"""
Unit tests for ItemScheduler.run_batch.

These tests verify settle-all semantics, the per-batch concurrency bound, the
quota gate in front of every attempt, cancellation and timeouts.
"""

import threading
import time

import pytest

from batchgate._internal.concurrency import QuotaRegistry
from batchgate.core.config import ControllerSettings
from batchgate.core.exceptions import ItemError, TransientItemError
from batchgate.core.scheduler import ItemScheduler, with_timeout
from batchgate.core.types import Item, ItemResult, ItemStatus
from batchgate.core.utils.observability.metrics import create_metrics
from batchgate.core.utils.retry_utils import ExponentialBackoffStrategy


def _items(count, job_id="job"):
    return [Item(id=f"{job_id}:{i}", index=i, payload=f"prompt {i}") for i in range(count)]


@pytest.fixture
def scheduler(registry):
    return ItemScheduler(registry)


class TestRunBatchArguments:
    """Tests for argument validation."""

    def test_empty_items_rejected(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.run_batch([], "gemini-flash", lambda item, index: None, 1)

    def test_zero_concurrency_rejected(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.run_batch(_items(1), "gemini-flash", lambda item, index: None, 0)

    def test_max_concurrent_for_model_class(self, scheduler, settings):
        assert scheduler.max_concurrent_for("gemini-2.5-flash-image", settings) == 15
        assert scheduler.max_concurrent_for("gemini-3-pro-image-preview", settings) == 10
        assert scheduler.max_concurrent_for("unknown-model", settings) == 15


class TestSettleAll:
    """Tests for independent settlement of items."""

    def test_partial_failure_never_cancels_siblings(self, scheduler):
        """Odd items fail; every even item still succeeds."""

        def process_one(item, index):
            if index % 2:
                raise ItemError(f"item {index} rejected")
            return ItemResult(result_ref=f"ref-{index}")

        outcomes = scheduler.run_batch(_items(10), "gemini-flash", process_one, 4)

        assert [o.index for o in outcomes] == list(range(10))
        assert sum(o.ok for o in outcomes) == 5
        assert outcomes[0].result_ref == "ref-0"
        assert outcomes[1].status is ItemStatus.FAILED
        assert outcomes[1].error == "item 1 rejected"

    def test_plain_return_values_become_references(self, scheduler):
        outcomes = scheduler.run_batch(
            _items(2), "gemini-flash", lambda item, index: f"s3://bucket/{index}", 2
        )
        assert [o.result_ref for o in outcomes] == ["s3://bucket/0", "s3://bucket/1"]

    def test_semaphore_released_on_exception(self, scheduler):
        """With one slot, every failing item still lets the next one run."""

        def process_one(item, index):
            raise RuntimeError("provider exploded")

        outcomes = scheduler.run_batch(_items(5), "gemini-flash", process_one, 1)

        assert len(outcomes) == 5
        assert all(o.status is ItemStatus.FAILED for o in outcomes)

    def test_in_flight_bound(self, scheduler):
        """No more than max_concurrent items run at once."""
        lock = threading.Lock()
        state = {"current": 0, "peak": 0}

        def process_one(item, index):
            with lock:
                state["current"] += 1
                state["peak"] = max(state["peak"], state["current"])
            time.sleep(0.02)
            with lock:
                state["current"] -= 1

        scheduler.run_batch(_items(12), "gemini-flash", process_one, 3)

        assert state["peak"] <= 3

    def test_wall_time_bounded_by_slowest_wave(self, scheduler):
        """Six 100ms items at concurrency 3 finish in about two waves, not six."""

        def process_one(item, index):
            time.sleep(0.1)

        started = time.monotonic()
        outcomes = scheduler.run_batch(_items(6), "gemini-flash", process_one, 3)
        elapsed = time.monotonic() - started

        assert len(outcomes) == 6
        assert elapsed < 0.45

    def test_on_settled_sees_every_outcome(self, scheduler):
        seen = []
        lock = threading.Lock()

        def on_settled(outcome):
            with lock:
                seen.append(outcome.index)

        scheduler.run_batch(
            _items(4), "gemini-flash", lambda item, index: None, 2, on_settled=on_settled
        )

        assert sorted(seen) == [0, 1, 2, 3]

    def test_failing_on_settled_is_logged(self, scheduler, caplog):
        def on_settled(outcome):
            raise RuntimeError("store down")

        outcomes = scheduler.run_batch(
            _items(2), "gemini-flash", lambda item, index: None, 2, on_settled=on_settled
        )

        assert all(o.ok for o in outcomes)
        assert "Settled callback failed" in caplog.text


class TestTimings:
    """Tests for API time versus wait time."""

    def test_duration_excludes_quota_wait(self, fake_clock):
        """duration_ms counts only the call; the blocked quota wait lands in wait_ms."""
        settings = ControllerSettings(
            quota_window_ms=1000,
            classes={
                "fast": {"quota_capacity": 1, "max_concurrent_items": 2},
                "heavy": {"quota_capacity": 1, "max_concurrent_items": 2},
            },
        )
        registry = QuotaRegistry.from_settings(settings, clock=fake_clock)
        limiter = registry.limiter("fast")
        limiter.acquire()
        scheduler = ItemScheduler(registry, clock=fake_clock)

        def process_one(item, index):
            fake_clock.advance(0.2)

        def release_quota():
            while limiter.stats().queued_count == 0:
                time.sleep(0.001)
            fake_clock.advance(1.0)
            limiter.admit()

        driver = threading.Thread(target=release_quota, daemon=True)
        driver.start()
        (outcome,) = scheduler.run_batch(_items(1), "gemini-flash", process_one, 1)
        driver.join(2.0)

        assert outcome.duration_ms == pytest.approx(200.0)
        assert outcome.wait_ms == pytest.approx(1000.0)
        assert outcome.settled_at - outcome.queued_at == pytest.approx(1.2)


class TestCancellation:
    """Tests for user aborts."""

    def test_cancel_skips_items_not_started(self, scheduler):
        cancel = threading.Event()

        def process_one(item, index):
            cancel.set()

        outcomes = scheduler.run_batch(
            _items(5), "gemini-flash", process_one, 1, cancel_event=cancel
        )

        assert [o.index for o in outcomes] == [0]
        assert outcomes[0].ok

    def test_in_flight_items_settle_after_cancel(self, scheduler):
        cancel = threading.Event()
        gate = threading.Barrier(2)

        def process_one(item, index):
            gate.wait(2.0)
            cancel.set()
            return "done"

        outcomes = scheduler.run_batch(
            _items(6), "gemini-flash", process_one, 2, cancel_event=cancel
        )

        assert len(outcomes) == 2
        assert all(o.ok for o in outcomes)


class TestRetries:
    """Tests for sequential retries of transient failures."""

    def _fast_retry(self, attempts=3):
        return ExponentialBackoffStrategy(
            min_wait=0, max_wait=0, max_attempts=attempts, retry_on=(TransientItemError,)
        )

    def test_transient_errors_are_retried(self, registry):
        scheduler = ItemScheduler(registry, retry_strategy=self._fast_retry())
        calls = []

        def process_one(item, index):
            calls.append(index)
            if len(calls) < 3:
                raise TransientItemError("503 from provider")
            return "ok"

        (outcome,) = scheduler.run_batch(_items(1), "gemini-flash", process_one, 1)

        assert outcome.ok
        assert outcome.attempts == 3

    def test_each_attempt_acquires_quota(self, registry):
        scheduler = ItemScheduler(registry, retry_strategy=self._fast_retry())

        def process_one(item, index):
            raise TransientItemError("still down")

        (outcome,) = scheduler.run_batch(_items(1), "gemini-flash", process_one, 1)

        assert outcome.status is ItemStatus.FAILED
        assert outcome.attempts == 3
        assert registry.limiter("fast").total_grants == 3

    def test_permanent_errors_are_not_retried(self, registry):
        scheduler = ItemScheduler(registry, retry_strategy=self._fast_retry())

        def process_one(item, index):
            raise ItemError("prompt rejected")

        (outcome,) = scheduler.run_batch(_items(1), "gemini-flash", process_one, 1)

        assert outcome.attempts == 1
        assert outcome.error == "prompt rejected"


class TestWithTimeout:
    """Tests for the per-item timeout wrapper."""

    def test_slow_item_fails(self, scheduler):
        def slow(item, index):
            time.sleep(0.5)

        outcomes = scheduler.run_batch(
            _items(2), "gemini-flash", with_timeout(slow, 0.05), 2
        )

        assert all(o.status is ItemStatus.FAILED for o in outcomes)
        assert "timed out" in outcomes[0].error

    def test_fast_item_passes_through(self):
        guarded = with_timeout(lambda item, index: index * 2, 1.0)
        assert guarded(_items(1)[0], 21) == 42

    def test_errors_are_reraised(self):
        def boom(item, index):
            raise ItemError("bad prompt")

        with pytest.raises(ItemError, match="bad prompt"):
            with_timeout(boom, 1.0)(_items(1)[0], 0)

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            with_timeout(lambda item, index: None, 0)


class TestMetrics:
    def test_items_are_counted_per_class(self, registry):
        metrics = create_metrics()
        scheduler = ItemScheduler(registry, metrics=metrics)

        def process_one(item, index):
            if index == 0:
                raise ItemError("nope")

        scheduler.run_batch(_items(3), "gemini-3-pro", process_one, 3)

        prom = metrics["registry"]
        assert prom.get_sample_value(
            "batchgate_items_total", {"model_class": "heavy", "status": "completed"}
        ) == 2.0
        assert prom.get_sample_value(
            "batchgate_items_total", {"model_class": "heavy", "status": "failed"}
        ) == 1.0
        assert prom.get_sample_value(
            "batchgate_item_api_seconds_count", {"model_class": "heavy"}
        ) == 3.0


class TestLocalQueueing:
    """Tests for time spent waiting on the batch's own in-flight bound."""

    def test_wait_includes_time_queued_behind_siblings(self, scheduler):
        def process_one(item, index):
            time.sleep(0.1)

        outcomes = scheduler.run_batch(_items(3), "gemini-flash", process_one, 1)

        assert outcomes[0].wait_ms < 50
        assert outcomes[1].wait_ms >= 80
        assert outcomes[2].wait_ms >= 150
        for outcome in outcomes:
            assert outcome.duration_ms >= 90

    def test_queued_at_is_stamped_at_submission(self, scheduler):
        def process_one(item, index):
            time.sleep(0.05)

        outcomes = scheduler.run_batch(_items(3), "gemini-flash", process_one, 1)

        spread = max(o.queued_at for o in outcomes) - min(o.queued_at for o in outcomes)
        assert spread < 0.04


class TestStartedHook:
    """Tests for the hook that runs once an item holds its slot."""

    def test_hook_time_is_neither_duration_nor_wait(self, scheduler):
        started = []

        def on_started(item, index):
            started.append(index)
            time.sleep(0.3)

        (outcome,) = scheduler.run_batch(
            _items(1), "gemini-flash", lambda item, index: "ref", 1, on_started=on_started
        )

        assert started == [0]
        assert outcome.duration_ms < 100
        assert outcome.wait_ms < 100

    def test_hook_runs_once_per_item_across_retries(self, registry):
        scheduler = ItemScheduler(
            registry,
            retry_strategy=ExponentialBackoffStrategy(
                min_wait=0, max_wait=0, max_attempts=3, retry_on=(TransientItemError,)
            ),
        )
        started = []

        def process_one(item, index):
            raise TransientItemError("busy")

        (outcome,) = scheduler.run_batch(
            _items(1),
            "gemini-flash",
            process_one,
            1,
            on_started=lambda item, index: started.append(index),
        )

        assert outcome.attempts == 3
        assert started == [0]

    def test_failing_hook_is_logged_and_item_still_runs(self, scheduler, caplog):
        def on_started(item, index):
            raise RuntimeError("store offline")

        with caplog.at_level("ERROR", logger="batchgate.core.scheduler"):
            (outcome,) = scheduler.run_batch(
                _items(1), "gemini-flash", lambda item, index: "ref", 1, on_started=on_started
            )

        assert outcome.ok
        assert "Started callback failed" in caplog.text


class TestFromSettings:
    """Tests for building a scheduler from controller settings."""

    def test_item_max_attempts_drives_retries(self, registry):
        settings = ControllerSettings(
            item_max_attempts=3, item_retry_min_wait_s=0, item_retry_max_wait_s=0
        )
        scheduler = ItemScheduler.from_settings(registry, settings)

        def process_one(item, index):
            raise TransientItemError("503 from provider")

        (outcome,) = scheduler.run_batch(_items(1), "gemini-flash", process_one, 1)

        assert outcome.attempts == 3
        assert registry.limiter("fast").total_grants == 3

    def test_default_settings_make_a_single_attempt(self, registry, settings):
        scheduler = ItemScheduler.from_settings(registry, settings)

        def process_one(item, index):
            raise TransientItemError("503 from provider")

        (outcome,) = scheduler.run_batch(_items(1), "gemini-flash", process_one, 1)

        assert outcome.attempts == 1
