"""Tests for the isolated Prometheus metrics set."""

from prometheus_client import CollectorRegistry

from batchgate.core.utils.observability.metrics import create_metrics


class TestCreateMetrics:
    def test_each_call_gets_its_own_registry(self):
        first = create_metrics()
        second = create_metrics()

        assert isinstance(first["registry"], CollectorRegistry)
        assert first["registry"] is not second["registry"]

        first["jobs"].labels(status="completed").inc()

        assert first["registry"].get_sample_value(
            "batchgate_jobs_total", {"status": "completed"}
        ) == 1.0
        assert second["registry"].get_sample_value(
            "batchgate_jobs_total", {"status": "completed"}
        ) is None

    def test_wait_and_api_time_are_separate(self):
        metrics = create_metrics()

        metrics["item_api_seconds"].labels(model_class="fast").observe(0.5)
        metrics["item_wait_seconds"].labels(model_class="fast").observe(2.0)

        registry = metrics["registry"]
        assert registry.get_sample_value(
            "batchgate_item_api_seconds_sum", {"model_class": "fast"}
        ) == 0.5
        assert registry.get_sample_value(
            "batchgate_item_wait_seconds_sum", {"model_class": "fast"}
        ) == 2.0
