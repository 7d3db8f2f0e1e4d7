"""
batchgate: Execution Concurrency & Rate-Limiting Controller
===========================================================

batchgate runs batch jobs against a rate-limited third-party generation API.
It bounds how many jobs run at once, how many items of one job are in flight,
and how many calls each model class makes within a sliding time window, while
letting every item of a job succeed or fail on its own.

Examples:
    from batchgate import (
        BatchJobHandler,
        ItemScheduler,
        JobDispatcher,
        QuotaRegistry,
        ResultAggregator,
        configure_logging_from_settings,
        load_settings,
    )
    from batchgate.core.http_client import HTTPGenerationClient
    from batchgate.core.sql_store import SQLJobStore

    settings = load_settings("batchgate.yaml")
    configure_logging_from_settings(settings)
    registry = QuotaRegistry.from_settings(settings)
    store = SQLJobStore.from_url("sqlite:///jobs.db")

    handler = BatchJobHandler(
        registry,
        ItemScheduler.from_settings(registry, settings),
        ResultAggregator(store),
        HTTPGenerationClient("https://generation.example.com"),
        settings,
    )
    dispatcher = JobDispatcher.from_settings(queue, store, handler, settings)
    dispatcher.install_signal_handlers()
    dispatcher.run_forever()
"""

from __future__ import annotations

from batchgate.core.exceptions import (
    BatchGateError,
    ConfigurationError,
    FatalJobError,
    ItemError,
    TransientItemError,
)
from batchgate.core.types import (
    Delivery,
    GenerationResult,
    Item,
    ItemOutcome,
    ItemResult,
    ItemStatus,
    Job,
    JobResult,
    JobStatus,
    JobSummary,
    LimiterStats,
)
from batchgate._internal.concurrency import (
    ModelClassifier,
    ModelClassRule,
    QuotaLimit,
    QuotaLimiter,
    QuotaRegistry,
)
from batchgate.core.config import ControllerSettings, load_settings
from batchgate.core.scheduler import ItemScheduler, with_timeout
from batchgate.core.aggregator import ResultAggregator
from batchgate.core.dispatcher import JobDispatcher
from batchgate.core.handler import BatchJobHandler
from batchgate.core.utils.logging import configure_logging_from_settings

__version__ = "0.1.0"

__all__ = [
    "BatchGateError",
    "BatchJobHandler",
    "ConfigurationError",
    "ControllerSettings",
    "Delivery",
    "FatalJobError",
    "GenerationResult",
    "Item",
    "ItemError",
    "ItemOutcome",
    "ItemResult",
    "ItemScheduler",
    "ItemStatus",
    "Job",
    "JobDispatcher",
    "JobResult",
    "JobStatus",
    "JobSummary",
    "LimiterStats",
    "ModelClassRule",
    "ModelClassifier",
    "QuotaLimit",
    "QuotaLimiter",
    "QuotaRegistry",
    "ResultAggregator",
    "TransientItemError",
    "configure_logging_from_settings",
    "load_settings",
    "with_timeout",
]
