"""Quota control for external generation calls.

This package provides a sliding-window quota limiter and a registry that keeps
one limiter per model class. Calls for different classes never compete for the
same quota; calls inside a class are admitted first-come, first-served.

Key concepts:
- **QuotaLimiter**: At most ``capacity`` grants in any ``window_s`` window.
- **ModelClassifier**: Ordered substring rules with one default class.
- **QuotaRegistry**: One limiter per class, shared by every job in the process.

Example usage:
    from batchgate._internal.concurrency import (
        ModelClassRule,
        ModelClassifier,
        QuotaLimit,
        QuotaRegistry,
    )

    registry = QuotaRegistry(
        {"fast": QuotaLimit(1000, 60.0), "heavy": QuotaLimit(500, 60.0)},
        ModelClassifier(
            [ModelClassRule("flash", "fast"), ModelClassRule("pro", "heavy")],
            default_class="fast",
        ),
    )

    registry.acquire("gemini-2.5-flash-image")  # blocks until quota allows
    response = call_provider(...)
"""

from batchgate._internal.concurrency.limiter import Clock, GrantCallback, QuotaLimiter
from batchgate._internal.concurrency.registry import (
    ModelClassifier,
    ModelClassRule,
    QuotaLimit,
    QuotaRegistry,
)

__all__ = [
    "Clock",
    "GrantCallback",
    "ModelClassRule",
    "ModelClassifier",
    "QuotaLimit",
    "QuotaLimiter",
    "QuotaRegistry",
]
