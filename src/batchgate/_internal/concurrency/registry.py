"""Model-aware registry of quota limiters.

Each model class (for example ``fast`` and ``heavy``) owns one
``QuotaLimiter``. A free-text model identifier is mapped to its class by an
ordered list of substring rules; the first matching rule wins and anything
unmatched falls back to a documented default class.

The registry is an explicitly constructed object. Build one at process start
and pass it to the schedulers that need it; tests build fresh instances.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Sequence, Union

from batchgate._internal.concurrency.limiter import Clock, QuotaLimiter
from batchgate.core.types import LimiterStats

if TYPE_CHECKING:
    from batchgate.core.config.schema import ControllerSettings

_LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ModelClassRule:
    """Map model identifiers containing ``pattern`` to ``model_class``.

    Matching is a case-insensitive substring test.
    """

    pattern: str
    model_class: str

    def matches(self, model_id: str) -> bool:
        return self.pattern.lower() in model_id.lower()


@dataclass(frozen=True, slots=True)
class QuotaLimit:
    """Capacity and window for one model class."""

    capacity: int
    window_s: float


class ModelClassifier:
    """Total function from model identifier to model class.

    Rules are evaluated in order; the first match wins. Empty or unknown
    identifiers resolve to ``default_class`` and are logged at WARNING level.
    """

    def __init__(self, rules: Sequence[ModelClassRule], default_class: str) -> None:
        self._rules = tuple(rules)
        self.default_class = default_class

    @property
    def rules(self) -> tuple[ModelClassRule, ...]:
        return self._rules

    def classify(self, model_id: Optional[str]) -> str:
        if not model_id or not isinstance(model_id, str):
            _LOG.warning("No model specified, using %s quota class", self.default_class)
            return self.default_class

        for rule in self._rules:
            if rule.matches(model_id):
                _LOG.debug("Model %s -> %s quota class", model_id, rule.model_class)
                return rule.model_class

        _LOG.warning(
            "Unknown model type %s, using %s quota class", model_id, self.default_class
        )
        return self.default_class


class QuotaRegistry:
    """One ``QuotaLimiter`` per model class plus model-id classification.

    Attributes:
        classifier: Maps model identifiers to class names.
    """

    def __init__(
        self,
        limits: Mapping[str, QuotaLimit],
        classifier: ModelClassifier,
        *,
        margin_s: float = 0.1,
        clock: Clock = time.monotonic,
    ) -> None:
        """Create the limiters.

        Args:
            limits: Capacity and window for each model class.
            classifier: Rules resolving model ids to one of ``limits``' keys.
            margin_s: Safety margin passed to each limiter.
            clock: Monotonic time source shared by every limiter.

        Raises:
            ValueError: If a rule or the default class names an unknown class.
        """
        if not limits:
            raise ValueError("at least one model class is required")

        known = set(limits)
        referenced = {rule.model_class for rule in classifier.rules}
        referenced.add(classifier.default_class)
        unknown = referenced - known
        if unknown:
            raise ValueError(f"classification refers to unknown classes: {sorted(unknown)}")

        self.classifier = classifier
        self._limiters: Dict[str, QuotaLimiter] = {
            name: QuotaLimiter(
                limit.capacity, limit.window_s, margin_s=margin_s, clock=clock, name=name
            )
            for name, limit in limits.items()
        }

        _LOG.info("Quota limiters initialized:")
        for name, limiter in self._limiters.items():
            _LOG.info(
                "   %s models: %d requests per %.0fs", name, limiter.capacity, limiter.window_s
            )

    @classmethod
    def from_settings(
        cls, settings: ControllerSettings, *, clock: Clock = time.monotonic
    ) -> QuotaRegistry:
        """Build a registry from validated controller settings."""
        window_s = settings.quota_window_ms / 1000.0
        limits = {
            name: QuotaLimit(capacity=cfg.quota_capacity, window_s=window_s)
            for name, cfg in settings.classes.items()
        }
        rules = [ModelClassRule(rule.pattern, rule.model_class) for rule in settings.rules]
        classifier = ModelClassifier(rules, settings.default_class)
        return cls(
            limits,
            classifier,
            margin_s=settings.quota_margin_ms / 1000.0,
            clock=clock,
        )

    @property
    def classes(self) -> tuple[str, ...]:
        return tuple(self._limiters)

    def classify(self, model_id: Optional[str]) -> str:
        return self.classifier.classify(model_id)

    def limiter_for(self, model_id: Optional[str]) -> QuotaLimiter:
        return self._limiters[self.classify(model_id)]

    def limiter(self, model_class: str) -> QuotaLimiter:
        """Return the limiter for a class name (not a model id)."""
        try:
            return self._limiters[model_class]
        except KeyError:
            raise KeyError(f"unknown model class: {model_class}") from None

    def acquire(self, model_id: Optional[str], tag: Any = None) -> None:
        """Block until the model's class has quota for one more call."""
        self.limiter_for(model_id).acquire(tag)

    def stats(
        self, model_id: Optional[str] = None
    ) -> Union[LimiterStats, Dict[str, LimiterStats]]:
        """Stats for one model's class, or for every class when no id is given."""
        if model_id is None:
            return {name: limiter.stats() for name, limiter in self._limiters.items()}
        return self.limiter_for(model_id).stats()

    def reset_all(self) -> None:
        """Reset every limiter. For test isolation only."""
        for limiter in self._limiters.values():
            limiter.reset()


__all__ = ["ModelClassRule", "ModelClassifier", "QuotaLimit", "QuotaRegistry"]
