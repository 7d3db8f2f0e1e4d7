"""Configuration schema module.

This module defines the data structures used to configure the execution
controller. The schemas are pydantic models so that values coming from YAML
files and environment variables are validated in one place.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, PositiveInt, model_validator


class ModelClassConfig(BaseModel):
    """Limits for one model class.

    Attributes:
        quota_capacity: Requests allowed per quota window, shared process-wide.
        max_concurrent_items: In-flight items allowed inside one job.
    """

    quota_capacity: PositiveInt
    max_concurrent_items: PositiveInt


class ClassRuleConfig(BaseModel):
    """Substring rule mapping model identifiers to a class."""

    pattern: str = Field(min_length=1)
    model_class: str = Field(min_length=1)


class LoggingConfig(BaseModel):
    """Configuration for logging.

    Attributes:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: ``logging`` format string
    """

    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _default_classes() -> Dict[str, ModelClassConfig]:
    return {
        "fast": ModelClassConfig(quota_capacity=1000, max_concurrent_items=15),
        "heavy": ModelClassConfig(quota_capacity=500, max_concurrent_items=10),
    }


def _default_rules() -> List[ClassRuleConfig]:
    return [
        ClassRuleConfig(pattern="flash", model_class="fast"),
        ClassRuleConfig(pattern="fast", model_class="fast"),
        ClassRuleConfig(pattern="pro", model_class="heavy"),
        ClassRuleConfig(pattern="heavy", model_class="heavy"),
    ]


class ControllerSettings(BaseModel):
    """Root configuration of the execution controller.

    Attributes:
        max_concurrent_jobs: Jobs running at once in this process.
        quota_window_ms: Length of every quota window.
        quota_margin_ms: Safety margin added to computed quota waits.
        classes: Limits per model class.
        rules: Ordered classification rules; first match wins.
        default_class: Class for identifiers no rule matches.
        item_max_attempts: Sequential attempts per item for transient errors.
        item_retry_min_wait_s: Shortest backoff before a retried attempt.
        item_retry_max_wait_s: Longest backoff before a retried attempt.
        item_timeout_s: Optional per-item timeout; a timeout fails the item.
        poll_timeout_s: How long one dequeue call may block.
        logging: Logging configuration.
    """

    max_concurrent_jobs: PositiveInt = 3
    quota_window_ms: PositiveInt = 60000
    quota_margin_ms: int = Field(default=100, ge=0)
    classes: Dict[str, ModelClassConfig] = Field(default_factory=_default_classes)
    rules: List[ClassRuleConfig] = Field(default_factory=_default_rules)
    default_class: str = "fast"
    item_max_attempts: PositiveInt = 1
    item_retry_min_wait_s: float = Field(default=1.0, ge=0)
    item_retry_max_wait_s: float = Field(default=30.0, ge=0)
    item_timeout_s: Optional[float] = Field(default=None, gt=0)
    poll_timeout_s: float = Field(default=1.0, gt=0)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _check_classes(self) -> "ControllerSettings":
        if not self.classes:
            raise ValueError("at least one model class must be configured")
        if self.default_class not in self.classes:
            raise ValueError(f"default_class {self.default_class!r} is not a configured class")
        for rule in self.rules:
            if rule.model_class not in self.classes:
                raise ValueError(
                    f"rule {rule.pattern!r} refers to unknown class {rule.model_class!r}"
                )
        if self.item_retry_max_wait_s < self.item_retry_min_wait_s:
            raise ValueError("item_retry_max_wait_s must be >= item_retry_min_wait_s")
        return self

    def class_config(self, model_class: str) -> ModelClassConfig:
        return self.classes[model_class]
