"""Logging utilities for batchgate.

Library modules only ever call ``logging.getLogger(__name__)``. The worker
process that embeds the controller calls ``configure_logging`` once at startup.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Union

if TYPE_CHECKING:
    from batchgate.core.config.schema import ControllerSettings

_ROOT_LOGGER = "batchgate"

# Component shorthands accepted by set_component_level.
_COMPONENTS = {
    "quota": "batchgate._internal.concurrency",
    "scheduler": "batchgate.core.scheduler",
    "dispatcher": "batchgate.core.dispatcher",
    "aggregator": "batchgate.core.aggregator",
    "handler": "batchgate.core.handler",
}


def get_logger(name: str) -> logging.Logger:
    """Get a module logger by name (no prefixing).

    Args:
        name: Logger name (typically ``__name__``).

    Returns:
        Logger instance.
    """
    return logging.getLogger(name)


def _level_value(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def configure_logging(
    level: Union[str, int] = "INFO",
    fmt: Optional[str] = None,
    *,
    verbose: bool = False,
) -> None:
    """Attach a stream handler to the ``batchgate`` logger.

    Calling it again replaces the handler installed by a previous call instead
    of stacking another one.

    Args:
        level: Level name or numeric constant.
        fmt: ``logging`` format string.
        verbose: Force DEBUG regardless of ``level``.
    """
    logger = logging.getLogger(_ROOT_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_batchgate_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(fmt or "%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    handler._batchgate_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else _level_value(level))


def configure_logging_from_settings(settings: ControllerSettings) -> None:
    """Apply ``settings.logging`` (level and format) through ``configure_logging``."""
    configure_logging(settings.logging.level, settings.logging.format)


def set_component_level(component: str, level: Union[str, int]) -> None:
    """Set log level for a specific component or logger name.

    Accepts either string levels (e.g., "INFO") or numeric constants.
    """
    name = _COMPONENTS.get(component, component)
    logging.getLogger(name).setLevel(_level_value(level))
