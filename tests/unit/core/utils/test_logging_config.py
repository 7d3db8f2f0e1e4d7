"""Tests for batchgate logging configuration helpers."""

import logging

import pytest

from batchgate.core.config import load_settings
from batchgate.core.utils.logging import (
    configure_logging,
    configure_logging_from_settings,
    get_logger,
    set_component_level,
)


@pytest.fixture(autouse=True)
def restore_loggers():
    names = ["batchgate", "batchgate.core.scheduler", "batchgate._internal.concurrency"]
    saved = {}
    for name in names:
        logger = logging.getLogger(name)
        saved[name] = (logger.level, list(logger.handlers))
    yield
    for name, (level, handlers) in saved.items():
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.handlers[:] = handlers


def _own_handlers():
    return [
        handler
        for handler in logging.getLogger("batchgate").handlers
        if getattr(handler, "_batchgate_handler", False)
    ]


class TestConfigureLogging:
    def test_installs_single_handler(self):
        configure_logging("WARNING")
        configure_logging("INFO")

        assert len(_own_handlers()) == 1
        assert logging.getLogger("batchgate").level == logging.INFO

    def test_verbose_forces_debug(self):
        configure_logging("ERROR", verbose=True)
        assert logging.getLogger("batchgate").level == logging.DEBUG

    def test_custom_format(self):
        configure_logging("INFO", fmt="%(levelname)s|%(message)s")
        (handler,) = _own_handlers()
        assert handler.formatter._fmt == "%(levelname)s|%(message)s"

    def test_settings_level_and_format_are_applied(self):
        settings = load_settings(
            env={"BATCHGATE_LOG_LEVEL": "DEBUG", "BATCHGATE_LOG_FORMAT": "%(name)s %(message)s"}
        )

        configure_logging_from_settings(settings)

        (handler,) = _own_handlers()
        assert logging.getLogger("batchgate").level == logging.DEBUG
        assert handler.formatter._fmt == "%(name)s %(message)s"


class TestComponentLevels:
    def test_shorthand_names(self):
        set_component_level("scheduler", "DEBUG")
        set_component_level("quota", logging.WARNING)

        assert logging.getLogger("batchgate.core.scheduler").level == logging.DEBUG
        assert logging.getLogger("batchgate._internal.concurrency").level == logging.WARNING

    def test_get_logger_is_plain(self):
        assert get_logger("batchgate.core.handler").name == "batchgate.core.handler"
