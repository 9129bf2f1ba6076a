"""Tests for usbmon.log — TRACE level and setup_logging."""

from __future__ import annotations

import logging

from usbmon.log import TRACE, setup_logging


def test_trace_level_registered():
    assert logging.getLevelName(TRACE) == "TRACE"


def test_logger_trace(caplog):
    log = logging.getLogger("usbmon.test_trace")
    caplog.set_level(TRACE, logger="usbmon.test_trace")
    log.trace("very noisy %d", 1)
    assert "very noisy 1" in caplog.text


def test_trace_disabled_by_default(caplog):
    log = logging.getLogger("usbmon.test_trace_off")
    caplog.set_level(logging.DEBUG, logger="usbmon.test_trace_off")
    log.trace("hidden")
    assert "hidden" not in caplog.text


def test_setup_logging_idempotent(tmp_path):
    log_file = tmp_path / "usbmon.log"
    logger = setup_logging(debug=True, log_file=str(log_file))
    count = len(logger.handlers)
    assert setup_logging(log_file=str(log_file)) is logger
    assert len(logger.handlers) == count
    assert logger.level == logging.INFO
