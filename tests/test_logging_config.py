"""Tests for the structlog setup."""

from __future__ import annotations

import logging

import structlog

from session_clearinghouse.logging_config import (
    QUIET_LOGGERS,
    bind_request_id,
    get_logger,
    setup_logging,
)


def test_setup_sets_root_level_and_quiets_chatty_loggers() -> None:
    setup_logging(log_level="info", json_logs=True)

    root = logging.getLogger()
    assert root.level == logging.INFO
    assert len(root.handlers) == 1
    for name in QUIET_LOGGERS:
        assert logging.getLogger(name).level == logging.WARNING


def test_unknown_level_falls_back_to_debug() -> None:
    setup_logging(log_level="chatty")
    assert logging.getLogger().level == logging.DEBUG


def test_request_id_replaces_previous_context() -> None:
    structlog.contextvars.bind_contextvars(request_id="old", booking_id="b-1")

    bind_request_id("req-7")

    assert structlog.contextvars.get_contextvars() == {"request_id": "req-7"}
    structlog.contextvars.clear_contextvars()


def test_get_logger_is_usable() -> None:
    logger = get_logger("session_clearinghouse.tests")
    logger.info("test.logged", booking_id="b-1")
