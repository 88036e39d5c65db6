"""structlog setup for the clearinghouse.

Every state change in the marketplace is logged as a dotted event name
(service.booked, escrow.released, payment.transfer_in_flight, ...) with the
entity ids as key/value pairs, so one booking can be followed from claim to
settlement with a single grep. Under the API each line also carries the
request_id bound by the request middleware.

Console output is colored for local runs and the simulation script. The
server writes one JSON object per line whenever APP_ENV is not "development".

Usage:
    from session_clearinghouse.logging_config import get_logger, setup_logging
    setup_logging(log_level="INFO", json_logs=True)
    logger = get_logger(__name__)
    logger.info("booking.confirmed", booking_id=booking.id, service_id=service.id)
"""

from __future__ import annotations

import logging
import sys

import structlog

# Chatty at INFO: access lines, HTTP client internals, LLM judge calls
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "LiteLLM", "cdp")


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Route stdlib logging and structlog through one stdout handler.

    Args:
        log_level: Level name for the root logger; unknown names fall back to DEBUG.
        json_logs: JSON lines when True, colored console output when False.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_request_id(request_id: str) -> None:
    """Start a fresh log context for one API request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Module-level logger; pass __name__ so log lines show which service wrote them."""
    return structlog.get_logger(name)
