"""
Structured logging configuration using structlog.

Standardized log format (JSON output):
{
    "ts": "2025-11-18T04:30:00.123456Z",
    "level": "info",
    "service": "anchr",
    "request_id": "uuid-v4",
    "event": "webhook.received",
    "module": "anchr.api.webhook_router",
    "func_name": "handle",
    "lineno": 42,
    ...additional context...
}

The CLI uses the console renderer instead of JSON.
"""
import logging
from typing import Any

import structlog

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _service_name_adder(service_name: str):
    def add_service_name(logger: Any, method_name: str, event_dict: dict) -> dict:
        """Add service name to all log entries."""
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service_name


def setup_logging(json_output: bool = True, level: str = "info", service_name: str = "anchr"):
    """
    Configure structured logging with standardized fields.

    Args:
        json_output: If True, output JSON logs. If False, use console format.
        level: Minimum level name (debug, info, warning, error).
        service_name: Name of the emitting process (server or cli).
    """
    log_level = _LEVELS.get(level.lower(), logging.INFO)

    shared_processors = [
        # Add contextvars (includes request_id from middleware)
        structlog.contextvars.merge_contextvars,
        _service_name_adder(service_name),
        structlog.processors.TimeStamper(fmt="iso", key="ts"),
        structlog.processors.add_log_level,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=log_level)

    # Silence uvicorn's default logging to avoid duplicate logs
    logging.getLogger("uvicorn.error").handlers = []
    logging.getLogger("uvicorn.access").handlers = []


def get_logger(**initial_values: Any):
    """Get a configured structlog logger, optionally bound to initial values."""
    return structlog.get_logger(**initial_values)
