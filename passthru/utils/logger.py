"""Structured logging for passthru.

Every event is a structlog keyword event. While a request is being relayed
its id lives in ``request_id_var`` and is stamped on each event, including
events emitted from the body drain task (tasks copy the context they were
created in). The forwarding route sets the id on entry and clears it once
the response is finished.

Environment:
  LOG_LEVEL  DEBUG / INFO / WARNING / ERROR (default INFO, DEBUG when DEBUG=true)
  DEBUG      "true" enables debug logging and the OpenAPI docs
  JSON_LOGS  "false" switches to the coloured console renderer
"""

import logging
import os
import sys
from contextvars import ContextVar
from typing import Optional

import structlog
from structlog.types import EventDict, Processor

request_id_var: ContextVar[Optional[str]] = ContextVar("passthru_request_id", default=None)


def add_request_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp the current request id, unless the event already carries one."""
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Install the passthru processor chain.

    Args:
        log_level:   Minimum level name; events below it are dropped.
        json_output: JSON lines when True, console rendering otherwise.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def debug_enabled() -> bool:
    return os.getenv("DEBUG", "false").lower() == "true"


def configure_logging_from_env() -> None:
    """Configure logging from LOG_LEVEL, DEBUG and JSON_LOGS."""
    log_level = os.getenv("LOG_LEVEL", "DEBUG" if debug_enabled() else "INFO")
    json_output = os.getenv("JSON_LOGS", "true").lower() == "true"
    configure_logging(log_level=log_level, json_output=json_output)


def get_logger(name: str = "passthru") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> None:
    """Bind ``request_id`` to every event logged from the current context."""
    request_id_var.set(request_id)


def current_request_id() -> Optional[str]:
    return request_id_var.get()


def clear_request_id() -> None:
    """Unbind the request id once the request is finished."""
    request_id_var.set(None)


# Defaults until main.py reconfigures from the environment
configure_logging()
