"""
Structured logging for the policy resolver.

Components log through ``get_logger("policy_resolver.<component>")``. The
hosting process owns output configuration and calls ``configure_logging``
once at startup::

    from shared.logging import configure_logging

    configure_logging("policy_resolver", log_level="info")

Every ``PolicyCombiner.combine`` call runs inside ``correlation_scope`` so
events emitted while deciding one request carry its request, user and
session ids.
"""

import sys
import structlog
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple
from contextvars import ContextVar, Token

from opentelemetry import trace

# Correlation ids for the decision in progress
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar('session_id', default=None)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Render policy resolver events as JSON on stdout at ``log_level``."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_trace_context,
            add_correlation_context,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger(service_name).setLevel(level)


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Split ``policy_resolver.<component>`` into service and component fields."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        service_name, component = logger_name.split(".", 1)
        event_dict["service"] = service_name
        event_dict["component"] = component

    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the active span's trace and span ids."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach correlation ids; explicit event fields win."""
    for key, var in (("request_id", request_id_var), ("user_id", user_id_var), ("session_id", session_id_var)):
        value = var.get()
        if value:
            event_dict.setdefault(key, value)

    return event_dict


@contextmanager
def correlation_scope(
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> Iterator[str]:
    """Bind correlation ids for one decision and restore the previous ones on exit.

    Yields the request id, generated when not given.
    """
    request_id = request_id or str(uuid.uuid4())
    tokens: List[Tuple[ContextVar, Token]] = [(request_id_var, request_id_var.set(request_id))]
    if user_id:
        tokens.append((user_id_var, user_id_var.set(user_id)))
    if session_id:
        tokens.append((session_id_var, session_id_var.set(session_id)))

    try:
        yield request_id
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
