"""
Shared logging configuration for the entitlement sync client.

Log events go to stderr so that command line output on stdout stays parseable.
"""

import sys
import structlog
import logging
import uuid
import time
from typing import Any, Dict, Optional, TextIO
from contextvars import ContextVar

# Context variables for correlation IDs
identity_id_var: ContextVar[Optional[str]] = ContextVar('identity_id', default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar('session_id', default=None)


def configure_logging(component_name: str, log_level: str = "info", log_format: str = "json",
                      stream: Optional[TextIO] = None) -> None:
    """Configure structured logging for the client.

    ``log_format`` is "json" for machine-readable output or "console" for a
    human-readable rendering.
    """
    renderer = structlog.dev.ConsoleRenderer() if log_format == "console" else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_component_context,
            add_correlation_context,
            add_timestamp,
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stderr,
        level=getattr(logging, log_level.upper()),
    )
    structlog.get_logger(component_name).debug("Logging configured", level=log_level, format=log_format)


def add_component_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the top-level component name (e.g. "sync") to log events."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["component"] = logger_name.split(".")[0]
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Tag events with the active identity and its session id."""
    identity_id = identity_id_var.get()
    if identity_id and "identity" not in event_dict:
        event_dict["identity"] = identity_id

    session_id = session_id_var.get()
    if session_id:
        event_dict["session_id"] = session_id

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict["timestamp"] = time.time()
    return event_dict


def set_identity_context(identity_id: Optional[str]) -> Optional[str]:
    """Bind the active identity to subsequent log events.

    Each bound identity gets a fresh session id; ``None`` clears both.
    Returns the new session id.
    """
    identity_id_var.set(identity_id)
    session_id = str(uuid.uuid4()) if identity_id else None
    session_id_var.set(session_id)
    return session_id


def clear_context():
    """Clear all context variables."""
    identity_id_var.set(None)
    session_id_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
