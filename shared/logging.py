"""
Shared logging configuration for the invoice dispatch service.
"""

import sys
import structlog
import logging
import uuid
import time
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for correlation IDs
run_id_var: ContextVar[Optional[str]] = ContextVar('run_id', default=None)
item_id_var: ContextVar[Optional[str]] = ContextVar('item_id', default=None)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""

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
            add_correlation_context,
            add_timestamp,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to log events."""
    # "dispatch.kafka.consumer" -> "dispatch"
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]

    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add orchestration run and item correlation to log events."""
    run_id = run_id_var.get()
    if run_id:
        event_dict.setdefault("run_id", run_id)

    item_id = item_id_var.get()
    if item_id:
        event_dict.setdefault("item_id", item_id)

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set orchestration run ID in context."""
    if run_id is None:
        run_id = str(uuid.uuid4())
    run_id_var.set(run_id)
    return run_id


def set_item_id(item_id: Optional[str]) -> None:
    """Set the work item being processed in context."""
    item_id_var.set(item_id)


def clear_context():
    """Clear all context variables."""
    run_id_var.set(None)
    item_id_var.set(None)


def mask_token(token: Optional[str], visible: int = 10) -> str:
    """Render a secret as a short prefix safe for logs."""
    if not token:
        return "<empty>"
    if len(token) <= visible:
        return "***"
    return f"{token[:visible]}..."


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
