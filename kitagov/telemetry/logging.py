"""Structured logging configuration.

Configures structlog for the governance engine. Every module logs through
``structlog.get_logger(__name__)`` with dotted event names, e.g.
``gdpr.request_approved`` or ``retention.cleanup_completed``.

Log format (production):
    {
        "timestamp": "2026-02-17T02:00:00.123456Z",
        "level": "info",
        "logger": "kitagov.lifecycle.scheduler",
        "event": "retention.cleanup_completed",
        "actor_id": "user_uuid",
        "actor_role": "SUPER_ADMIN",
        "institution_id": "institution_uuid",
        "total": 12
    }

The audit logger uses this channel as its fallback: when an audit row
cannot be written, the full entry is emitted here at ERROR level.
"""

from __future__ import annotations

import logging
import sys
import uuid
from typing import TYPE_CHECKING

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from kitagov.auth.principal import Principal


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the service.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.RichTracebackFormatter(),
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_actor_context(principal: Principal) -> None:
    """Bind the acting principal to the log context of the current task."""
    structlog.contextvars.bind_contextvars(
        actor_id=str(principal.id),
        actor_role=str(principal.role),
    )
    if principal.institution_id is not None:
        bind_institution_context(principal.institution_id)
    else:
        structlog.contextvars.unbind_contextvars("institution_id")


def bind_institution_context(institution_id: str | uuid.UUID) -> None:
    structlog.contextvars.bind_contextvars(institution_id=str(institution_id))


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
