"""Telemetry package: structured logging setup and context binding."""

from __future__ import annotations

from kitagov.telemetry.logging import (
    bind_actor_context,
    bind_institution_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "bind_actor_context",
    "bind_institution_context",
    "clear_context",
    "configure_logging",
]
