"""Soft-deletion cascades, retention policy and scheduled purging."""

from __future__ import annotations

from kitagov.lifecycle.cascade import EntityState, SoftDeleteCascadeEngine
from kitagov.lifecycle.entities import EntityType
from kitagov.lifecycle.retention import RetentionPolicy
from kitagov.lifecycle.scheduler import (
    CleanupResult,
    PendingPurge,
    RetentionJobRunner,
    RetentionScheduler,
    next_run_at,
)

__all__ = [
    "CleanupResult",
    "EntityState",
    "EntityType",
    "PendingPurge",
    "RetentionJobRunner",
    "RetentionPolicy",
    "RetentionScheduler",
    "SoftDeleteCascadeEngine",
    "next_run_at",
]
