"""Retention scheduler - periodic purge of expired soft-deleted data.

Architecture:
- RetentionScheduler.run_cleanup(): one sweep over every entity type with a
  retention window, purging each expired row through
  SoftDeleteCascadeEngine.purge()
- RetentionScheduler.list_pending_purges(): what is soft-deleted and when
  it becomes due
- RetentionJobRunner: background asyncio task running the sweep once a day
  at the configured local hour (02:00 Europe/Berlin by default)

Design decisions:
- Every purge is conditioned on deleted_at age inside the DELETE itself, so
  overlapping runs (a scheduled sweep plus a manual trigger, or several
  service instances) simply find nothing left to do
- A sweep with nothing to purge is a normal outcome, not an error
- GDPR_CLEANUP_COMPLETED is only audited when something was purged
"""

from __future__ import annotations

import asyncio
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kitagov.auth.principal import Principal
from kitagov.config import Settings, get_settings
from kitagov.core.audit import AuditLogger
from kitagov.core.clock import Clock, SystemClock, ensure_utc
from kitagov.core.policy import Capability, check_capability
from kitagov.database import session_scope
from kitagov.lifecycle.cascade import SoftDeleteCascadeEngine
from kitagov.lifecycle.entities import ENTITY_MODELS, PURGE_ORDER, EntityType
from kitagov.lifecycle.retention import RetentionPolicy
from kitagov.models import User, UserRole
from kitagov.telemetry import bind_actor_context

log = structlog.get_logger(__name__)


@dataclass
class CleanupResult:
    purged_counts: dict[str, int]
    started_at: datetime
    duration_ms: int = 0

    @property
    def total(self) -> int:
        return sum(self.purged_counts.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "purged_counts": dict(self.purged_counts),
            "total": self.total,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
        }


@dataclass
class PendingPurge:
    entity_type: EntityType
    entity_id: uuid.UUID
    deleted_at: datetime
    purge_due_at: datetime
    days_until_purge: int
    institution_id: uuid.UUID | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": str(self.entity_type),
            "entity_id": str(self.entity_id),
            "deleted_at": self.deleted_at.isoformat(),
            "purge_due_at": self.purge_due_at.isoformat(),
            "days_until_purge": self.days_until_purge,
            "institution_id": str(self.institution_id) if self.institution_id else None,
        }


def next_run_at(now: datetime, *, hour: int, timezone: str) -> datetime:
    """Next occurrence of ``hour``:00 local time strictly after ``now`` (UTC)."""
    tz = ZoneInfo(timezone)
    local_now = ensure_utc(now).astimezone(tz)
    candidate = local_now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= local_now:
        # Wall-clock arithmetic, so DST changes keep the local hour
        candidate = (local_now + timedelta(days=1)).replace(
            hour=hour, minute=0, second=0, microsecond=0
        )
    return ensure_utc(candidate)


class RetentionScheduler:
    """Runs retention sweeps against one session.

    Usage:
        async with session_scope() as db:
            result = await RetentionScheduler(db).run_cleanup()
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock | None = None,
        settings: Settings | None = None,
        engine: SoftDeleteCascadeEngine | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self._db = db
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()
        self._policy = RetentionPolicy.from_settings(self._settings)
        self._audit = audit or AuditLogger(db, clock=self._clock, settings=self._settings)
        self._engine = engine or SoftDeleteCascadeEngine(
            db,
            clock=self._clock,
            settings=self._settings,
            audit=self._audit,
            policy=self._policy,
        )

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    async def run_cleanup(self, *, actor_id: uuid.UUID | None = None) -> CleanupResult:
        """Purge every soft-deleted row whose retention window has elapsed."""
        started = time.perf_counter()
        now = self._clock.now()
        counts: dict[str, int] = {}

        log.info("retention.cleanup_started", started_at=now.isoformat())

        for entity_type in PURGE_ORDER:
            cutoff = self._policy.cutoff(entity_type, now)
            if cutoff is None:
                continue
            model = ENTITY_MODELS[entity_type]
            stmt = select(model.id).where(
                model.deleted_at.is_not(None), model.deleted_at < cutoff
            )
            if entity_type == EntityType.USER:
                stmt = stmt.where(User.role != UserRole.SUPER_ADMIN)
            ids = (await self._db.execute(stmt)).scalars().all()

            purged = 0
            for entity_id in ids:
                if await self._engine.purge(entity_type, entity_id, actor_id=actor_id):
                    purged += 1
            counts[str(entity_type)] = purged

        result = CleanupResult(purged_counts=counts, started_at=now)
        result.duration_ms = int((time.perf_counter() - started) * 1000)

        if result.total > 0:
            await self._audit.record(
                "GDPR_CLEANUP_COMPLETED",
                "System",
                "cleanup",
                actor_id,
                {
                    "message": f"Permanently deleted {result.total} expired records",
                    "purged_counts": counts,
                },
            )

        log.info(
            "retention.cleanup_completed",
            total=result.total,
            purged_counts=counts,
            duration_ms=result.duration_ms,
        )
        return result

    async def run_cleanup_as(self, principal: Principal) -> CleanupResult:
        """On-demand sweep triggered by a privileged actor."""
        bind_actor_context(principal)
        check_capability(principal, Capability.RETENTION_RUN)
        return await self.run_cleanup(actor_id=principal.id)

    async def list_pending_purges(self) -> list[PendingPurge]:
        """Every soft-deleted row with its purge date, soonest first."""
        now = self._clock.now()
        pending: list[PendingPurge] = []

        for entity_type in PURGE_ORDER:
            model = ENTITY_MODELS[entity_type]
            stmt = select(model).where(model.deleted_at.is_not(None))
            if entity_type == EntityType.USER:
                stmt = stmt.where(User.role != UserRole.SUPER_ADMIN)
            rows = (await self._db.execute(stmt)).scalars().all()

            for row in rows:
                deleted_at = ensure_utc(row.deleted_at)
                due = self._policy.purge_due_at(entity_type, deleted_at)
                pending.append(
                    PendingPurge(
                        entity_type=entity_type,
                        entity_id=row.id,
                        deleted_at=deleted_at,
                        purge_due_at=due,
                        days_until_purge=math.ceil((due - now) / timedelta(days=1)),
                        institution_id=(
                            row.id
                            if entity_type == EntityType.INSTITUTION
                            else getattr(row, "institution_id", None)
                        ),
                    )
                )

        pending.sort(key=lambda p: p.purge_due_at)
        return pending

    def next_run_at(self, now: datetime | None = None) -> datetime:
        return next_run_at(
            now or self._clock.now(),
            hour=self._settings.retention_cleanup_hour,
            timezone=self._settings.retention_timezone,
        )


class RetentionJobRunner:
    """Background task that runs the retention sweep once a day.

    Each run gets its own session scope, so a failed sweep rolls back on
    its own and the loop carries on to the next day.

    Usage:
        runner = RetentionJobRunner(get_session_factory())
        runner.start()
        ...
        await runner.stop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()
        self._task: asyncio.Task[None] | None = None
        self.last_result: CleanupResult | None = None

    def start(self) -> None:
        if not self._settings.retention_scheduler_enabled:
            log.info("retention.scheduler_disabled")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_forever(), name="retention-scheduler")
            log.info(
                "retention.scheduler_started",
                hour=self._settings.retention_cleanup_hour,
                timezone=self._settings.retention_timezone,
            )

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def run_once(self) -> CleanupResult:
        async with session_scope(self._session_factory) as db:
            scheduler = RetentionScheduler(db, clock=self._clock, settings=self._settings)
            self.last_result = await scheduler.run_cleanup()
        return self.last_result

    async def _sleep_until_next_run(self) -> None:
        now = self._clock.now()
        target = next_run_at(
            now,
            hour=self._settings.retention_cleanup_hour,
            timezone=self._settings.retention_timezone,
        )
        log.debug("retention.next_run", at=target.isoformat())
        await asyncio.sleep(max((target - now).total_seconds(), 0))

    async def _run_forever(self) -> None:
        while True:
            try:
                await self._sleep_until_next_run()
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.error("retention.scheduled_run_failed", error=str(exc), exc_info=True)
