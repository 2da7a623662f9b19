"""Audit logging service.

Every privileged state change in the governance engine writes one
ActivityLog row through AuditLogger.record().

Design:
- Append-only. Nothing in this package updates or deletes audit rows.
- Each write runs inside a SAVEPOINT. If it fails, only the savepoint is
  rolled back, the failure is logged with the full entry payload (the
  fallback channel) and the caller's business mutation carries on.
- Consecutive failures are counted process-wide; once the configured
  threshold is reached an operator alert is logged at CRITICAL.
- Rows form a SHA-256 hash chain (prev_hash -> entry_hash) over their
  immutable fields, so edits and deletions are detectable via
  verify_chain().
"""

from __future__ import annotations

import hashlib
import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kitagov.config import Settings, get_settings
from kitagov.core.clock import Clock, SystemClock, ensure_utc
from kitagov.models.activity_log import GENESIS_HASH, ActivityLog

log = structlog.get_logger(__name__)

# Serializes chain appends across sessions on PostgreSQL
_CHAIN_LOCK_KEY = 0x4B495441


def canonical_json(obj: Mapping[str, Any] | None) -> str:
    """Deterministic JSON used for both storage and hashing."""
    return json.dumps(obj or {}, sort_keys=True, separators=(",", ":"), default=str)


def compute_entry_hash(entry: ActivityLog) -> str:
    """SHA256 over prev_hash and every immutable column, joined with '|'."""
    data = "|".join(
        [
            entry.prev_hash,
            str(entry.id),
            entry.action,
            entry.entity,
            entry.entity_id or "",
            str(entry.user_id) if entry.user_id else "",
            str(entry.institution_id) if entry.institution_id else "",
            ensure_utc(entry.created_at).isoformat(timespec="microseconds"),
            canonical_json(entry.details),
        ]
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class AuditFailureMonitor:
    """Tracks consecutive audit write failures and escalates them."""

    def __init__(self) -> None:
        self.consecutive_failures = 0
        self.total_failures = 0

    def record_success(self) -> None:
        if self.consecutive_failures:
            log.info(
                "audit.write_recovered",
                after_failures=self.consecutive_failures,
            )
        self.consecutive_failures = 0

    def record_failure(self, threshold: int) -> None:
        self.consecutive_failures += 1
        self.total_failures += 1
        if self.consecutive_failures % threshold == 0:
            log.critical(
                "audit.repeated_failures",
                consecutive_failures=self.consecutive_failures,
                total_failures=self.total_failures,
                threshold=threshold,
            )

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.total_failures = 0


failure_monitor = AuditFailureMonitor()


@dataclass
class ChainVerification:
    valid: bool
    checked: int
    first_broken_id: int | None = None
    reason: str | None = None


class AuditLogger:
    """Append-only, hash-chained audit writer.

    Usage:
        audit = AuditLogger(db, clock=clock)
        await audit.record(
            "MANUAL_CONSENT_SET",
            "Child",
            child.id,
            actor_id=principal.id,
            details={"manual_consent_given": True},
        )

    This does not commit - the calling code owns the transaction boundary.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock | None = None,
        settings: Settings | None = None,
        monitor: AuditFailureMonitor | None = None,
    ) -> None:
        self._db = db
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()
        self._monitor = monitor or failure_monitor

    async def record(
        self,
        action: str,
        entity: str,
        entity_id: uuid.UUID | str | None,
        actor_id: uuid.UUID | None,
        details: Mapping[str, Any] | None = None,
        *,
        institution_id: uuid.UUID | None = None,
    ) -> ActivityLog | None:
        """Append one audit entry. Returns None if the write failed."""
        # Stored exactly as hashed
        payload: dict[str, Any] = json.loads(canonical_json(details))
        entry = ActivityLog(
            action=action,
            entity=entity,
            entity_id=str(entity_id) if entity_id is not None else None,
            user_id=actor_id,
            institution_id=institution_id,
            details=payload,
            created_at=self._clock.now(),
        )
        try:
            async with self._db.begin_nested():
                await self._lock_chain()
                entry.prev_hash = await self._last_hash()
                self._db.add(entry)
                await self._db.flush()
                entry.entry_hash = compute_entry_hash(entry)
                await self._db.flush()
        except SQLAlchemyError as exc:
            log.error(
                "audit.write_failed",
                error=str(exc),
                action=action,
                entity=entity,
                entity_id=entry.entity_id,
                actor_id=str(actor_id) if actor_id else None,
                institution_id=str(institution_id) if institution_id else None,
                details=payload,
            )
            self._monitor.record_failure(self._settings.audit_failure_alert_threshold)
            return None

        self._monitor.record_success()
        return entry

    async def _lock_chain(self) -> None:
        if self._db.get_bind().dialect.name == "postgresql":
            await self._db.execute(
                text("SELECT pg_advisory_xact_lock(:key)"), {"key": _CHAIN_LOCK_KEY}
            )

    async def _last_hash(self) -> str:
        result = await self._db.execute(
            select(ActivityLog.entry_hash)
            .where(ActivityLog.entry_hash.is_not(None))
            .order_by(ActivityLog.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none() or GENESIS_HASH

    async def verify_chain(self) -> ChainVerification:
        """Walk the whole trail in insertion order and check every link."""
        expected_prev = GENESIS_HASH
        checked = 0
        result = await self._db.stream_scalars(
            select(ActivityLog)
            .order_by(ActivityLog.id)
            .execution_options(yield_per=500)
        )
        async for entry in result:
            checked += 1
            if entry.prev_hash != expected_prev:
                return ChainVerification(False, checked, entry.id, "prev_hash mismatch")
            if entry.entry_hash != compute_entry_hash(entry):
                return ChainVerification(False, checked, entry.id, "entry_hash mismatch")
            expected_prev = entry.entry_hash

        return ChainVerification(True, checked)

    async def list_entries(
        self,
        *,
        action: str | None = None,
        entity: str | None = None,
        entity_id: uuid.UUID | str | None = None,
        limit: int = 100,
    ) -> list[ActivityLog]:
        stmt = select(ActivityLog)
        if action is not None:
            stmt = stmt.where(ActivityLog.action == action)
        if entity is not None:
            stmt = stmt.where(ActivityLog.entity == entity)
        if entity_id is not None:
            stmt = stmt.where(ActivityLog.entity_id == str(entity_id))
        stmt = stmt.order_by(ActivityLog.id.desc()).limit(limit)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_gdpr_logs(self, limit: int = 100) -> list[ActivityLog]:
        """Return the newest GDPR_* entries."""
        result = await self._db.execute(
            select(ActivityLog)
            .where(ActivityLog.action.startswith("GDPR_", autoescape=True))
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
