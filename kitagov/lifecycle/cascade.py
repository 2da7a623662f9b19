"""Soft-delete cascade engine.

Marks institutions, groups, users, children and their leaf records as
deleted without removing them, and applies the side effects dependents
need to stay consistent:

- User: SUPER_ADMIN targets are refused outright (the target's own role is
  checked, never the actor's). Personal tasks, authored notes, received and
  sent notifications and sent messages are soft-deleted with the user.
- Child: no further cascade.
- Group: every non-deleted member child is ungrouped (group_id -> NULL) and
  group messages are soft-deleted.
- Institution: only the row itself, unless the caller explicitly confirms
  the bulk cascade. The cascade skips rows that are already deleted, so
  their original deleted_at survives and repeated runs change nothing.

Each cascade is one unit: the whole subgraph is mutated inside a SAVEPOINT
and flushed once, so a failure leaves nothing half-applied. Authorization
is the caller's job; soft_delete_as() bundles the capability check for
callers that hold a Principal.

purge() is the only hard-delete path. It removes a row only when it is
soft-deleted and older than its retention window.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import delete, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kitagov.auth.principal import Principal
from kitagov.config import Settings, get_settings
from kitagov.core.audit import AuditLogger
from kitagov.core.clock import Clock, SystemClock, ensure_utc
from kitagov.core.errors import ForbiddenError, NotFoundError
from kitagov.core.policy import Capability, check_capability
from kitagov.lifecycle.entities import (
    ENTITY_LABELS,
    ENTITY_MODELS,
    EntityType,
    not_found_message,
)
from kitagov.lifecycle.retention import RetentionPolicy
from kitagov.models import (
    CheckInLog,
    Child,
    ClosedDay,
    Group,
    Message,
    Note,
    NotificationLog,
    PersonalTask,
    User,
    UserRole,
)
from kitagov.telemetry import bind_actor_context

log = structlog.get_logger(__name__)

SUPER_ADMIN_PROTECTED = "Super-Admin-Konten können nicht gelöscht werden"
ACTIVE_ROW_PROTECTED = "Nur gelöschte Datensätze können endgültig entfernt werden"

_DEFAULT_REASONS: dict[EntityType, str] = {
    EntityType.USER: "User requested deletion",
    EntityType.CHILD: "Child left institution",
    EntityType.GROUP: "Group deleted",
    EntityType.INSTITUTION: "Institution closed",
}


@dataclass
class EntityState:
    """Outcome of a soft-delete: the entity and everything it touched."""

    entity_type: EntityType
    entity_id: uuid.UUID
    deleted_at: datetime
    reason: str
    cascaded: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": str(self.entity_type),
            "entity_id": str(self.entity_id),
            "deleted_at": self.deleted_at.isoformat(),
            "reason": self.reason,
            "cascaded": dict(self.cascaded),
        }


def audit_action(entity_type: EntityType) -> str:
    if entity_type == EntityType.USER:
        return "GDPR_DELETE_USER"
    return f"GDPR_{entity_type}_SOFT_DELETE"


class SoftDeleteCascadeEngine:
    """Soft-delete and purge primitives for every lifecycle entity.

    Usage:
        engine = SoftDeleteCascadeEngine(db, clock=clock)
        state = await engine.soft_delete(EntityType.GROUP, group_id, actor_id, "Gruppe aufgelöst")
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock | None = None,
        settings: Settings | None = None,
        audit: AuditLogger | None = None,
        policy: RetentionPolicy | None = None,
    ) -> None:
        self._db = db
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()
        self._audit = audit or AuditLogger(db, clock=self._clock, settings=self._settings)
        self._policy = policy or RetentionPolicy.from_settings(self._settings)

    # ------------------------------------------------------------------ #
    # Soft delete
    # ------------------------------------------------------------------ #

    async def soft_delete(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        actor_id: uuid.UUID | None,
        reason: str | None = None,
        *,
        confirm_cascade: bool = False,
        details: dict[str, Any] | None = None,
    ) -> EntityState:
        """Soft-delete one entity and apply its cascade atomically.

        Args:
            entity_type: What kind of row entity_id names.
            entity_id: Target row.
            actor_id: Who is deleting (None for system jobs).
            reason: Free-text reason stored in the audit entry.
            confirm_cascade: Institutions only - also soft-delete the
                institution's groups, children, users and records.
            details: Extra audit context, e.g. the GDPR request id.

        Raises:
            NotFoundError: target missing or already soft-deleted.
            ForbiddenError: target is a SUPER_ADMIN user.
        """
        entity_type = EntityType(entity_type)
        reason = reason or _DEFAULT_REASONS.get(entity_type, "Deleted")
        row = await self._load_active(entity_type, entity_id)

        if entity_type == EntityType.USER and row.role == UserRole.SUPER_ADMIN:
            log.warning(
                "cascade.super_admin_protected",
                user_id=str(entity_id),
                actor_id=str(actor_id) if actor_id else None,
            )
            raise ForbiddenError(SUPER_ADMIN_PROTECTED, user_id=entity_id)

        now = self._clock.now()
        async with self._db.begin_nested():
            cascaded = await self._cascade(entity_type, row, now, confirm_cascade)
            row.deleted_at = now
            await self._db.flush()

        institution_id = (
            row.id if entity_type == EntityType.INSTITUTION else getattr(row, "institution_id", None)
        )
        await self._audit.record(
            audit_action(entity_type),
            ENTITY_LABELS[entity_type],
            row.id,
            actor_id,
            {
                "reason": reason,
                "message": f"Soft delete requested: {reason}",
                "cascaded": cascaded,
                **(details or {}),
            },
            institution_id=institution_id,
        )
        log.info(
            "cascade.soft_deleted",
            entity_type=entity_type,
            entity_id=str(row.id),
            actor_id=str(actor_id) if actor_id else None,
            cascaded=cascaded,
        )
        return EntityState(
            entity_type=entity_type,
            entity_id=row.id,
            deleted_at=now,
            reason=reason,
            cascaded=cascaded,
        )

    async def soft_delete_as(
        self,
        principal: Principal,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        reason: str | None = None,
        *,
        confirm_cascade: bool = False,
    ) -> EntityState:
        """soft_delete() preceded by the capability and institution check.

        ADMIN may delete within their own institution; institutions
        themselves can only be deleted by SUPER_ADMIN.
        """
        bind_actor_context(principal)
        entity_type = EntityType(entity_type)
        row = await self._load_active(entity_type, entity_id)
        capability = (
            Capability.INSTITUTION_DELETE
            if entity_type == EntityType.INSTITUTION
            else Capability.ENTITY_SOFT_DELETE
        )
        check_capability(
            principal,
            capability,
            institution_id=await self._institution_of(entity_type, row),
        )
        return await self.soft_delete(
            entity_type,
            entity_id,
            principal.id,
            reason,
            confirm_cascade=confirm_cascade,
        )

    async def _cascade(
        self, entity_type: EntityType, row: Any, now: datetime, confirm_cascade: bool
    ) -> dict[str, int]:
        if entity_type == EntityType.USER:
            return await self._cascade_user(row.id, now)
        if entity_type == EntityType.GROUP:
            return await self._cascade_group(row.id, now)
        if entity_type == EntityType.INSTITUTION and confirm_cascade:
            return await self._cascade_institution(row.id, now)
        return {}

    async def _cascade_user(self, user_id: uuid.UUID, now: datetime) -> dict[str, int]:
        return {
            "personal_tasks": await self._mark_deleted(
                PersonalTask, now, PersonalTask.user_id == user_id
            ),
            "notes": await self._mark_deleted(Note, now, Note.educator_id == user_id),
            "notifications": await self._mark_deleted(
                NotificationLog,
                now,
                or_(NotificationLog.user_id == user_id, NotificationLog.sender_id == user_id),
            ),
            "messages": await self._mark_deleted(Message, now, Message.sender_id == user_id),
        }

    async def _cascade_group(self, group_id: uuid.UUID, now: datetime) -> dict[str, int]:
        ungrouped = await self._db.execute(
            update(Child)
            .where(Child.group_id == group_id, Child.deleted_at.is_(None))
            .values(group_id=None, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return {
            "children_ungrouped": ungrouped.rowcount or 0,
            "messages": await self._mark_deleted(Message, now, Message.group_id == group_id),
        }

    async def _cascade_institution(
        self, institution_id: uuid.UUID, now: datetime
    ) -> dict[str, int]:
        return {
            "groups": await self._mark_deleted(Group, now, Group.institution_id == institution_id),
            "children": await self._mark_deleted(
                Child, now, Child.institution_id == institution_id
            ),
            "users": await self._mark_deleted(
                User,
                now,
                User.institution_id == institution_id,
                User.role != UserRole.SUPER_ADMIN,
            ),
            "closed_days": await self._mark_deleted(
                ClosedDay, now, ClosedDay.institution_id == institution_id
            ),
            "messages": await self._mark_deleted(
                Message, now, Message.institution_id == institution_id
            ),
            "notifications": await self._mark_deleted(
                NotificationLog, now, NotificationLog.institution_id == institution_id
            ),
            "check_in_logs": await self._mark_deleted(
                CheckInLog, now, CheckInLog.institution_id == institution_id
            ),
        }

    async def _mark_deleted(self, model: Any, now: datetime, *criteria: Any) -> int:
        """Bulk soft-delete rows matching criteria that are not deleted yet."""
        result = await self._db.execute(
            update(model)
            .where(*criteria, model.deleted_at.is_(None))
            .values(deleted_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------ #
    # Purge
    # ------------------------------------------------------------------ #

    async def purge(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        *,
        actor_id: uuid.UUID | None = None,
    ) -> bool:
        """Physically remove a soft-deleted row whose retention has elapsed.

        Returns True if the row was removed, False if it is gone already,
        not yet due, or still has dependents that keep it alive.

        Raises:
            ForbiddenError: the row is not soft-deleted.
        """
        entity_type = EntityType(entity_type)
        model = ENTITY_MODELS[entity_type]
        now = self._clock.now()
        cutoff = self._policy.cutoff(entity_type, now)

        result = await self._db.execute(select(model).where(model.id == entity_id))
        row = result.scalar_one_or_none()
        if row is None:
            return False
        if row.deleted_at is None:
            log.error(
                "cascade.purge_refused_active",
                entity_type=entity_type,
                entity_id=str(entity_id),
            )
            raise ForbiddenError(ACTIVE_ROW_PROTECTED, entity_id=entity_id)
        if not self._policy.is_expired(entity_type, row.deleted_at, now):
            log.debug(
                "cascade.purge_not_due",
                entity_type=entity_type,
                entity_id=str(entity_id),
                purge_due_at=self._policy.purge_due_at(entity_type, row.deleted_at).isoformat(),
            )
            return False
        if entity_type == EntityType.USER and row.role == UserRole.SUPER_ADMIN:
            return False
        if entity_type == EntityType.INSTITUTION and await self._institution_has_members(
            row.id
        ):
            log.info("cascade.purge_deferred", entity_type=entity_type, entity_id=str(row.id))
            return False

        deleted_at = ensure_utc(row.deleted_at)
        # Conditions repeated in SQL so an overlapping run deletes nothing twice
        purged = await self._db.execute(
            delete(model)
            .where(
                model.id == entity_id,
                model.deleted_at.is_not(None),
                model.deleted_at < cutoff,
            )
            .execution_options(synchronize_session="fetch")
        )
        if not purged.rowcount:
            return False

        await self._audit.record(
            f"GDPR_{entity_type}_PURGED",
            ENTITY_LABELS[entity_type],
            entity_id,
            actor_id,
            {
                "deleted_at": deleted_at.isoformat(),
                "retention_days": self._policy.as_dict()[str(entity_type)],
            },
        )
        log.info("cascade.purged", entity_type=entity_type, entity_id=str(entity_id))
        return True

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    async def _load_active(self, entity_type: EntityType, entity_id: uuid.UUID) -> Any:
        model = ENTITY_MODELS[entity_type]
        result = await self._db.execute(
            select(model).where(model.id == entity_id, model.deleted_at.is_(None))
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(not_found_message(entity_type), entity_id=entity_id)
        return row

    async def _institution_of(self, entity_type: EntityType, row: Any) -> uuid.UUID | None:
        if entity_type == EntityType.INSTITUTION:
            return row.id
        if entity_type == EntityType.PERSONAL_TASK:
            owner = await self._db.execute(
                select(User.institution_id).where(User.id == row.user_id)
            )
            return owner.scalar_one_or_none()
        if entity_type == EntityType.NOTE:
            child = await self._db.execute(
                select(Child.institution_id).where(Child.id == row.child_id)
            )
            return child.scalar_one_or_none()
        return getattr(row, "institution_id", None)

    async def _institution_has_members(self, institution_id: uuid.UUID) -> bool:
        result = await self._db.execute(
            select(
                exists().where(User.institution_id == institution_id)
                | exists().where(Group.institution_id == institution_id)
                | exists().where(Child.institution_id == institution_id)
            )
        )
        return bool(result.scalar())
