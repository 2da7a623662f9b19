"""Personal data export (GDPR Art. 15 / Art. 20).

Collects everything the system holds about one data subject into an
ExportBundle. Soft-deleted rows are excluded from every collection, not
only from the top-level user lookup.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kitagov.auth.principal import Principal
from kitagov.core.audit import AuditLogger
from kitagov.core.clock import Clock, SystemClock
from kitagov.core.errors import NotFoundError
from kitagov.core.policy import Capability, check_capability
from kitagov.models import (
    ActivityLog,
    Child,
    Message,
    Note,
    NotificationLog,
    PersonalTask,
    User,
    child_parents,
)
from kitagov.telemetry import bind_actor_context

log = structlog.get_logger(__name__)

USER_NOT_FOUND = "Benutzer nicht gefunden"


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def _row(obj: Any, columns: tuple[str, ...]) -> dict[str, Any]:
    return {name: _jsonable(getattr(obj, name)) for name in columns}


_USER_FIELDS = (
    "id", "email", "name", "role", "institution_id",
    "consent_given", "consent_date", "created_at",
)
_CHILD_FIELDS = (
    "id", "name", "birth_date", "institution_id", "group_id",
    "consent_given", "consent_date", "manual_consent_given", "manual_consent_date",
)
_MESSAGE_FIELDS = ("id", "content", "institution_id", "group_id", "child_id", "created_at")
_NOTE_FIELDS = ("id", "child_id", "content", "created_at")
_NOTIFICATION_FIELDS = ("id", "kind", "title", "body", "read", "created_at")
_ACTIVITY_FIELDS = ("id", "action", "entity", "entity_id", "details", "created_at")
_TASK_FIELDS = ("id", "title", "done", "created_at")


@dataclass
class ExportBundle:
    user: dict[str, Any]
    exported_at: datetime
    children: list[dict[str, Any]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    notes: list[dict[str, Any]] = field(default_factory=list)
    notifications: list[dict[str, Any]] = field(default_factory=list)
    activity_logs: list[dict[str, Any]] = field(default_factory=list)
    personal_tasks: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "exported_at": self.exported_at.isoformat(),
            "user": self.user,
            "children": self.children,
            "messages": self.messages,
            "notes": self.notes,
            "notifications": self.notifications,
            "activity_logs": self.activity_logs,
            "personal_tasks": self.personal_tasks,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2, ensure_ascii=False)


class DataExportAggregator:
    """Build a right-of-access export for one user.

    Usage:
        bundle = await DataExportAggregator(db).export_subject(user_id, actor_id=admin.id)
        payload = bundle.to_json()
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self._db = db
        self._clock = clock or SystemClock()
        self._audit = audit or AuditLogger(db, clock=self._clock)

    async def export_subject(
        self, user_id: uuid.UUID, actor_id: uuid.UUID | None = None
    ) -> ExportBundle:
        """Export all non-deleted data linked to user_id.

        Raises:
            NotFoundError: user missing or soft-deleted.
        """
        user = await self._load_user(user_id)

        children = await self._scalars(
            select(Child)
            .join(child_parents, child_parents.c.child_id == Child.id)
            .where(child_parents.c.user_id == user.id, Child.deleted_at.is_(None))
            .order_by(Child.name)
        )
        messages = await self._scalars(
            select(Message)
            .where(Message.sender_id == user.id, Message.deleted_at.is_(None))
            .order_by(Message.created_at)
        )
        notes = await self._scalars(
            select(Note)
            .where(Note.educator_id == user.id, Note.deleted_at.is_(None))
            .order_by(Note.created_at)
        )
        notifications = await self._scalars(
            select(NotificationLog)
            .where(NotificationLog.user_id == user.id, NotificationLog.deleted_at.is_(None))
            .order_by(NotificationLog.created_at)
        )
        # Audit entries are never soft-deleted
        activity_logs = await self._scalars(
            select(ActivityLog).where(ActivityLog.user_id == user.id).order_by(ActivityLog.id)
        )
        tasks = await self._scalars(
            select(PersonalTask)
            .where(PersonalTask.user_id == user.id, PersonalTask.deleted_at.is_(None))
            .order_by(PersonalTask.created_at)
        )

        bundle = ExportBundle(
            user=_row(user, _USER_FIELDS),
            exported_at=self._clock.now(),
            children=[_row(c, _CHILD_FIELDS) for c in children],
            messages=[_row(m, _MESSAGE_FIELDS) for m in messages],
            notes=[_row(n, _NOTE_FIELDS) for n in notes],
            notifications=[_row(n, _NOTIFICATION_FIELDS) for n in notifications],
            activity_logs=[_row(a, _ACTIVITY_FIELDS) for a in activity_logs],
            personal_tasks=[_row(t, _TASK_FIELDS) for t in tasks],
        )

        await self._audit.record(
            "EXPORT_PERSONAL_DATA",
            "User",
            user.id,
            actor_id,
            {
                "message": f"Datenexport für Benutzer {user.email}",
                "counts": {
                    "children": len(bundle.children),
                    "messages": len(bundle.messages),
                    "notes": len(bundle.notes),
                    "notifications": len(bundle.notifications),
                    "activity_logs": len(bundle.activity_logs),
                    "personal_tasks": len(bundle.personal_tasks),
                },
            },
            institution_id=user.institution_id,
        )
        log.info(
            "gdpr.export_created",
            user_id=str(user.id),
            actor_id=str(actor_id) if actor_id else None,
        )
        return bundle

    async def export_subject_as(self, principal: Principal, user_id: uuid.UUID) -> ExportBundle:
        """Export on behalf of principal.

        Users may always export their own data; anyone else needs
        DATA_EXPORT within the subject's institution.
        """
        bind_actor_context(principal)
        if principal.id != user_id:
            user = await self._load_user(user_id)
            check_capability(
                principal,
                Capability.DATA_EXPORT,
                institution_id=user.institution_id,
            )
        return await self.export_subject(user_id, actor_id=principal.id)

    async def _load_user(self, user_id: uuid.UUID) -> User:
        result = await self._db.execute(
            select(User).where(User.id == user_id, User.deleted_at.is_(None))
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError(USER_NOT_FOUND, user_id=user_id)
        return user

    async def _scalars(self, stmt: Any) -> list[Any]:
        result = await self._db.execute(stmt)
        return list(result.scalars().all())
