"""GDPR erasure request workflow (Art. 17, right to erasure).

State machine:
    PENDING --approve--> APPROVED   (subject user is soft-deleted)
    PENDING --reject---> REJECTED   (rejection reason appended)

Both terminal states are final. At most one PENDING request exists per
user; the partial unique index on gdpr_requests enforces it on insert.

Transitions are conditional updates (``WHERE status = 'PENDING'``) inside
a SAVEPOINT together with their side effects, so a concurrent review or a
failing soft-delete leaves the request exactly as it was.

All operations flush but never commit; the caller owns the transaction.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kitagov.auth.principal import Principal
from kitagov.config import Settings, get_settings
from kitagov.core.audit import AuditLogger
from kitagov.core.clock import Clock, SystemClock, ensure_utc
from kitagov.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from kitagov.core.policy import Capability, check_capability
from kitagov.lifecycle.cascade import SUPER_ADMIN_PROTECTED, SoftDeleteCascadeEngine
from kitagov.lifecycle.entities import EntityType
from kitagov.models import GDPRRequestRecord, GDPRRequestStatus, User, UserRole
from kitagov.telemetry import bind_actor_context

log = structlog.get_logger(__name__)

DELETE_REASON_REQUIRED = "Grund für die Löschung ist erforderlich"
USER_NOT_FOUND = "Benutzer nicht gefunden"
PENDING_EXISTS = "Es existiert bereits eine ausstehende Löschanfrage für diesen Benutzer"
REQUEST_NOT_FOUND = "GDPR Anfrage nicht gefunden"
APPROVE_NOT_PENDING = "Anfrage kann nur genehmigt werden, wenn sie ausstehend ist"
REJECT_NOT_PENDING = "Anfrage kann nur abgelehnt werden, wenn sie ausstehend ist"
REJECT_REASON_REQUIRED = "Grund für die Ablehnung ist erforderlich"
INVALID_STATUS = "Ungültiger Status"


@dataclass
class GDPRRequest:
    """A GDPR erasure request as seen by callers."""

    id: uuid.UUID
    user_id: uuid.UUID
    reason: str
    status: GDPRRequestStatus
    requested_by: uuid.UUID | None
    reviewed_by: uuid.UUID | None
    reviewed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "reason": self.reason,
            "status": str(self.status),
            "requested_by": str(self.requested_by) if self.requested_by else None,
            "reviewed_by": str(self.reviewed_by) if self.reviewed_by else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class RequestPage:
    items: list[GDPRRequest]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "pagination": {
                "total": self.total,
                "page": self.page,
                "limit": self.limit,
                "pages": self.pages,
            },
        }


class GDPRRequestWorkflow:
    """Create, review and list erasure requests.

    Usage:
        workflow = GDPRRequestWorkflow(db, clock=clock)
        request = await workflow.create(user_id, "Elternteil hat Kita verlassen", requested_by=admin.id)
        await workflow.approve(request.id, reviewer_id=super_admin.id)
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock | None = None,
        settings: Settings | None = None,
        audit: AuditLogger | None = None,
        cascade: SoftDeleteCascadeEngine | None = None,
    ) -> None:
        self._db = db
        self._clock = clock or SystemClock()
        self._settings = settings or get_settings()
        self._audit = audit or AuditLogger(db, clock=self._clock, settings=self._settings)
        self._cascade = cascade or SoftDeleteCascadeEngine(
            db, clock=self._clock, settings=self._settings, audit=self._audit
        )

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    async def create(
        self,
        user_id: uuid.UUID,
        reason: str,
        requested_by: uuid.UUID | None = None,
    ) -> GDPRRequest:
        """File a new PENDING erasure request for user_id.

        Raises:
            ValidationError: reason is empty.
            NotFoundError: user missing or already soft-deleted.
            ForbiddenError: the subject is a SUPER_ADMIN.
            ConflictError: a PENDING request for this user already exists.
        """
        if not reason or not reason.strip():
            raise ValidationError(DELETE_REASON_REQUIRED)

        result = await self._db.execute(
            select(User).where(User.id == user_id, User.deleted_at.is_(None))
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError(USER_NOT_FOUND, user_id=user_id)
        if user.role == UserRole.SUPER_ADMIN:
            raise ForbiddenError(SUPER_ADMIN_PROTECTED, user_id=user_id)

        now = self._clock.now()
        record = GDPRRequestRecord(
            id=uuid.uuid4(),
            user_id=user.id,
            reason=reason.strip(),
            status=GDPRRequestStatus.PENDING,
            requested_by=requested_by,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._db.begin_nested():
                self._db.add(record)
                await self._db.flush()
        except IntegrityError as exc:
            log.info("gdpr.request_conflict", user_id=str(user_id))
            raise ConflictError(PENDING_EXISTS, user_id=user_id) from exc

        await self._audit.record(
            "GDPR_DELETE_REQUEST_CREATED",
            "GDPRRequest",
            record.id,
            requested_by,
            {
                "subject_user_id": str(user.id),
                "message": f"GDPR Löschanfrage erstellt für Benutzer: {user.email}",
            },
            institution_id=user.institution_id,
        )
        log.info(
            "gdpr.request_created",
            request_id=str(record.id),
            user_id=str(user.id),
            requested_by=str(requested_by) if requested_by else None,
        )
        return self._record_to_dataclass(record)

    async def approve(self, request_id: uuid.UUID, reviewer_id: uuid.UUID) -> GDPRRequest:
        """Approve a PENDING request and soft-delete its subject.

        A subject that is already soft-deleted (directly or through an
        institution cascade) is not deleted again; the request is still
        approved so it does not stay PENDING forever.

        Raises:
            NotFoundError: request unknown, or the subject row no longer exists.
            ConflictError: request is not PENDING.
            ForbiddenError: the subject is a SUPER_ADMIN.
        """
        record = await self._load(request_id)
        if record.status != GDPRRequestStatus.PENDING:
            raise ConflictError(APPROVE_NOT_PENDING, request_id=request_id, status=record.status)

        subject = await self._db.get(User, record.user_id, populate_existing=True)
        if subject is None:
            raise NotFoundError(USER_NOT_FOUND, user_id=record.user_id)
        already_deleted = subject.deleted_at is not None

        now = self._clock.now()
        cascaded: dict[str, int] = {}
        async with self._db.begin_nested():
            await self._transition(
                record.id,
                APPROVE_NOT_PENDING,
                status=GDPRRequestStatus.APPROVED,
                reviewed_by=reviewer_id,
                reviewed_at=now,
                updated_at=now,
            )
            if not already_deleted:
                state = await self._cascade.soft_delete(
                    EntityType.USER,
                    record.user_id,
                    reviewer_id,
                    record.reason,
                    details={"gdpr_request_id": str(record.id)},
                )
                cascaded = state.cascaded

        details: dict[str, Any] = {
            "subject_user_id": str(record.user_id),
            "cascaded": cascaded,
            "message": "GDPR Löschanfrage genehmigt",
        }
        if already_deleted:
            details["subject_already_deleted"] = True
        await self._audit.record(
            "GDPR_DELETE_REQUEST_APPROVED", "GDPRRequest", record.id, reviewer_id, details
        )
        log.info(
            "gdpr.request_approved",
            request_id=str(record.id),
            user_id=str(record.user_id),
            reviewer_id=str(reviewer_id),
            subject_already_deleted=already_deleted,
        )
        return self._record_to_dataclass(record)

    async def reject(
        self, request_id: uuid.UUID, reviewer_id: uuid.UUID, reason: str
    ) -> GDPRRequest:
        """Reject a PENDING request, keeping the original reason.

        The stored reason becomes ``"<original> | ABGELEHNT: <reason>"``.

        Raises:
            ValidationError: reason is empty.
            NotFoundError: request unknown.
            ConflictError: request is not PENDING.
        """
        if not reason or not reason.strip():
            raise ValidationError(REJECT_REASON_REQUIRED)

        record = await self._load(request_id)
        if record.status != GDPRRequestStatus.PENDING:
            raise ConflictError(REJECT_NOT_PENDING, request_id=request_id, status=record.status)

        now = self._clock.now()
        async with self._db.begin_nested():
            await self._transition(
                record.id,
                REJECT_NOT_PENDING,
                status=GDPRRequestStatus.REJECTED,
                reviewed_by=reviewer_id,
                reviewed_at=now,
                updated_at=now,
                reason=f"{record.reason} | ABGELEHNT: {reason.strip()}",
            )

        await self._audit.record(
            "GDPR_DELETE_REQUEST_REJECTED",
            "GDPRRequest",
            record.id,
            reviewer_id,
            {
                "subject_user_id": str(record.user_id),
                "rejection_reason": reason.strip(),
                "message": f"GDPR Löschanfrage abgelehnt: {reason.strip()}",
            },
        )
        log.info(
            "gdpr.request_rejected",
            request_id=str(record.id),
            reviewer_id=str(reviewer_id),
        )
        return self._record_to_dataclass(record)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    async def get(self, request_id: uuid.UUID) -> GDPRRequest:
        return self._record_to_dataclass(await self._load(request_id))

    async def list(
        self,
        status: GDPRRequestStatus | str | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> RequestPage:
        """List requests newest first, optionally filtered by status."""
        page = max(page, 1)
        limit = min(
            max(limit or self._settings.gdpr_default_page_size, 1),
            self._settings.gdpr_max_page_size,
        )

        stmt = select(GDPRRequestRecord)
        count_stmt = select(func.count()).select_from(GDPRRequestRecord)
        if status is not None:
            try:
                status = GDPRRequestStatus(status)
            except ValueError as exc:
                raise ValidationError(INVALID_STATUS, status=status) from exc
            stmt = stmt.where(GDPRRequestRecord.status == status)
            count_stmt = count_stmt.where(GDPRRequestRecord.status == status)

        total = (await self._db.execute(count_stmt)).scalar_one()
        result = await self._db.execute(
            stmt.order_by(GDPRRequestRecord.created_at.desc(), GDPRRequestRecord.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = [self._record_to_dataclass(r) for r in result.scalars().all()]
        return RequestPage(items=items, total=total, page=page, limit=limit)

    # ------------------------------------------------------------------ #
    # Principal-checked entry points
    # ------------------------------------------------------------------ #

    async def create_as(self, principal: Principal, user_id: uuid.UUID, reason: str) -> GDPRRequest:
        bind_actor_context(principal)
        check_capability(principal, Capability.GDPR_REQUEST_MANAGE)
        return await self.create(user_id, reason, requested_by=principal.id)

    async def approve_as(self, principal: Principal, request_id: uuid.UUID) -> GDPRRequest:
        bind_actor_context(principal)
        check_capability(principal, Capability.GDPR_REQUEST_MANAGE)
        return await self.approve(request_id, principal.id)

    async def reject_as(
        self, principal: Principal, request_id: uuid.UUID, reason: str
    ) -> GDPRRequest:
        bind_actor_context(principal)
        check_capability(principal, Capability.GDPR_REQUEST_MANAGE)
        return await self.reject(request_id, principal.id, reason)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    async def _load(self, request_id: uuid.UUID) -> GDPRRequestRecord:
        result = await self._db.execute(
            select(GDPRRequestRecord)
            .where(GDPRRequestRecord.id == request_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(REQUEST_NOT_FOUND, request_id=request_id)
        return record

    async def _transition(
        self, request_id: uuid.UUID, not_pending_message: str, **values: Any
    ) -> None:
        """Move a request out of PENDING; fails if someone else got there first."""
        result = await self._db.execute(
            update(GDPRRequestRecord)
            .where(
                GDPRRequestRecord.id == request_id,
                GDPRRequestRecord.status == GDPRRequestStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise ConflictError(not_pending_message, request_id=request_id)

    @staticmethod
    def _record_to_dataclass(record: GDPRRequestRecord) -> GDPRRequest:
        return GDPRRequest(
            id=record.id,
            user_id=record.user_id,
            reason=record.reason,
            status=GDPRRequestStatus(record.status),
            requested_by=record.requested_by,
            reviewed_by=record.reviewed_by,
            reviewed_at=ensure_utc(record.reviewed_at) if record.reviewed_at else None,
            created_at=ensure_utc(record.created_at),
            updated_at=ensure_utc(record.updated_at),
        )
