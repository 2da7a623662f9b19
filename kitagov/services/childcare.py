"""Consent-gated childcare operations.

Check-in/out, educator notes and media uploads all touch a child's
personal data, so each one passes the ConsentGate before writing and
records its own audit entry afterwards.
"""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from kitagov.auth.principal import Principal
from kitagov.consent.evaluator import load_active_child
from kitagov.consent.gate import ConsentGate, SensitiveOperation
from kitagov.core.audit import AuditLogger
from kitagov.core.clock import Clock, SystemClock
from kitagov.core.errors import ValidationError
from kitagov.models import CheckInLog, CheckInType, Child, ChildMedia, Note

log = structlog.get_logger(__name__)

NOTE_CONTENT_REQUIRED = "Notiz darf nicht leer sein"
CHECKIN_METHODS = frozenset({"MANUAL", "QR"})


class ChildcareService:
    """Write paths for child-linked data.

    Usage:
        service = ChildcareService(db, clock=clock)
        entry = await service.check_in(child_id, principal)
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
        self._gate = ConsentGate(db)

    async def check_in(
        self, child_id: uuid.UUID, principal: Principal, method: str = "MANUAL"
    ) -> CheckInLog:
        return await self._record_attendance(
            child_id, principal, CheckInType.CHECK_IN, SensitiveOperation.CHECK_IN, method
        )

    async def check_out(
        self, child_id: uuid.UUID, principal: Principal, method: str = "MANUAL"
    ) -> CheckInLog:
        return await self._record_attendance(
            child_id, principal, CheckInType.CHECK_OUT, SensitiveOperation.CHECK_OUT, method
        )

    async def create_note(self, child_id: uuid.UUID, principal: Principal, content: str) -> Note:
        if not content or not content.strip():
            raise ValidationError(NOTE_CONTENT_REQUIRED)

        child = await self._admit(child_id, principal, SensitiveOperation.NOTE_CREATE)
        note = Note(
            child_id=child.id,
            educator_id=principal.id,
            content=content.strip(),
            created_at=self._clock.now(),
        )
        self._db.add(note)
        await self._db.flush()

        await self._audit.record(
            "NOTE_CREATED",
            "Note",
            note.id,
            principal.id,
            {"child_id": str(child.id), "message": f"Notiz für {child.name} erstellt"},
            institution_id=child.institution_id,
        )
        log.info("childcare.note_created", note_id=str(note.id), child_id=str(child.id))
        return note

    async def attach_media(
        self,
        child_id: uuid.UUID,
        principal: Principal,
        *,
        file_name: str,
        content_type: str,
        storage_key: str,
    ) -> ChildMedia:
        """Register an already-uploaded file against a child."""
        child = await self._admit(child_id, principal, SensitiveOperation.MEDIA_ATTACH)
        media = ChildMedia(
            child_id=child.id,
            uploaded_by=principal.id,
            file_name=file_name,
            content_type=content_type,
            storage_key=storage_key,
            created_at=self._clock.now(),
        )
        self._db.add(media)
        await self._db.flush()

        await self._audit.record(
            "MEDIA_ATTACHED",
            "ChildMedia",
            media.id,
            principal.id,
            {
                "child_id": str(child.id),
                "file_name": file_name,
                "content_type": content_type,
            },
            institution_id=child.institution_id,
        )
        log.info("childcare.media_attached", media_id=str(media.id), child_id=str(child.id))
        return media

    async def _record_attendance(
        self,
        child_id: uuid.UUID,
        principal: Principal,
        kind: CheckInType,
        operation: SensitiveOperation,
        method: str,
    ) -> CheckInLog:
        method = method.upper()
        if method not in CHECKIN_METHODS:
            raise ValidationError("Ungültige Check-in-Methode", method=method)

        child = await self._admit(child_id, principal, operation)
        entry = CheckInLog(
            child_id=child.id,
            institution_id=child.institution_id,
            recorded_by=principal.id,
            type=kind,
            method=method,
            timestamp=self._clock.now(),
        )
        self._db.add(entry)
        await self._db.flush()

        action = "CHILD_CHECKIN" if kind == CheckInType.CHECK_IN else "CHILD_CHECKOUT"
        await self._audit.record(
            action,
            "Child",
            child.id,
            principal.id,
            {"check_in_log_id": str(entry.id), "method": method},
            institution_id=child.institution_id,
        )
        log.info("childcare.attendance_recorded", child_id=str(child.id), type=kind)
        return entry

    async def _admit(
        self, child_id: uuid.UUID, principal: Principal, operation: SensitiveOperation
    ) -> Child:
        # Deleted children fail here with NOT_FOUND before the gate is consulted
        child = await load_active_child(self._db, child_id)
        await self._gate.require_consent(child.id, operation, principal)
        return child
