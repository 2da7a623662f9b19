"""Consent gate for sensitive child-scoped operations.

Write paths call ConsentGate.require_consent() before mutating anything
tied to a child. The gate only decides; audit entries are written by the
calling operation, never here.
"""

from __future__ import annotations

import uuid
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession

from kitagov.auth.principal import Principal
from kitagov.consent.evaluator import ConsentEvaluator, load_active_child
from kitagov.core.errors import ConsentRequiredError
from kitagov.core.policy import Capability, check_capability


class SensitiveOperation(StrEnum):
    CHECK_IN = "CHECK_IN"
    CHECK_OUT = "CHECK_OUT"
    NOTE_CREATE = "NOTE_CREATE"
    MEDIA_ATTACH = "MEDIA_ATTACH"


_OPERATION_CAPABILITY: dict[SensitiveOperation, Capability] = {
    SensitiveOperation.CHECK_IN: Capability.CHILD_CHECKIN,
    SensitiveOperation.CHECK_OUT: Capability.CHILD_CHECKIN,
    SensitiveOperation.NOTE_CREATE: Capability.NOTE_CREATE,
    SensitiveOperation.MEDIA_ATTACH: Capability.MEDIA_ATTACH,
}

_DENIAL_MESSAGES: dict[SensitiveOperation, str] = {
    SensitiveOperation.CHECK_IN: (
        "Check-in nicht möglich: Keine gültige Einwilligung für dieses Kind vorhanden"
    ),
    SensitiveOperation.CHECK_OUT: (
        "Check-out nicht möglich: Keine gültige Einwilligung für dieses Kind vorhanden"
    ),
    SensitiveOperation.NOTE_CREATE: (
        "Notiz kann nicht erstellt werden: Keine gültige Einwilligung für dieses Kind vorhanden"
    ),
    SensitiveOperation.MEDIA_ATTACH: (
        "Medien können nicht hochgeladen werden: Keine gültige Einwilligung "
        "für dieses Kind vorhanden"
    ),
}


def capability_for(operation: SensitiveOperation) -> Capability:
    return _OPERATION_CAPABILITY[SensitiveOperation(operation)]


class ConsentGate:
    """Allow or reject a sensitive operation on a child.

    Usage:
        gate = ConsentGate(db)
        await gate.require_consent(child_id, SensitiveOperation.CHECK_IN, principal)
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db
        self._evaluator = ConsentEvaluator(db)

    async def require_consent(
        self,
        child_id: uuid.UUID,
        operation: SensitiveOperation,
        principal: Principal | None = None,
    ) -> None:
        """Return normally if the operation may proceed.

        Raises:
            NotFoundError: child missing or soft-deleted.
            ForbiddenError: principal lacks the capability for this operation
                or belongs to another institution.
            ConsentRequiredError: no valid consent on either channel.
        """
        operation = SensitiveOperation(operation)
        if principal is not None:
            child = await load_active_child(self._db, child_id)
            check_capability(
                principal,
                capability_for(operation),
                institution_id=child.institution_id,
            )

        if not await self._evaluator.has_valid_consent(child_id):
            raise ConsentRequiredError(
                _DENIAL_MESSAGES[operation],
                child_id=child_id,
                operation=operation,
            )
