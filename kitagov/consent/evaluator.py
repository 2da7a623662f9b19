"""Consent evaluation for child records.

A child has valid consent when EITHER channel says so:
- manual consent: a signed paper form recorded by staff
  (``Child.manual_consent_given``)
- app consent: at least one linked, non-deleted guardian has
  ``User.consent_given``

There is no AND-combination and no quorum across guardians. A guardian
withdrawing app consent does not override standing manual consent.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from kitagov.core.errors import NotFoundError
from kitagov.models.child import Child, child_parents
from kitagov.models.user import User

CHILD_NOT_FOUND = "Kind nicht gefunden"


class ConsentType(StrEnum):
    MANUAL = "manual"
    APP = "app"
    NONE = "none"


@dataclass
class ConsentStatus:
    child_id: uuid.UUID
    consent_given: bool
    consent_type: ConsentType
    manual_consent_given: bool
    manual_consent_date: datetime | None
    manual_consent_set_by: uuid.UUID | None
    guardian_consent: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "child_id": str(self.child_id),
            "consent_given": self.consent_given,
            "consent_type": str(self.consent_type),
            "manual_consent_given": self.manual_consent_given,
            "manual_consent_date": (
                self.manual_consent_date.isoformat() if self.manual_consent_date else None
            ),
            "manual_consent_set_by": (
                str(self.manual_consent_set_by) if self.manual_consent_set_by else None
            ),
            "guardian_consent": self.guardian_consent,
        }


async def load_active_child(db: AsyncSession, child_id: uuid.UUID) -> Child:
    """Fetch a non-deleted child or raise NotFoundError."""
    result = await db.execute(
        select(Child).where(Child.id == child_id, Child.deleted_at.is_(None))
    )
    child = result.scalar_one_or_none()
    if child is None:
        raise NotFoundError(CHILD_NOT_FOUND, child_id=child_id)
    return child


class ConsentEvaluator:
    """Read-only consent decision for a child."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def has_valid_consent(self, child_id: uuid.UUID) -> bool:
        child = await load_active_child(self._db, child_id)
        if child.manual_consent_given:
            return True
        return await self._guardian_consent(child.id)

    async def consent_status(self, child_id: uuid.UUID) -> ConsentStatus:
        child = await load_active_child(self._db, child_id)
        guardian_consent = await self._guardian_consent(child.id)

        if child.manual_consent_given:
            consent_type = ConsentType.MANUAL
        elif guardian_consent:
            consent_type = ConsentType.APP
        else:
            consent_type = ConsentType.NONE

        return ConsentStatus(
            child_id=child.id,
            consent_given=consent_type != ConsentType.NONE,
            consent_type=consent_type,
            manual_consent_given=child.manual_consent_given,
            manual_consent_date=child.manual_consent_date,
            manual_consent_set_by=child.manual_consent_set_by,
            guardian_consent=guardian_consent,
        )

    async def _guardian_consent(self, child_id: uuid.UUID) -> bool:
        stmt = select(
            exists()
            .where(child_parents.c.child_id == child_id)
            .where(child_parents.c.user_id == User.id)
            .where(User.consent_given.is_(True))
            .where(User.deleted_at.is_(None))
        )
        result = await self._db.execute(stmt)
        return bool(result.scalar())
