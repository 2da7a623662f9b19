"""Consent changes on both channels.

- Staff record paper consent on a child (manual channel).
- Guardians grant or withdraw app consent for themselves (app channel).
- Staff ask guardians for consent via an in-app notification.

Every change is audited. Callers own the transaction.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kitagov.auth.principal import Principal
from kitagov.consent.evaluator import load_active_child
from kitagov.core.audit import AuditLogger
from kitagov.core.clock import Clock, SystemClock
from kitagov.core.errors import NotFoundError, ValidationError
from kitagov.core.policy import Capability, check_capability
from kitagov.models.child import Child, child_parents
from kitagov.models.communication import NotificationLog
from kitagov.models.user import User

log = structlog.get_logger(__name__)

CONSENT_REQUEST_KIND = "CONSENT_REQUEST"


class ConsentManager:
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

    async def set_manual_consent(
        self,
        child_id: uuid.UUID,
        given: bool,
        principal: Principal,
        consent_date: datetime | None = None,
    ) -> Child:
        """Record (or revoke) paper consent for a child.

        Only SUPER_ADMIN, or ADMIN of the child's institution, may do this.
        The consent date defaults to now when consent is given and is
        cleared on revocation.
        """
        child = await load_active_child(self._db, child_id)
        check_capability(
            principal,
            Capability.MANUAL_CONSENT_SET,
            institution_id=child.institution_id,
        )

        child.manual_consent_given = given
        child.manual_consent_date = (consent_date or self._clock.now()) if given else None
        child.manual_consent_set_by = principal.id
        child.updated_at = self._clock.now()
        await self._db.flush()

        await self._audit.record(
            "MANUAL_CONSENT_SET",
            "Child",
            child.id,
            principal.id,
            {
                "manual_consent_given": given,
                "manual_consent_date": child.manual_consent_date,
                "message": (
                    f"Manuelle Einwilligung für {child.name} "
                    f"{'erteilt' if given else 'widerrufen'}"
                ),
            },
            institution_id=child.institution_id,
        )
        log.info(
            "consent.manual_set",
            child_id=str(child.id),
            given=given,
            actor_id=str(principal.id),
        )
        return child

    async def set_guardian_consent(self, principal: Principal, given: bool) -> User:
        """A guardian grants or withdraws app consent for their children."""
        check_capability(principal, Capability.GUARDIAN_CONSENT_SET)

        result = await self._db.execute(
            select(User).where(User.id == principal.id, User.deleted_at.is_(None))
        )
        guardian = result.scalar_one_or_none()
        if guardian is None:
            raise NotFoundError("Benutzer nicht gefunden", user_id=principal.id)

        now = self._clock.now()
        guardian.consent_given = given
        guardian.consent_date = now if given else None
        guardian.updated_at = now
        await self._db.flush()

        refreshed = await self._refresh_cached_child_consent(guardian.id)

        await self._audit.record(
            "GDPR_PARENT_CONSENT_CHANGED",
            "User",
            guardian.id,
            principal.id,
            {
                "consent_given": given,
                "children_refreshed": refreshed,
                "message": (
                    "Einwilligung für sensitive Datenverarbeitung geändert: "
                    f"{'gegeben' if given else 'entzogen'} von Elternteil"
                ),
            },
            institution_id=guardian.institution_id,
        )
        log.info(
            "consent.guardian_changed",
            user_id=str(guardian.id),
            given=given,
            children_refreshed=refreshed,
        )
        return guardian

    async def request_guardian_consent(
        self, child_id: uuid.UUID, principal: Principal
    ) -> list[NotificationLog]:
        """Send every active guardian of the child a consent request."""
        child = await load_active_child(self._db, child_id)
        check_capability(
            principal,
            Capability.CONSENT_REQUEST,
            institution_id=child.institution_id,
        )

        result = await self._db.execute(
            select(User)
            .join(child_parents, child_parents.c.user_id == User.id)
            .where(child_parents.c.child_id == child.id, User.deleted_at.is_(None))
        )
        guardians = list(result.scalars().all())
        if not guardians:
            raise ValidationError("Kind hat keine zugeordneten Eltern", child_id=child.id)

        now = self._clock.now()
        notifications = [
            NotificationLog(
                user_id=guardian.id,
                sender_id=principal.id,
                institution_id=child.institution_id,
                kind=CONSENT_REQUEST_KIND,
                title="Einwilligung erforderlich",
                body=(
                    f"Bitte erteilen Sie die Einwilligung zur Datenverarbeitung "
                    f"für {child.name}."
                ),
                created_at=now,
            )
            for guardian in guardians
        ]
        self._db.add_all(notifications)
        await self._db.flush()

        await self._audit.record(
            "GDPR_CONSENT_REQUEST_SENT",
            "Child",
            child.id,
            principal.id,
            {
                "recipients": [str(g.id) for g in guardians],
                "message": f"Einwilligungsanfrage für {child.name} gesendet",
            },
            institution_id=child.institution_id,
        )
        log.info(
            "consent.request_sent",
            child_id=str(child.id),
            recipients=len(guardians),
        )
        return notifications

    async def _refresh_cached_child_consent(self, guardian_id: uuid.UUID) -> int:
        """Recompute Child.consent_given for every child of this guardian."""
        child_ids = select(child_parents.c.child_id).where(
            child_parents.c.user_id == guardian_id
        )
        any_guardian_consents = (
            exists()
            .where(child_parents.c.child_id == Child.id)
            .where(child_parents.c.user_id == User.id)
            .where(User.consent_given.is_(True))
            .where(User.deleted_at.is_(None))
        )
        now = self._clock.now()
        granted = await self._db.execute(
            update(Child)
            .where(Child.id.in_(child_ids), Child.deleted_at.is_(None))
            .where(any_guardian_consents)
            .values(consent_given=True, consent_date=now)
            .execution_options(synchronize_session="fetch")
        )
        revoked = await self._db.execute(
            update(Child)
            .where(Child.id.in_(child_ids), Child.deleted_at.is_(None))
            .where(~any_guardian_consents)
            .values(consent_given=False, consent_date=None)
            .execution_options(synchronize_session="fetch")
        )
        return (granted.rowcount or 0) + (revoked.rowcount or 0)
