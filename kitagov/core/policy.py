"""Policy engine - capability checks and institution scoping.

This module is the single enforcement point for "may this principal do
this here". Consent gating, soft-deletion, the GDPR request workflow,
exports and retention runs all call check_capability() instead of
comparing roles themselves.

Capability matrix:
  Capability            | SUPER_ADMIN | ADMIN | EDUCATOR | PARENT
  ----------------------|-------------|-------|----------|-------
  child.checkin         |     yes     |  yes  |   yes    |  yes
  note.create           |     yes     |  yes  |   yes    |  no
  media.attach          |     yes     |  yes  |   yes    |  no
  consent.manual.set    |     yes     |  yes  |   no     |  no
  consent.request       |     yes     |  yes  |   no     |  no
  consent.guardian.set  |     no      |  no   |   no     |  yes
  entity.soft_delete    |     yes     |  yes  |   no     |  no
  institution.delete    |     yes     |  no   |   no     |  no
  data.export           |     yes     |  yes  |   no     |  no
  gdpr.request.manage   |     yes     |  no   |   no     |  no
  retention.run         |     yes     |  no   |   no     |  no
  audit.read            |     yes     |  no   |   no     |  no

SUPER_ADMIN is globally scoped. Every other role is confined to its own
institution: when a target institution is passed, it must match.
"""

from __future__ import annotations

import uuid
from enum import StrEnum

import structlog

from kitagov.auth.principal import Principal
from kitagov.core.errors import ForbiddenError
from kitagov.models.user import UserRole

log = structlog.get_logger(__name__)


class Capability(StrEnum):
    # Consent-gated childcare operations
    CHILD_CHECKIN = "child.checkin"
    NOTE_CREATE = "note.create"
    MEDIA_ATTACH = "media.attach"

    # Consent management
    MANUAL_CONSENT_SET = "consent.manual.set"
    CONSENT_REQUEST = "consent.request"
    GUARDIAN_CONSENT_SET = "consent.guardian.set"

    # Data lifecycle
    ENTITY_SOFT_DELETE = "entity.soft_delete"
    INSTITUTION_DELETE = "institution.delete"
    DATA_EXPORT = "data.export"
    GDPR_REQUEST_MANAGE = "gdpr.request.manage"
    RETENTION_RUN = "retention.run"

    # Audit
    AUDIT_READ = "audit.read"


_ROLE_CAPABILITIES: dict[UserRole, frozenset[Capability]] = {
    UserRole.SUPER_ADMIN: frozenset(Capability) - {Capability.GUARDIAN_CONSENT_SET},
    UserRole.ADMIN: frozenset(
        {
            Capability.CHILD_CHECKIN,
            Capability.NOTE_CREATE,
            Capability.MEDIA_ATTACH,
            Capability.MANUAL_CONSENT_SET,
            Capability.CONSENT_REQUEST,
            Capability.ENTITY_SOFT_DELETE,
            Capability.DATA_EXPORT,
        }
    ),
    UserRole.EDUCATOR: frozenset(
        {
            Capability.CHILD_CHECKIN,
            Capability.NOTE_CREATE,
            Capability.MEDIA_ATTACH,
        }
    ),
    UserRole.PARENT: frozenset(
        {
            Capability.CHILD_CHECKIN,
            Capability.GUARDIAN_CONSENT_SET,
        }
    ),
}

_DENIAL_MESSAGES: dict[Capability, str] = {
    Capability.MANUAL_CONSENT_SET: "Nur Admins können die manuelle Einwilligung setzen",
    Capability.CONSENT_REQUEST: "Nur Admins können Einwilligungsanfragen senden",
    Capability.GUARDIAN_CONSENT_SET: "Nur Eltern können ihre Einwilligung ändern",
    Capability.ENTITY_SOFT_DELETE: "Keine Berechtigung zum Löschen",
    Capability.INSTITUTION_DELETE: "Nur Super-Admins können Einrichtungen löschen",
    Capability.GDPR_REQUEST_MANAGE: "Nur Super-Admins können GDPR-Anfragen verwalten",
    Capability.RETENTION_RUN: "Nur Super-Admins können die Datenbereinigung auslösen",
    Capability.AUDIT_READ: "Nur Super-Admins können das Audit-Protokoll einsehen",
}

_SCOPE_MESSAGE = "Keine Berechtigung für diese Einrichtung"


def capabilities_for(role: UserRole) -> frozenset[Capability]:
    return _ROLE_CAPABILITIES.get(UserRole(role), frozenset())


def check_capability(
    principal: Principal,
    capability: Capability,
    *,
    institution_id: uuid.UUID | None = None,
    raise_on_failure: bool = True,
) -> bool:
    """Check whether principal holds capability for the target institution.

    If raise_on_failure=True (default), raises ForbiddenError on failure.
    If raise_on_failure=False, returns False instead.
    """
    if capability not in capabilities_for(principal.role):
        log.warning(
            "policy.capability_denied",
            actor_id=str(principal.id),
            role=principal.role,
            capability=capability,
        )
        if raise_on_failure:
            raise ForbiddenError(
                _DENIAL_MESSAGES.get(
                    capability, f"Keine Berechtigung für '{capability}'"
                ),
                capability=capability,
            )
        return False

    if (
        institution_id is not None
        and not principal.is_super_admin
        and principal.institution_id != institution_id
    ):
        log.warning(
            "policy.institution_scope_denied",
            actor_id=str(principal.id),
            role=principal.role,
            capability=capability,
            actor_institution_id=str(principal.institution_id),
            target_institution_id=str(institution_id),
        )
        if raise_on_failure:
            raise ForbiddenError(_SCOPE_MESSAGE, capability=capability)
        return False

    return True
