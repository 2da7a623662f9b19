"""Soft-deletable entity types and their ORM models."""

from __future__ import annotations

from enum import StrEnum

from kitagov.database import Base
from kitagov.models import (
    Child,
    ClosedDay,
    Group,
    Institution,
    Message,
    Note,
    NotificationLog,
    PersonalTask,
    User,
)


class EntityType(StrEnum):
    USER = "USER"
    CHILD = "CHILD"
    GROUP = "GROUP"
    INSTITUTION = "INSTITUTION"
    PERSONAL_TASK = "PERSONAL_TASK"
    NOTE = "NOTE"
    NOTIFICATION = "NOTIFICATION"
    MESSAGE = "MESSAGE"
    CLOSED_DAY = "CLOSED_DAY"


ENTITY_MODELS: dict[EntityType, type[Base]] = {
    EntityType.USER: User,
    EntityType.CHILD: Child,
    EntityType.GROUP: Group,
    EntityType.INSTITUTION: Institution,
    EntityType.PERSONAL_TASK: PersonalTask,
    EntityType.NOTE: Note,
    EntityType.NOTIFICATION: NotificationLog,
    EntityType.MESSAGE: Message,
    EntityType.CLOSED_DAY: ClosedDay,
}

# Entity names as written to the audit trail
ENTITY_LABELS: dict[EntityType, str] = {
    EntityType.USER: "User",
    EntityType.CHILD: "Child",
    EntityType.GROUP: "Group",
    EntityType.INSTITUTION: "Institution",
    EntityType.PERSONAL_TASK: "PersonalTask",
    EntityType.NOTE: "Note",
    EntityType.NOTIFICATION: "Notification",
    EntityType.MESSAGE: "Message",
    EntityType.CLOSED_DAY: "ClosedDay",
}

_NOT_FOUND_MESSAGES: dict[EntityType, str] = {
    EntityType.USER: "Benutzer nicht gefunden",
    EntityType.CHILD: "Kind nicht gefunden",
    EntityType.GROUP: "Gruppe nicht gefunden",
    EntityType.INSTITUTION: "Einrichtung nicht gefunden",
}

# Dependents before owners, so a purge never trips over a row that is
# itself due in the same run
PURGE_ORDER: tuple[EntityType, ...] = (
    EntityType.PERSONAL_TASK,
    EntityType.NOTE,
    EntityType.NOTIFICATION,
    EntityType.MESSAGE,
    EntityType.CLOSED_DAY,
    EntityType.CHILD,
    EntityType.GROUP,
    EntityType.USER,
    EntityType.INSTITUTION,
)


def not_found_message(entity_type: EntityType) -> str:
    return _NOT_FOUND_MESSAGES.get(entity_type, f"{ENTITY_LABELS[entity_type]} nicht gefunden")
