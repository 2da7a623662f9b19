"""Authenticated principal abstraction.

The surrounding request layer authenticates the caller and hands the engine
a Principal. The engine never issues or validates credentials itself.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from kitagov.models.user import User, UserRole


@dataclass(frozen=True)
class Principal:
    """An authenticated actor.

    SUPER_ADMIN principals are institution-less and globally scoped; every
    other role is bound to exactly one institution.
    """

    id: uuid.UUID
    role: UserRole
    institution_id: uuid.UUID | None = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    @classmethod
    def from_user(cls, user: User) -> Principal:
        return cls(
            id=user.id,
            role=UserRole(user.role),
            institution_id=user.institution_id,
        )
