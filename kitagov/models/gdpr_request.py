"""SQLAlchemy ORM model for GDPR erasure request persistence.

Tracks the review lifecycle of a "right to erasure" request:
PENDING -> APPROVED (subject soft-deleted) or PENDING -> REJECTED.
Both terminal states are final.

The partial unique index ``uq_gdpr_requests_pending_user`` allows at most
one PENDING request per data subject; the insert itself is the uniqueness
check, so two concurrent creations cannot both succeed.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import DateTime, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from kitagov.database import Base


class GDPRRequestStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class GDPRRequestRecord(Base):
    """Persistent record of a data-subject erasure request."""

    __tablename__ = "gdpr_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
        comment="GDPR request primary key",
    )
    # No FK to users.id: the subject row is purged after its retention window
    user_id: Mapped[uuid.UUID] = mapped_column(
        nullable=False,
        index=True,
        comment="Data subject",
    )
    reason: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Deletion reason; rejection rationale is appended on REJECTED",
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=GDPRRequestStatus.PENDING,
        comment="PENDING | APPROVED | REJECTED",
    )
    requested_by: Mapped[uuid.UUID | None] = mapped_column(
        nullable=True,
        comment="Actor who filed the request",
    )
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(
        nullable=True,
        comment="Reviewer who approved or rejected",
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="UTC timestamp when the request reached a terminal status",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index(
            "uq_gdpr_requests_pending_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        Index("ix_gdpr_requests_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<GDPRRequestRecord id={self.id} user={self.user_id} "
            f"status={self.status!r}>"
        )
