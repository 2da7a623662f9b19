"""Child model.

Consent lives on two independent channels:
- guardian app consent (``User.consent_given`` on any linked parent), cached
  here as ``consent_given`` for listing queries
- manual/paper consent recorded by staff (``manual_consent_given``)

A child with a non-null ``deleted_at`` is invisible to normal queries,
consent evaluation and data exports.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, String, Table
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kitagov.database import Base

child_parents = Table(
    "child_parents",
    Base.metadata,
    Column("child_id", ForeignKey("children.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Child(Base):
    __tablename__ = "children"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    institution_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("institutions.id"),
        nullable=False,
        index=True,
    )
    group_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("groups.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Cached from linked guardians; the evaluator reads the guardians directly
    consent_given: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consent_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    manual_consent_given: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    manual_consent_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    manual_consent_set_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Staff member who recorded the paper consent",
    )

    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    # Relationships
    parents: Mapped[list[User]] = relationship(  # type: ignore[name-defined]
        "User", secondary=child_parents
    )

    def __repr__(self) -> str:
        return f"<Child id={self.id} name={self.name!r} group={self.group_id}>"
