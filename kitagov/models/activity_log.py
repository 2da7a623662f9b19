"""ActivityLog model - the append-only audit trail.

Design principles:
- Append-only: rows are never updated or deleted by normal code paths
- References to users and entities are weak (no foreign keys): the
  referenced row may be purged later and the audit entry must survive it
- Each row carries ``prev_hash`` and ``entry_hash``; together they form a
  hash chain that makes edits or deletions detectable
- The integer primary key gives a total order for chain verification
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from kitagov.database import Base, JSONType

GENESIS_HASH = "0" * 64


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    # Action identifier, e.g. "GDPR_DELETE_USER", "MANUAL_CONSENT_SET"
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    entity: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="e.g. 'User', 'Child', 'GDPRRequest', 'System'",
    )
    entity_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="UUID of the affected entity, or a label for system events",
    )
    # Actor; NULL for system jobs
    user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    institution_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    details: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        index=True,
    )

    # Hash chain
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False, default=GENESIS_HASH)
    entry_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_activity_logs_entity", "entity", "entity_id"),
        Index("ix_activity_logs_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ActivityLog id={self.id} action={self.action!r} "
            f"entity={self.entity!r} entity_id={self.entity_id!r}>"
        )
