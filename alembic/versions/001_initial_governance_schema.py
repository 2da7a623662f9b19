"""Initial governance schema.

Revision ID: 001
Revises:
Create Date: 2026-03-02

Adds:
- institutions, closed_days
- users (user_role enum, guardian consent columns)
- groups, group_educators
- children, child_parents (manual + cached guardian consent columns)
- gdpr_requests
  - partial unique index uq_gdpr_requests_pending_user
    (user_id) WHERE status = 'PENDING'
- activity_logs (integer PK, prev_hash / entry_hash chain columns)
- messages, notification_logs, notes, personal_tasks
- check_in_logs, child_media

Notes:
- Every soft-deletable table has a nullable, indexed deleted_at column.
- Authorship references use ON DELETE SET NULL and owned rows use
  ON DELETE CASCADE, so retention purges never violate FK constraints.
- gdpr_requests.user_id and activity_logs.user_id carry no FK: both must
  outlive the purge of the referenced user.
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
USER_ROLE = sa.Enum("SUPER_ADMIN", "ADMIN", "EDUCATOR", "PARENT", name="user_role")


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        )
    ]
    if updated:
        columns.append(
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            )
        )
    return columns


def _deleted_at() -> sa.Column:
    return sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True)


def upgrade() -> None:
    """Create all governance tables."""

    # ------------------------------------------------------------------
    # institutions / closed_days
    # ------------------------------------------------------------------
    op.create_table(
        "institutions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("address", sa.Text(), nullable=True),
        _deleted_at(),
        *_timestamps(),
    )
    op.create_index("ix_institutions_deleted_at", "institutions", ["deleted_at"])

    op.create_table(
        "closed_days",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("institution_id", sa.Uuid(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("reason", sa.String(255), nullable=True),
        _deleted_at(),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ["institution_id"],
            ["institutions.id"],
            name="fk_closed_days_institution_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_closed_days_institution_id", "closed_days", ["institution_id"])
    op.create_index("ix_closed_days_deleted_at", "closed_days", ["deleted_at"])

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            "institution_id",
            sa.Uuid(),
            nullable=True,
            comment="NULL only for SUPER_ADMIN",
        ),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("role", USER_ROLE, nullable=False, server_default="PARENT"),
        sa.Column("consent_given", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consent_date", sa.DateTime(timezone=True), nullable=True),
        _deleted_at(),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["institution_id"], ["institutions.id"], name="fk_users_institution_id"
        ),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_institution_id", "users", ["institution_id"])
    op.create_index("ix_users_deleted_at", "users", ["deleted_at"])
    op.create_index("ix_users_institution_role", "users", ["institution_id", "role"])

    # ------------------------------------------------------------------
    # groups / group_educators
    # ------------------------------------------------------------------
    op.create_table(
        "groups",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("institution_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        _deleted_at(),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["institution_id"], ["institutions.id"], name="fk_groups_institution_id"
        ),
    )
    op.create_index("ix_groups_institution_id", "groups", ["institution_id"])
    op.create_index("ix_groups_deleted_at", "groups", ["deleted_at"])

    op.create_table(
        "group_educators",
        sa.Column("group_id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Uuid(), primary_key=True, nullable=False),
        sa.ForeignKeyConstraint(["group_id"], ["groups.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )

    # ------------------------------------------------------------------
    # children / child_parents
    # ------------------------------------------------------------------
    op.create_table(
        "children",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("institution_id", sa.Uuid(), nullable=False),
        sa.Column("group_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("birth_date", sa.Date(), nullable=True),
        sa.Column("consent_given", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consent_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "manual_consent_given", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("manual_consent_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "manual_consent_set_by",
            sa.Uuid(),
            nullable=True,
            comment="Staff member who recorded the paper consent",
        ),
        _deleted_at(),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["institution_id"], ["institutions.id"], name="fk_children_institution_id"
        ),
        sa.ForeignKeyConstraint(
            ["group_id"], ["groups.id"], name="fk_children_group_id", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["manual_consent_set_by"],
            ["users.id"],
            name="fk_children_manual_consent_set_by",
            ondelete="SET NULL",
        ),
    )
    op.create_index("ix_children_institution_id", "children", ["institution_id"])
    op.create_index("ix_children_group_id", "children", ["group_id"])
    op.create_index("ix_children_deleted_at", "children", ["deleted_at"])

    op.create_table(
        "child_parents",
        sa.Column("child_id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Uuid(), primary_key=True, nullable=False),
        sa.ForeignKeyConstraint(["child_id"], ["children.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )

    # ------------------------------------------------------------------
    # gdpr_requests
    # ------------------------------------------------------------------
    op.create_table(
        "gdpr_requests",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False, comment="Data subject"),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            server_default="PENDING",
            comment="PENDING | APPROVED | REJECTED",
        ),
        sa.Column("requested_by", sa.Uuid(), nullable=True),
        sa.Column("reviewed_by", sa.Uuid(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_gdpr_requests_user_id", "gdpr_requests", ["user_id"])
    op.create_index("ix_gdpr_requests_created_at", "gdpr_requests", ["created_at"])
    op.create_index(
        "ix_gdpr_requests_status_created", "gdpr_requests", ["status", "created_at"]
    )
    op.create_index(
        "uq_gdpr_requests_pending_user",
        "gdpr_requests",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
        sqlite_where=sa.text("status = 'PENDING'"),
    )

    # ------------------------------------------------------------------
    # activity_logs
    # ------------------------------------------------------------------
    op.create_table(
        "activity_logs",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=True, comment="Actor; NULL for system jobs"),
        sa.Column("institution_id", sa.Uuid(), nullable=True),
        sa.Column("details", JSON_TYPE, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("prev_hash", sa.String(64), nullable=False),
        sa.Column("entry_hash", sa.String(64), nullable=True),
    )
    op.create_index("ix_activity_logs_action", "activity_logs", ["action"])
    op.create_index("ix_activity_logs_user_id", "activity_logs", ["user_id"])
    op.create_index("ix_activity_logs_institution_id", "activity_logs", ["institution_id"])
    op.create_index("ix_activity_logs_created_at", "activity_logs", ["created_at"])
    op.create_index("ix_activity_logs_entity", "activity_logs", ["entity", "entity_id"])
    op.create_index(
        "ix_activity_logs_user_created", "activity_logs", ["user_id", "created_at"]
    )

    # ------------------------------------------------------------------
    # communication
    # ------------------------------------------------------------------
    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("sender_id", sa.Uuid(), nullable=True),
        sa.Column("institution_id", sa.Uuid(), nullable=True),
        sa.Column("group_id", sa.Uuid(), nullable=True),
        sa.Column("child_id", sa.Uuid(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        _deleted_at(),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["sender_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["institution_id"], ["institutions.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["group_id"], ["groups.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["child_id"], ["children.id"], ondelete="SET NULL"),
    )
    for column in ("sender_id", "institution_id", "group_id", "child_id", "deleted_at"):
        op.create_index(f"ix_messages_{column}", "messages", [column])

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True, comment="Recipient"),
        sa.Column("sender_id", sa.Uuid(), nullable=True),
        sa.Column("institution_id", sa.Uuid(), nullable=True),
        sa.Column("kind", sa.String(64), nullable=False, server_default="GENERAL"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _deleted_at(),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["sender_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["institution_id"], ["institutions.id"], ondelete="SET NULL"),
    )
    for column in ("user_id", "sender_id", "institution_id", "deleted_at"):
        op.create_index(f"ix_notification_logs_{column}", "notification_logs", [column])

    op.create_table(
        "notes",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("child_id", sa.Uuid(), nullable=False),
        sa.Column("educator_id", sa.Uuid(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        _deleted_at(),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["child_id"], ["children.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["educator_id"], ["users.id"], ondelete="SET NULL"),
    )
    for column in ("child_id", "educator_id", "deleted_at"):
        op.create_index(f"ix_notes_{column}", "notes", [column])

    op.create_table(
        "personal_tasks",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("done", sa.Boolean(), nullable=False, server_default=sa.false()),
        _deleted_at(),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_personal_tasks_user_id", "personal_tasks", ["user_id"])
    op.create_index("ix_personal_tasks_deleted_at", "personal_tasks", ["deleted_at"])

    # ------------------------------------------------------------------
    # attendance / media
    # ------------------------------------------------------------------
    op.create_table(
        "check_in_logs",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("child_id", sa.Uuid(), nullable=False),
        sa.Column("institution_id", sa.Uuid(), nullable=True),
        sa.Column("recorded_by", sa.Uuid(), nullable=True),
        sa.Column("type", sa.String(16), nullable=False, comment="CHECK_IN | CHECK_OUT"),
        sa.Column(
            "method",
            sa.String(32),
            nullable=False,
            server_default="MANUAL",
            comment="MANUAL | QR",
        ),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        _deleted_at(),
        sa.ForeignKeyConstraint(["child_id"], ["children.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["institution_id"], ["institutions.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["recorded_by"], ["users.id"], ondelete="SET NULL"),
    )
    for column in ("child_id", "institution_id", "timestamp", "deleted_at"):
        op.create_index(f"ix_check_in_logs_{column}", "check_in_logs", [column])

    op.create_table(
        "child_media",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("child_id", sa.Uuid(), nullable=False),
        sa.Column("uploaded_by", sa.Uuid(), nullable=True),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("content_type", sa.String(128), nullable=False),
        sa.Column(
            "storage_key",
            sa.String(512),
            nullable=False,
            comment="Object-store key of the uploaded file",
        ),
        _deleted_at(),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["child_id"], ["children.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["uploaded_by"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_child_media_child_id", "child_media", ["child_id"])


def downgrade() -> None:
    """Drop all governance tables in reverse dependency order."""
    for table in (
        "child_media",
        "check_in_logs",
        "personal_tasks",
        "notes",
        "notification_logs",
        "messages",
        "activity_logs",
        "gdpr_requests",
        "child_parents",
        "children",
        "group_educators",
        "groups",
        "users",
        "closed_days",
        "institutions",
    ):
        op.drop_table(table)

    USER_ROLE.drop(op.get_bind(), checkfirst=True)
