"""Retention policy: how long a soft-deleted row is kept before purge.

The windows come from Settings (``retention_*_days``). ACTIVITY_LOG and
FAILED_LOGIN are listed for completeness; the audit trail is append-only
and is never purged by the scheduler.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta

from kitagov.config import Settings, get_settings
from kitagov.core.clock import ensure_utc


class RetentionPolicy:
    """Static mapping from entity type to retention window."""

    def __init__(self, days_by_type: Mapping[str, int]) -> None:
        self._days = {str(k): int(v) for k, v in days_by_type.items()}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetentionPolicy:
        cfg = settings or get_settings()
        return cls(
            {
                "USER": cfg.retention_user_days,
                "CHILD": cfg.retention_child_days,
                "GROUP": cfg.retention_group_days,
                "INSTITUTION": cfg.retention_institution_days,
                "PERSONAL_TASK": cfg.retention_personal_task_days,
                "NOTE": cfg.retention_note_days,
                "NOTIFICATION": cfg.retention_notification_days,
                "CLOSED_DAY": cfg.retention_closed_day_days,
                "MESSAGE": cfg.retention_message_days,
                "ACTIVITY_LOG": cfg.retention_activity_log_days,
                "FAILED_LOGIN": cfg.retention_failed_login_days,
            }
        )

    def window_for(self, entity_type: str) -> timedelta | None:
        days = self._days.get(str(entity_type))
        return timedelta(days=days) if days is not None else None

    def cutoff(self, entity_type: str, now: datetime) -> datetime | None:
        """Rows deleted strictly before this instant are due for purge."""
        window = self.window_for(entity_type)
        return now - window if window is not None else None

    def purge_due_at(self, entity_type: str, deleted_at: datetime) -> datetime | None:
        window = self.window_for(entity_type)
        return ensure_utc(deleted_at) + window if window is not None else None

    def is_expired(self, entity_type: str, deleted_at: datetime | None, now: datetime) -> bool:
        window = self.window_for(entity_type)
        if window is None or deleted_at is None:
            return False
        return now - ensure_utc(deleted_at) > window

    def as_dict(self) -> dict[str, int]:
        return dict(self._days)
