"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs. The order of imports matters for foreign key resolution.
"""

from kitagov.models.institution import ClosedDay, Institution
from kitagov.models.user import User, UserRole
from kitagov.models.group import Group, group_educators
from kitagov.models.child import Child, child_parents
from kitagov.models.communication import Message, Note, NotificationLog, PersonalTask
from kitagov.models.attendance import CheckInLog, CheckInType, ChildMedia
from kitagov.models.gdpr_request import GDPRRequestRecord, GDPRRequestStatus
from kitagov.models.activity_log import GENESIS_HASH, ActivityLog

__all__ = [
    "GENESIS_HASH",
    "ActivityLog",
    "CheckInLog",
    "CheckInType",
    "Child",
    "ChildMedia",
    "ClosedDay",
    "GDPRRequestRecord",
    "GDPRRequestStatus",
    "Group",
    "Institution",
    "Message",
    "Note",
    "NotificationLog",
    "PersonalTask",
    "User",
    "UserRole",
    "child_parents",
    "group_educators",
]
