"""ORM models package."""
from .api_key import ApiKey, ApiScope
from .audit import AuditLog
from .base import Base
from .dispute import Dispute, DisputeStatus, ResolutionMode
from .escrow import Escrow, EscrowEvent, EscrowStatus
from .notification import Notification
from .project import Project, ProjectStatus, TERMINAL_PROJECT_STATUSES
from .quote import LIVE_QUOTE_STATUSES, Quote, QuoteStatus
from .scheduler_lock import SchedulerLock
from .user import User

__all__ = [
    "ApiKey",
    "ApiScope",
    "AuditLog",
    "Base",
    "Dispute",
    "DisputeStatus",
    "ResolutionMode",
    "Escrow",
    "EscrowEvent",
    "EscrowStatus",
    "Notification",
    "Project",
    "ProjectStatus",
    "TERMINAL_PROJECT_STATUSES",
    "LIVE_QUOTE_STATUSES",
    "Quote",
    "QuoteStatus",
    "SchedulerLock",
    "User",
]
