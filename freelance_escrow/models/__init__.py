"""ORM models package."""
from .api_key import ApiKey, ApiScope
from .audit import AuditLog
from .base import Base
from .escrow import (
    ClientApprovalStatus,
    DisputeResolution,
    Escrow,
    EscrowEvent,
    EscrowStatus,
    TERMINAL_ESCROW_STATUSES,
)
from .milestone import Milestone, MilestoneStatus, SUPPORTED_CURRENCIES
from .psp_webhook import PSPWebhookEvent
from .scheduler_lock import SchedulerLock
from .user import User
from .workspace import Workspace

__all__ = [
    "ApiKey",
    "ApiScope",
    "AuditLog",
    "Base",
    "ClientApprovalStatus",
    "DisputeResolution",
    "Escrow",
    "EscrowEvent",
    "EscrowStatus",
    "Milestone",
    "MilestoneStatus",
    "PSPWebhookEvent",
    "SUPPORTED_CURRENCIES",
    "SchedulerLock",
    "TERMINAL_ESCROW_STATUSES",
    "User",
    "Workspace",
]
