"""Schema package exports."""
from .apikey import ApiKeyCreate, ApiKeyCreated, ApiKeyRead
from .escrow import (
    AutoReleaseRunRead,
    DisputePayload,
    EscrowEventRead,
    EscrowOrderRead,
    EscrowRead,
    FundPayload,
    GatewayOrderRead,
    OverdueRunRead,
    ReleasePayload,
    ResolvePayload,
)
from .milestone import DeliverableSubmission, MilestoneCreate, MilestoneRead, MilestoneReview, MilestoneUpdate
from .user import PayoutAccountUpdate, UserCreate, UserRead
from .workspace import WorkspaceCreate, WorkspaceRead

__all__ = [
    "ApiKeyCreate",
    "ApiKeyCreated",
    "ApiKeyRead",
    "AutoReleaseRunRead",
    "DeliverableSubmission",
    "DisputePayload",
    "EscrowEventRead",
    "EscrowOrderRead",
    "EscrowRead",
    "FundPayload",
    "GatewayOrderRead",
    "MilestoneCreate",
    "MilestoneRead",
    "MilestoneReview",
    "MilestoneUpdate",
    "OverdueRunRead",
    "PayoutAccountUpdate",
    "ReleasePayload",
    "ResolvePayload",
    "UserCreate",
    "UserRead",
    "WorkspaceCreate",
    "WorkspaceRead",
]
