"""Escrow schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from freelance_escrow.models.escrow import ClientApprovalStatus, DisputeResolution, EscrowStatus


class EscrowRead(BaseModel):
    id: int
    milestone_id: int
    client_id: int
    freelancer_id: int
    currency: str
    milestone_amount: Decimal
    service_charge: Decimal
    service_charge_percentage: Decimal
    total_amount: Decimal
    amount_to_freelancer: Decimal
    status: EscrowStatus
    deliverable_submitted: bool
    deliverable_submitted_at: datetime | None
    client_approval_status: ClientApprovalStatus
    client_approved_at: datetime | None
    dispute_raised: bool
    dispute_reason: str | None
    dispute_raised_by: str | None
    dispute_raised_at: datetime | None
    dispute_resolution: DisputeResolution | None
    dispute_resolved_at: datetime | None
    resolution_notes: str | None
    order_id: str | None
    transfer_ref: str | None
    refund_ref: str | None
    released_amount: Decimal | None
    refunded_amount: Decimal | None
    release_reason: str | None
    released_by: str | None
    activated_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    version: int

    model_config = ConfigDict(from_attributes=True)


class GatewayOrderRead(BaseModel):
    order_id: str
    amount: Decimal
    currency: str
    client_secret: str | None = None

    model_config = ConfigDict(from_attributes=True)


class EscrowOrderRead(BaseModel):
    escrow: EscrowRead
    order: GatewayOrderRead


class FundPayload(BaseModel):
    order_id: str
    provider_signature: str
    payment_ref: str | None = Field(default=None, max_length=128)


class ReleasePayload(BaseModel):
    reason: str | None = None


class DisputePayload(BaseModel):
    reason: str | None = None


class ResolvePayload(BaseModel):
    resolution: DisputeResolution
    notes: str | None = None
    freelancer_amount: Decimal | None = None


class EscrowEventRead(BaseModel):
    id: int
    milestone_id: int
    escrow_id: int | None
    kind: str
    data_json: dict[str, Any]
    at: datetime
    dispatched_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class SkippedEscrowRead(BaseModel):
    escrow_id: int
    error: str


class AutoReleaseRunRead(BaseModel):
    released_count: int
    skipped: list[SkippedEscrowRead]


class OverdueRunRead(BaseModel):
    marked_count: int
    milestone_ids: list[int]
