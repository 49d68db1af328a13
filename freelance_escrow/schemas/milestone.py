"""Schemas for milestone entities and milestone commands."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from freelance_escrow.models.milestone import MilestoneStatus


class MilestoneCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    amount: Decimal = Field(gt=Decimal("0"))
    # Defaults to the workspace currency
    currency: str | None = Field(default=None, pattern="^(INR|USD|EUR|GBP)$")
    due_date: datetime
    payment_due_date: datetime | None = None


class MilestoneUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))
    due_date: datetime | None = None
    payment_due_date: datetime | None = None


class MilestoneRead(BaseModel):
    id: int
    workspace_id: int
    position: int
    title: str
    description: str
    amount: Decimal
    currency: str
    due_date: datetime
    payment_due_date: datetime | None
    status: MilestoneStatus
    submission_notes: str | None
    submission_date: datetime | None
    review_notes: str | None
    review_date: datetime | None
    attachment_refs: list[str]
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Text limits are enforced by the state machine so violations share its error envelope.
class DeliverableSubmission(BaseModel):
    notes: str | None = None
    attachment_refs: list[str] = Field(default_factory=list)


class MilestoneReview(BaseModel):
    approve: bool
    notes: str | None = None
