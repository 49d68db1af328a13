"""Schemas for workspace entities."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class WorkspaceCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    client_id: int
    freelancer_id: int
    project_budget: Decimal | None = Field(default=None, ge=Decimal("0"))
    currency: str = Field(default="INR", pattern="^(INR|USD|EUR|GBP)$")


class WorkspaceRead(BaseModel):
    id: int
    title: str
    client_id: int
    freelancer_id: int
    project_budget: Decimal | None
    currency: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
