"""API key schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from freelance_escrow.models.api_key import ApiScope


class ApiKeyCreate(BaseModel):
    name: str = Field(max_length=120)
    scope: ApiScope
    # Required for client and freelancer keys; the key acts as that user.
    user_id: int | None = None
    days_valid: int | None = Field(default=90, ge=1)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("name cannot be blank")
        return value.strip()


class ApiKeyCreated(BaseModel):
    """Returned once on creation; the raw key is never shown again."""

    id: int
    name: str
    scope: ApiScope
    user_id: int | None
    key: str
    expires_at: datetime | None


class ApiKeyRead(BaseModel):
    id: int
    name: str
    scope: ApiScope
    user_id: int | None
    is_active: bool
    created_at: datetime
    expires_at: datetime | None
    last_used_at: datetime | None

    model_config = ConfigDict(from_attributes=True)
