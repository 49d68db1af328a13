"""User schemas."""
from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    email: EmailStr
    full_name: str | None = Field(default=None, max_length=200)
    is_active: bool = True


class PayoutAccountUpdate(BaseModel):
    stripe_account_id: str = Field(pattern=r"^acct_[A-Za-z0-9]+$", max_length=64)


class UserRead(BaseModel):
    id: int
    username: str
    email: EmailStr
    full_name: str | None = None
    is_active: bool
    stripe_account_id: str | None = None

    model_config = ConfigDict(from_attributes=True)
