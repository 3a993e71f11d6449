# horizon/schemas/user.py
from datetime import datetime
from typing import Any

from pydantic import ConfigDict, field_validator
from sqlmodel import SQLModel, Field


class UserRead(SQLModel):
    """
    Response schema for the current user.

    Security fields (password hash, tokens, login counters) are never
    returned.
    """

    id: str
    username: str
    email: str
    device_id: str
    platform: str
    created_at: datetime
    updated_at: datetime

    is_email_verified: bool
    is_active: bool
    last_login_at: datetime | None = None
    last_active_at: datetime | None = None

    is_premium: bool
    subscription_type: str | None = None
    subscription_expiry_date: datetime | None = None
    promo_code_used: str | None = None
    unlocked_screens: int
    total_screens: int
    ads_enabled: bool

    current_session_id: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    preferences: str


class UserProfileUpdate(SQLModel):
    """
    Partial profile update.

    Shape checks (username / email format) happen in the router so that
    they come back as 400 with the validation message.
    """

    model_config = ConfigDict(extra="forbid")

    username: str | None = None
    email: str | None = None
    display_name: str | None = Field(default=None, max_length=100)
    bio: str | None = Field(default=None, max_length=500)
    preferences: dict[str, Any] | None = None

    @field_validator("username", "email", "display_name")
    @classmethod
    def strip_text(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return v.strip()
