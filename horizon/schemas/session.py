# horizon/schemas/session.py
from datetime import datetime

from pydantic import ConfigDict, field_validator
from sqlmodel import SQLModel, Field


class SessionCreate(SQLModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(max_length=100)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name cannot be empty")
        return v


class SessionRead(SQLModel):
    id: str
    name: str
    created_at: datetime
    last_active: datetime
    is_active: bool
    participants: list[str]
    cloudkit_record_id: str | None = None


class PositionCreate(SQLModel):
    """One pose sample for this device in the current session."""

    model_config = ConfigDict(extra="forbid")

    x: float
    y: float
    z: float
    rotation: float = 0.0


class PositionRead(SQLModel):
    id: str
    x: float
    y: float
    z: float
    rotation: float
    device_id: str
    session_id: str
    timestamp: datetime
