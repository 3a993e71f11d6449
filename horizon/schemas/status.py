# horizon/schemas/status.py
from sqlmodel import SQLModel


class StatusRead(SQLModel):
    """Published engine state, minus the entities themselves."""

    platform: str
    device_id: str
    backends: list[str]
    lifecycle: str
    is_loading: bool
    is_online: bool
    is_premium: bool
    unlocked_screens: int
    sync_status: str
    last_sync_error: str | None = None
    error_message: str | None = None
    local_store_available: bool
    current_user_id: str | None = None
    current_session_id: str | None = None
