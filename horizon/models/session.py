# horizon/models/session.py
import uuid
from datetime import datetime

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

from horizon.models.types import UTCDateTime, utcnow


class CollabSession(SQLModel, table=True):
    """
    A named collaborative context joinable by several devices.

    Named CollabSession so it does not shadow sqlmodel.Session.

    participants:
      - ordered, duplicate-free list of device ids
      - stored as a JSON column locally; encoded as base64(JSON) in
        remote documents (see horizon.schemas.documents)

    Sessions are never deleted by the engine; abandoned ones are marked
    inactive.
    """

    __tablename__ = "sessions"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        index=True,
    )
    name: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    last_active: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    is_active: bool = True
    participants: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    cloudkit_record_id: str | None = None

    @classmethod
    def open(cls, name: str, *, now: datetime | None = None) -> "CollabSession":
        now = now or utcnow()
        return cls(name=name, created_at=now, last_active=now, participants=[])

    def has_participant(self, device_id: str) -> bool:
        return device_id in (self.participants or [])

    def add_participant(self, device_id: str) -> bool:
        """
        Append `device_id` unless already present.

        Returns True if membership changed. The list is replaced rather than
        mutated so SQLAlchemy sees the change.
        """
        if self.has_participant(device_id):
            return False
        self.participants = [*(self.participants or []), device_id]
        return True

    def touch(self, now: datetime | None = None) -> None:
        self.last_active = now or utcnow()
