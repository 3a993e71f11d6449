# horizon/models/position.py
import uuid
from datetime import datetime

from sqlmodel import SQLModel, Field

from horizon.models.types import UTCDateTime, utcnow


class DevicePosition(SQLModel, table=True):
    """
    One 3D pose sample of a device inside a session.

    Samples are append-only: the repository exposes insert and prune,
    never update.
    """

    __tablename__ = "device_positions"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        index=True,
    )
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    # Rotation around the Y axis
    rotation: float = 0.0
    device_id: str = Field(index=True)
    session_id: str = Field(index=True)
    timestamp: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)

    @classmethod
    def record(
        cls,
        *,
        x: float,
        y: float,
        z: float,
        rotation: float,
        device_id: str,
        session_id: str,
        now: datetime | None = None,
    ) -> "DevicePosition":
        return cls(
            x=x,
            y=y,
            z=z,
            rotation=rotation,
            device_id=device_id,
            session_id=session_id,
            timestamp=now or utcnow(),
        )
