# horizon/schemas/documents.py
"""
Mapping between entities and remote documents.

Wire rules:
  - camelCase field names (`isPremium`, `unlockedScreens`, `avatarURL`, ...)
  - optional fields are omitted when absent, never written as null, so a
    partial upsert cannot blank out server-side values
  - timestamps are ISO-8601 strings with a UTC offset (Postgres timestamptz)
  - session participants are base64(JSON array of device ids)

Decoding is strict about types. Any missing or mistyped field raises
DocumentError naming the entity group; absent optional fields fall back to
the same defaults as the entity constructors.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from horizon.core.errors import DocumentError
from horizon.models.position import DevicePosition
from horizon.models.session import CollabSession
from horizon.models.user import DEFAULT_TOTAL_SCREENS, DEFAULT_UNLOCKED_SCREENS, User

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> Any:
    """
    Convert a backend timestamp to an aware UTC datetime.

    Unparseable values are returned unchanged so strict validation
    reports them as mistyped.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


def encode_participants(device_ids: list[str]) -> str:
    raw = json.dumps(list(device_ids)).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_participants(value: Any) -> list[str]:
    """
    Lenient participants decoding.

    Accepts base64(JSON), bare JSON text, or an already-decoded list.
    Anything else decodes to an empty list.
    """
    decoded: Any = value
    if isinstance(value, str):
        decoded = None
        try:
            decoded = json.loads(base64.b64decode(value, validate=True))
        except (binascii.Error, ValueError):
            try:
                decoded = json.loads(value)
            except ValueError:
                logger.debug("Undecodable participants blob; treating as empty")
                return []

    if isinstance(decoded, list) and all(isinstance(item, str) for item in decoded):
        # Drop duplicates but keep first-seen order
        return list(dict.fromkeys(decoded))
    return []


class _Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        strict=True,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # A null counts as absent: optional fields take their default and
        # required fields are reported missing.
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


# ---------------------------------------------------------------------------
# Document schemas
# ---------------------------------------------------------------------------


class UserDocument(_Document):
    # Required
    id: str
    username: str
    email: str
    password_hash: str
    device_id: str
    platform: str
    created_at: datetime
    updated_at: datetime

    # Always written, defaulted when absent
    is_email_verified: bool = False
    is_active: bool = True
    is_premium: bool = False
    unlocked_screens: int = DEFAULT_UNLOCKED_SCREENS
    total_screens: int = DEFAULT_TOTAL_SCREENS
    ads_enabled: bool = True
    preferences: str = "{}"
    failed_login_attempts: int = 0

    # Written only when present
    email_verification_token: str | None = None
    email_verification_expiry: datetime | None = None
    last_login_at: datetime | None = None
    last_active_at: datetime | None = None
    subscription_type: str | None = None
    subscription_expiry_date: datetime | None = None
    promo_code_used: str | None = None
    current_session_id: str | None = None
    display_name: str | None = None
    avatar_url: str | None = Field(default=None, alias="avatarURL")
    bio: str | None = None
    password_reset_token: str | None = None
    password_reset_expiry: datetime | None = None
    account_locked_until: datetime | None = None

    @field_validator(
        "created_at",
        "updated_at",
        "email_verification_expiry",
        "last_login_at",
        "last_active_at",
        "subscription_expiry_date",
        "password_reset_expiry",
        "account_locked_until",
        mode="before",
    )
    @classmethod
    def _parse_timestamps(cls, value: Any) -> Any:
        return parse_timestamp(value)


class SessionDocument(_Document):
    id: str
    name: str
    created_at: datetime
    last_active: datetime
    is_active: bool = True
    participants: list[str] = Field(default_factory=list)
    cloudkit_record_id: str | None = Field(default=None, alias="cloudKitRecordId")

    @field_validator("created_at", "last_active", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> Any:
        return parse_timestamp(value)

    @field_validator("participants", mode="before")
    @classmethod
    def _decode_participants(cls, value: Any) -> list[str]:
        return decode_participants(value)

    @field_serializer("participants", when_used="json")
    def _encode_participants(self, value: list[str]) -> str:
        return encode_participants(value)


class PositionDocument(_Document):
    id: str
    x: float
    y: float
    z: float
    rotation: float
    device_id: str
    session_id: str
    timestamp: datetime

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> Any:
        return parse_timestamp(value)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


def _validate(schema: type[_Document], group: str, data: Any) -> Any:
    if not isinstance(data, dict):
        raise DocumentError(group, ["<document>"])
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
        raise DocumentError(group, fields) from e


def _dump(document: _Document) -> dict[str, Any]:
    return document.model_dump(mode="json", by_alias=True, exclude_none=True)


def user_to_document(user: User) -> dict[str, Any]:
    return _dump(UserDocument.model_validate(user.model_dump()))


def user_from_document(data: dict[str, Any]) -> User:
    document = _validate(UserDocument, "user", data)
    user = User(**document.model_dump())
    user.set_email(user.email)
    return user


def session_to_document(session: CollabSession) -> dict[str, Any]:
    return _dump(SessionDocument.model_validate(session.model_dump()))


def session_from_document(data: dict[str, Any]) -> CollabSession:
    document = _validate(SessionDocument, "session", data)
    return CollabSession(**document.model_dump())


def position_to_document(position: DevicePosition) -> dict[str, Any]:
    return _dump(PositionDocument.model_validate(position.model_dump()))


def position_from_document(data: dict[str, Any]) -> DevicePosition:
    document = _validate(PositionDocument, "position", data)
    return DevicePosition(**document.model_dump())
