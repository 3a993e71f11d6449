# horizon/services/cloudkit_sync.py
"""
Secondary backend: CloudKit Web Services.

Records are written to the private database with `forceReplace`, so a
retried write is idempotent. Writes are best-effort: `sync_record`
schedules a background task and reports the outcome through a callback.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import httpx

from horizon.core.config import Settings
from horizon.core.errors import CloudKitSyncError
from horizon.models.position import DevicePosition
from horizon.models.session import CollabSession
from horizon.models.user import User

logger = logging.getLogger(__name__)

USER_RECORD_TYPE = "User"
SESSION_RECORD_TYPE = "Session"
POSITION_RECORD_TYPE = "DevicePosition"

Record = dict[str, Any]


# ----- Record builders -----


def _timestamp(value: datetime) -> dict[str, Any]:
    return {"value": int(value.timestamp() * 1000), "type": "TIMESTAMP"}


def _field(value: Any) -> dict[str, Any] | None:
    """CloudKit field value; None for absent optionals."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _timestamp(value)
    if isinstance(value, bool):
        return {"value": int(value), "type": "INT64"}
    if isinstance(value, int):
        return {"value": value, "type": "INT64"}
    if isinstance(value, float):
        return {"value": value, "type": "DOUBLE"}
    if isinstance(value, list):
        return {"value": list(value), "type": "STRING_LIST"}
    return {"value": str(value), "type": "STRING"}


def _record(record_type: str, record_name: str, fields: dict[str, Any]) -> Record:
    encoded = {}
    for name, value in fields.items():
        field = _field(value)
        if field is not None:
            encoded[name] = field
    return {"recordType": record_type, "recordName": record_name, "fields": encoded}


def create_user_record(user: User) -> Record:
    """
    Build the CloudKit record for a user.

    Security fields (password hash, tokens, login counters) never leave the
    device through this backend.
    """
    return _record(
        USER_RECORD_TYPE,
        user.id,
        {
            "username": user.username,
            "email": user.email,
            "deviceId": user.device_id,
            "platform": user.platform,
            "createdAt": user.created_at,
            "updatedAt": user.updated_at,
            "isEmailVerified": user.is_email_verified,
            "isActive": user.is_active,
            "lastLoginAt": user.last_login_at,
            "lastActiveAt": user.last_active_at,
            "isPremium": user.is_premium,
            "subscriptionType": user.subscription_type,
            "subscriptionExpiryDate": user.subscription_expiry_date,
            "promoCodeUsed": user.promo_code_used,
            "unlockedScreens": user.unlocked_screens,
            "totalScreens": user.total_screens,
            "adsEnabled": user.ads_enabled,
            "currentSessionId": user.current_session_id,
            "displayName": user.display_name,
            "avatarURL": user.avatar_url,
            "bio": user.bio,
            "preferences": user.preferences,
        },
    )


def create_session_record(session: CollabSession) -> Record:
    return _record(
        SESSION_RECORD_TYPE,
        session.cloudkit_record_id or session.id,
        {
            "sessionId": session.id,
            "name": session.name,
            "createdAt": session.created_at,
            "lastActive": session.last_active,
            "isActive": session.is_active,
            "participants": list(session.participants or []),
        },
    )


def create_position_record(position: DevicePosition) -> Record:
    return _record(
        POSITION_RECORD_TYPE,
        position.id,
        {
            "x": position.x,
            "y": position.y,
            "z": position.z,
            "rotation": position.rotation,
            "deviceId": position.device_id,
            "sessionId": position.session_id,
            "timestamp": position.timestamp,
        },
    )


# ----- Record validators -----


def _has_values(record: Record, record_type: str, names: tuple[str, ...]) -> bool:
    if record.get("recordType") != record_type or not record.get("recordName"):
        return False
    fields = record.get("fields") or {}
    for name in names:
        value = (fields.get(name) or {}).get("value")
        if value is None or value == "":
            return False
    return True


def validate_user_record(record: Record) -> bool:
    return _has_values(record, USER_RECORD_TYPE, ("username", "deviceId", "platform"))


def validate_session_record(record: Record) -> bool:
    return _has_values(record, SESSION_RECORD_TYPE, ("name",))


def validate_position_record(record: Record) -> bool:
    return _has_values(
        record, POSITION_RECORD_TYPE, ("deviceId", "sessionId", "x", "y", "z")
    )


_VALIDATORS = {
    USER_RECORD_TYPE: validate_user_record,
    SESSION_RECORD_TYPE: validate_session_record,
    POSITION_RECORD_TYPE: validate_position_record,
}


def validate_record(record: Record) -> bool:
    """Dispatch on `recordType`; unknown types are invalid."""
    validator = _VALIDATORS.get(record.get("recordType"))
    return validator is not None and validator(record)


# ----- Client -----


@dataclass
class CloudKitResult:
    ok: bool
    record_name: str | None
    attempts: int
    error: Exception | None = None


ResultCallback = Callable[[CloudKitResult], None]


class CloudKitSyncClient:
    """
    Best-effort record writer with bounded linear retry.

    Retry policy:
      - one initial attempt plus up to `max_retries` retries
      - retry k waits k * retry_unit seconds
      - exhaustion is reported through the result callback, never raised
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.base_url = settings.CLOUDKIT_BASE_URL.rstrip("/")
        self.container = settings.CLOUDKIT_CONTAINER
        self.environment = settings.CLOUDKIT_ENVIRONMENT
        self.api_token = settings.CLOUDKIT_API_TOKEN
        self.web_auth_token = settings.CLOUDKIT_WEB_AUTH_TOKEN
        self.timeout = settings.CLOUDKIT_TIMEOUT_SECONDS
        self.max_retries = settings.CLOUDKIT_MAX_RETRIES
        self.retry_unit = settings.CLOUDKIT_RETRY_UNIT_SECONDS

        self.is_online = False
        self.last_error: str | None = None

        self._client = http_client
        self._owns_client = http_client is None
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_configured(self) -> bool:
        return bool(self.container and self.api_token)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    def _path(self, operation: str) -> str:
        return f"/database/1/{self.container}/{self.environment}/private/{operation}"

    def _params(self) -> dict[str, str]:
        params = {"ckAPIToken": self.api_token or ""}
        if self.web_auth_token:
            params["ckWebAuthToken"] = self.web_auth_token
        return params

    # ----- Single attempt -----

    async def _modify(self, operation_type: str, record: Record) -> list[Record]:
        """
        One `records/modify` call carrying a single operation.

        HTTP failures and per-record server errors (other than NOT_FOUND on a
        delete) raise CloudKitSyncError.
        """
        if not self.is_configured:
            raise CloudKitSyncError("CloudKit is not configured")

        body = {"operations": [{"operationType": operation_type, "record": record}]}
        try:
            response = await self._http().post(
                self._path("records/modify"), params=self._params(), json=body
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise CloudKitSyncError(f"CloudKit request failed: {e}") from e
        except ValueError as e:
            raise CloudKitSyncError(f"Invalid CloudKit response: {e}") from e

        records = payload.get("records") or []
        for item in records:
            code = item.get("serverErrorCode")
            if not code:
                continue
            if code == "NOT_FOUND" and operation_type == "forceDelete":
                continue
            raise CloudKitSyncError(f"{code}: {item.get('reason', 'unknown reason')}")
        return records

    async def save_record(self, record: Record) -> Record:
        """Write `record` with forceReplace; returns the record echoed by the server."""
        records = await self._modify("forceReplace", record)
        return records[0] if records else {}

    async def delete_record(self, record_type: str, record_name: str) -> None:
        """A missing record counts as deleted."""
        await self._modify(
            "forceDelete", {"recordType": record_type, "recordName": record_name}
        )
        logger.info("CloudKit record deleted: %s/%s", record_type, record_name)

    # ----- Retry -----

    async def save_with_retry(self, record: Record) -> CloudKitResult:
        """
        Save `record`, retrying transient failures. A record missing its
        required fields is rejected before any request is sent.
        """
        record_name = record.get("recordName")
        if not validate_record(record):
            logger.error("Refusing to sync invalid CloudKit record %s", record_name)
            return CloudKitResult(
                ok=False,
                record_name=record_name,
                attempts=0,
                error=CloudKitSyncError(f"Invalid {record.get('recordType')} record"),
            )

        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = attempt * self.retry_unit
                logger.info(
                    "Retrying CloudKit sync for %s in %.2fs (retry %d/%d)",
                    record_name,
                    delay,
                    attempt,
                    self.max_retries,
                )
                await asyncio.sleep(delay)
            try:
                await self.save_record(record)
            except CloudKitSyncError as e:
                last_error = e
                self.last_error = str(e)
                logger.warning("CloudKit sync error for %s: %s", record_name, e)
                continue

            self.last_error = None
            self.is_online = True
            logger.info("CloudKit sync successful for %s", record_name)
            return CloudKitResult(ok=True, record_name=record_name, attempts=attempt + 1)

        logger.error(
            "CloudKit sync for %s failed after %d retries", record_name, self.max_retries
        )
        return CloudKitResult(
            ok=False,
            record_name=record_name,
            attempts=self.max_retries + 1,
            error=last_error,
        )

    # ----- Background scheduling -----

    def sync_record(
        self, user: User, on_result: ResultCallback | None = None
    ) -> asyncio.Task:
        """
        Schedule a best-effort write of `user`.

        The record is built immediately, so later mutations of `user` do not
        leak into this write. Must be called from a running event loop.
        """
        return self._schedule(create_user_record(user), on_result)

    def sync_session(
        self, session: CollabSession, on_result: ResultCallback | None = None
    ) -> asyncio.Task:
        return self._schedule(create_session_record(session), on_result)

    def sync_position(
        self, position: DevicePosition, on_result: ResultCallback | None = None
    ) -> asyncio.Task:
        return self._schedule(create_position_record(position), on_result)

    def _schedule(self, record: Record, on_result: ResultCallback | None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(record, on_result))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, record: Record, on_result: ResultCallback | None) -> CloudKitResult:
        if not self.is_configured:
            result = CloudKitResult(
                ok=False,
                record_name=record.get("recordName"),
                attempts=0,
                error=CloudKitSyncError("CloudKit is not configured"),
            )
        else:
            result = await self.save_with_retry(record)

        if on_result is not None:
            try:
                on_result(result)
            except Exception as e:
                logger.error("CloudKit result callback failed: %s", e)
        return result

    async def wait_idle(self) -> None:
        """Wait until every scheduled write has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ----- Connectivity / teardown -----

    async def check_connectivity(self) -> bool:
        """Probe `zones/list`; updates `is_online`."""
        if not self.is_configured:
            self.is_online = False
            return False
        try:
            response = await self._http().get(self._path("zones/list"), params=self._params())
            self.is_online = response.is_success
        except httpx.HTTPError as e:
            logger.debug("CloudKit connectivity probe failed: %s", e)
            self.is_online = False
        return self.is_online

    async def close(self) -> None:
        """Cancel pending writes and release the HTTP client."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
