# horizon/services/remote_sync.py
"""
Remote document store client (Supabase).

Documents:
  - `users` / `sessions` tables, one row per entity keyed by `id`
  - each row carries `ownerId` = the (anonymous) auth user id, used for
    lookups and realtime filters
  - row contents follow horizon.schemas.documents

Push updates are decoded and delivered as typed events on `self.events`
(asyncio.Queue). The sync engine is the only consumer.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from supabase import AsyncClient

from horizon.core.config import Settings
from horizon.core.errors import DocumentError, RemoteSyncError
from horizon.core.storage_utils import avatar_path, delete_public_url, upload_to_storage
from horizon.models.session import CollabSession
from horizon.models.user import User
from horizon.schemas.documents import (
    session_from_document,
    session_to_document,
    user_from_document,
    user_to_document,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

OWNER_FIELD = "ownerId"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class UserUpdated:
    user: User


@dataclass(frozen=True)
class SessionUpdated:
    session: CollabSession


RemoteEvent = UserUpdated | SessionUpdated


class RemoteBackend(Protocol):
    """What the sync engine needs from a remote document store."""

    events: asyncio.Queue
    is_online: bool
    sync_status: SyncStatus
    last_error: str | None

    @property
    def is_initialized(self) -> bool: ...

    async def sign_in_anonymously(self) -> str | None: ...

    async def save_user(self, user: User) -> None: ...

    async def fetch_user(self) -> User | None: ...

    async def delete_user(self, user: User) -> None: ...

    async def save_session(self, session: CollabSession) -> None: ...

    async def fetch_sessions(self) -> list[CollabSession]: ...

    async def subscribe_to_session_updates(self, session_id: str) -> None: ...

    async def subscribe_to_user_updates(self) -> None: ...

    async def upload_avatar(self, user_id: str, data: bytes, content_type: str) -> str | None: ...

    async def sync_data(self) -> None: ...

    async def check_connectivity(self) -> bool: ...

    async def close(self) -> None: ...


def _extract_record(payload: Any) -> dict[str, Any] | None:
    """Pull the changed row out of a realtime postgres_changes payload."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data", payload)
    if not isinstance(data, dict):
        return None
    record = data.get("record") or data.get("new")
    if isinstance(record, dict) and record:
        return record
    return None


class SupabaseSyncClient:
    """
    Uploads / downloads entity documents and relays realtime changes.

    Behaviour:
      - client is None -> not initialized: writes are successful no-ops and
        fetches return nothing
      - anonymous-first auth: the first write signs in anonymously when no
        auth session exists
      - every backend failure is logged and raised as RemoteSyncError;
        callers that already saved locally swallow it
    """

    def __init__(
        self,
        client: AsyncClient | None,
        settings: Settings,
        events: asyncio.Queue | None = None,
    ):
        self._client = client
        self.users_table = settings.SUPABASE_USERS_TABLE
        self.sessions_table = settings.SUPABASE_SESSIONS_TABLE
        self.avatar_bucket = settings.SUPABASE_AVATAR_BUCKET

        self.events: asyncio.Queue = events if events is not None else asyncio.Queue()
        self.is_online = False
        self.sync_status = SyncStatus.IDLE
        self.last_error: str | None = None

        self._owner_id: str | None = None
        self._channels: dict[str, Any] = {}

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    @property
    def owner_id(self) -> str | None:
        return self._owner_id

    # ----- Helpers -----

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run one backend operation, tracking sync_status and wrapping errors."""
        self.sync_status = SyncStatus.SYNCING
        try:
            result = await fn()
        except RemoteSyncError as e:
            self.sync_status = SyncStatus.FAILED
            self.last_error = str(e)
            raise
        except Exception as e:
            self.sync_status = SyncStatus.FAILED
            self.last_error = str(e)
            logger.error("Supabase %s failed: %s", operation, e)
            raise RemoteSyncError(operation, e) from e
        self.sync_status = SyncStatus.COMPLETED
        self.last_error = None
        return result

    async def _current_owner(self) -> str | None:
        """Auth user id of the existing session, without signing in."""
        if self._owner_id:
            return self._owner_id
        session = await self._client.auth.get_session()
        if session is not None and session.user is not None:
            self._owner_id = session.user.id
        return self._owner_id

    async def _ensure_authenticated(self) -> str:
        owner = await self._current_owner()
        if owner:
            return owner
        owner = await self.sign_in_anonymously()
        if not owner:
            raise RemoteSyncError("sign_in_anonymously")
        return owner

    # ----- Authentication -----

    async def sign_in_anonymously(self) -> str | None:
        """Create an anonymous identity; returns its auth user id."""
        if not self.is_initialized:
            return None

        async def op() -> str | None:
            response = await self._client.auth.sign_in_anonymously()
            if response.user is None:
                raise RemoteSyncError("sign_in_anonymously")
            self._owner_id = response.user.id
            logger.info("Anonymous sign-in successful")
            return self._owner_id

        return await self._call("sign_in_anonymously", op)

    # ----- Users -----

    async def save_user(self, user: User) -> None:
        """Upsert the user's document (sparse: absent optionals are omitted)."""
        if not self.is_initialized:
            return

        async def op() -> None:
            owner = await self._ensure_authenticated()
            document = user_to_document(user)
            document[OWNER_FIELD] = owner
            await self._client.table(self.users_table).upsert(document).execute()

        await self._call("save_user", op)
        logger.info("User saved to Supabase: %s", user.username)

    async def fetch_user(self) -> User | None:
        """Return the signed-in owner's user document, or None."""
        if not self.is_initialized:
            return None

        async def op() -> User | None:
            owner = await self._current_owner()
            if owner is None:
                return None
            response = await (
                self._client.table(self.users_table)
                .select("*")
                .eq(OWNER_FIELD, owner)
                .limit(1)
                .execute()
            )
            rows = response.data or []
            if not rows:
                return None
            return user_from_document(rows[0])

        user = await self._call("fetch_user", op)
        if user is not None:
            logger.info("User fetched from Supabase: %s", user.username)
        return user

    async def delete_user(self, user: User) -> None:
        """Delete the user document, the owner's sessions and the avatar object."""
        if not self.is_initialized:
            return

        async def op() -> None:
            owner = await self._current_owner()
            await self._client.table(self.users_table).delete().eq("id", user.id).execute()
            if owner:
                await (
                    self._client.table(self.sessions_table)
                    .delete()
                    .eq(OWNER_FIELD, owner)
                    .execute()
                )
            if user.avatar_url:
                await delete_public_url(self._client, self.avatar_bucket, user.avatar_url)

        await self._call("delete_user", op)
        logger.info("User deleted from Supabase: %s", user.username)

    # ----- Sessions -----

    async def save_session(self, session: CollabSession) -> None:
        if not self.is_initialized:
            return

        async def op() -> None:
            owner = await self._ensure_authenticated()
            document = session_to_document(session)
            document[OWNER_FIELD] = owner
            await self._client.table(self.sessions_table).upsert(document).execute()

        await self._call("save_session", op)
        logger.info("Session saved to Supabase: %s", session.name)

    async def fetch_sessions(self) -> list[CollabSession]:
        """All sessions owned by the signed-in user; undecodable rows are skipped."""
        if not self.is_initialized:
            return []

        async def op() -> list[CollabSession]:
            owner = await self._current_owner()
            if owner is None:
                return []
            response = await (
                self._client.table(self.sessions_table)
                .select("*")
                .eq(OWNER_FIELD, owner)
                .execute()
            )
            sessions = []
            for row in response.data or []:
                try:
                    sessions.append(session_from_document(row))
                except DocumentError as e:
                    logger.warning("Skipping session document %s: %s", row.get("id"), e)
            return sessions

        sessions = await self._call("fetch_sessions", op)
        logger.info("Fetched %d sessions from Supabase", len(sessions))
        return sessions

    # ----- Storage -----

    async def upload_avatar(self, user_id: str, data: bytes, content_type: str) -> str | None:
        """Upload an avatar image; returns its public URL (None when not initialized)."""
        if not self.is_initialized:
            return None

        async def op() -> str:
            await self._ensure_authenticated()
            path = avatar_path(user_id, content_type)
            return await upload_to_storage(
                self._client, self.avatar_bucket, path, data, content_type
            )

        url = await self._call("upload_avatar", op)
        logger.info("Avatar uploaded for user %s", user_id)
        return url

    # ----- Realtime -----

    async def subscribe_to_session_updates(self, session_id: str) -> None:
        """Deliver remote changes of `session_id` as SessionUpdated events."""
        if not self.is_initialized:
            return
        key = f"session_{session_id}"
        if key in self._channels:
            return

        async def op() -> None:
            channel = self._client.channel(f"session-{session_id}")
            channel.on_postgres_changes(
                event="*",
                schema="public",
                table=self.sessions_table,
                filter=f"id=eq.{session_id}",
                callback=self._on_session_change,
            )
            await channel.subscribe()
            self._channels[key] = channel

        await self._call("subscribe_session", op)
        logger.info("Listening for updates to session %s", session_id)

    async def subscribe_to_user_updates(self) -> None:
        """Deliver remote changes of the owner's user document as UserUpdated events."""
        if not self.is_initialized or "user" in self._channels:
            return

        async def op() -> None:
            owner = await self._current_owner()
            if owner is None:
                return
            channel = self._client.channel(f"user-{owner}")
            channel.on_postgres_changes(
                event="*",
                schema="public",
                table=self.users_table,
                filter=f"{OWNER_FIELD}=eq.{owner}",
                callback=self._on_user_change,
            )
            await channel.subscribe()
            self._channels["user"] = channel

        await self._call("subscribe_user", op)

    def _on_user_change(self, payload: Any) -> None:
        record = _extract_record(payload)
        if record is None:
            return
        try:
            user = user_from_document(record)
        except DocumentError as e:
            logger.error("Failed to parse user update: %s", e)
            return
        self.events.put_nowait(UserUpdated(user))

    def _on_session_change(self, payload: Any) -> None:
        record = _extract_record(payload)
        if record is None:
            return
        try:
            session = session_from_document(record)
        except DocumentError as e:
            logger.error("Failed to parse session update: %s", e)
            return
        self.events.put_nowait(SessionUpdated(session))

    async def remove_listener(self, key: str) -> None:
        channel = self._channels.pop(key, None)
        if channel is not None:
            await self._client.remove_channel(channel)

    # ----- Full sync / connectivity -----

    async def sync_data(self) -> None:
        """Pull the user and all sessions, delivering them as events."""
        if not self.is_initialized:
            return
        user = await self.fetch_user()
        if user is not None:
            self.events.put_nowait(UserUpdated(user))
        for session in await self.fetch_sessions():
            self.events.put_nowait(SessionUpdated(session))
        logger.info("Data sync completed successfully")

    async def check_connectivity(self) -> bool:
        """Cheap read against the users table; updates `is_online`."""
        if not self.is_initialized:
            self.is_online = False
            return False
        try:
            await self._client.table(self.users_table).select("id").limit(1).execute()
        except Exception as e:
            logger.debug("Supabase connectivity probe failed: %s", e)
            self.is_online = False
        else:
            self.is_online = True
        return self.is_online

    async def close(self) -> None:
        for key in list(self._channels):
            try:
                await self.remove_listener(key)
            except Exception as e:
                logger.warning("Failed to remove listener %s: %s", key, e)
