"""In-memory stand-ins for the cloud backends and the clock."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from horizon.core.errors import CloudKitSyncError, RemoteSyncError
from horizon.models.session import CollabSession
from horizon.models.user import User
from horizon.schemas.documents import session_to_document, user_to_document
from horizon.services.cloudkit_sync import (
    CloudKitResult,
    create_position_record,
    create_session_record,
    create_user_record,
)
from horizon.services.remote_sync import SessionUpdated, SyncStatus, UserUpdated

DEVICE_ID = "ABCDEFGH-1111-2222-3333-444455556666"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRemote:
    """In-memory stand-in for the Supabase sync client."""

    def __init__(self, fail: bool = False):
        self.events: asyncio.Queue = asyncio.Queue()
        self.is_online = True
        self.sync_status = SyncStatus.IDLE
        self.last_error: str | None = None
        self.fail = fail

        self.calls: list[str] = []
        self.saved_users: list[dict] = []
        self.saved_sessions: list[dict] = []
        self.deleted_users: list[str] = []
        self.subscribed_sessions: list[str] = []
        self.remote_user: User | None = None
        self.remote_sessions: list[CollabSession] = []
        self.avatar_url = "https://example.supabase.co/storage/v1/object/public/avatars/a.png"
        self.closed = False

    @property
    def is_initialized(self) -> bool:
        return True

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        if self.fail:
            self.sync_status = SyncStatus.FAILED
            raise RemoteSyncError(operation, RuntimeError("backend unavailable"))
        self.sync_status = SyncStatus.COMPLETED

    async def sign_in_anonymously(self) -> str | None:
        self._call("sign_in_anonymously")
        return "anon-user"

    async def save_user(self, user: User) -> None:
        self._call("save_user")
        self.saved_users.append(user_to_document(user))

    async def fetch_user(self) -> User | None:
        self._call("fetch_user")
        return self.remote_user

    async def delete_user(self, user: User) -> None:
        self._call("delete_user")
        self.deleted_users.append(user.id)

    async def save_session(self, session: CollabSession) -> None:
        self._call("save_session")
        self.saved_sessions.append(session_to_document(session))

    async def fetch_sessions(self) -> list[CollabSession]:
        self._call("fetch_sessions")
        return list(self.remote_sessions)

    async def subscribe_to_session_updates(self, session_id: str) -> None:
        self._call("subscribe_session")
        self.subscribed_sessions.append(session_id)

    async def subscribe_to_user_updates(self) -> None:
        self._call("subscribe_user")

    async def upload_avatar(self, user_id: str, data: bytes, content_type: str) -> str | None:
        self._call("upload_avatar")
        return self.avatar_url

    async def sync_data(self) -> None:
        user = await self.fetch_user()
        if user is not None:
            self.events.put_nowait(UserUpdated(user))
        for session in await self.fetch_sessions():
            self.events.put_nowait(SessionUpdated(session))

    async def check_connectivity(self) -> bool:
        return self.is_online

    async def close(self) -> None:
        self.closed = True


class FakeCloudKit:
    """Records every CloudKit write; each write succeeds or fails on `ok`."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.is_online = True
        self.records: list[dict] = []
        self.deleted: list[tuple[str, str]] = []
        self.closed = False
        self._tasks: set[asyncio.Task] = set()

    def _result(self, record: dict) -> CloudKitResult:
        return CloudKitResult(
            ok=self.ok,
            record_name=record["recordName"],
            attempts=1 if self.ok else 4,
            error=None if self.ok else CloudKitSyncError("CloudKit unavailable"),
        )

    def _schedule(self, record: dict, on_result) -> asyncio.Task:
        async def run() -> CloudKitResult:
            self.records.append(record)
            result = self._result(record)
            if on_result is not None:
                on_result(result)
            return result

        task = asyncio.get_running_loop().create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def sync_record(self, user, on_result=None) -> asyncio.Task:
        return self._schedule(create_user_record(user), on_result)

    def sync_session(self, session, on_result=None) -> asyncio.Task:
        return self._schedule(create_session_record(session), on_result)

    def sync_position(self, position, on_result=None) -> asyncio.Task:
        return self._schedule(create_position_record(position), on_result)

    async def save_with_retry(self, record: dict) -> CloudKitResult:
        self.records.append(record)
        return self._result(record)

    async def delete_record(self, record_type: str, record_name: str) -> None:
        self.deleted.append((record_type, record_name))

    async def check_connectivity(self) -> bool:
        return self.is_online

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        self.closed = True
