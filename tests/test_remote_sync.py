"""Tests for the Supabase sync client against a mocked AsyncClient."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from horizon.core.config import Settings
from horizon.core.errors import RemoteSyncError
from horizon.models.session import CollabSession
from horizon.models.user import User
from horizon.schemas.documents import session_to_document, user_to_document
from horizon.services.remote_sync import (
    SessionUpdated,
    SupabaseSyncClient,
    SyncStatus,
    UserUpdated,
)

AVATAR_URL = "https://proj.supabase.co/storage/v1/object/public/avatars/avatars/u.png"


def make_supabase(rows: list[dict] | None = None, session_owner: str | None = None):
    """MagicMock shaped like supabase.AsyncClient, with chainable queries."""
    client = MagicMock()

    if session_owner is None:
        client.auth.get_session = AsyncMock(return_value=None)
    else:
        client.auth.get_session = AsyncMock(
            return_value=SimpleNamespace(user=SimpleNamespace(id=session_owner))
        )
    client.auth.sign_in_anonymously = AsyncMock(
        return_value=SimpleNamespace(user=SimpleNamespace(id="anon-1"))
    )

    query = MagicMock()
    for name in ("select", "eq", "limit", "upsert", "delete"):
        getattr(query, name).return_value = query
    query.execute = AsyncMock(return_value=SimpleNamespace(data=rows or []))
    client.table.return_value = query

    channel = MagicMock()
    channel.subscribe = AsyncMock()
    client.channel.return_value = channel
    client.remove_channel = AsyncMock()

    bucket = MagicMock()
    bucket.upload = AsyncMock()
    bucket.get_public_url = AsyncMock(return_value=AVATAR_URL)
    bucket.remove = AsyncMock()
    client.storage.from_.return_value = bucket

    return client


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


class TestUninitialized:
    """Without a client every operation is a quiet no-op."""

    @pytest.mark.anyio
    async def test_operations_are_noops(self, settings, sample_user: User, clock):
        remote = SupabaseSyncClient(None, settings)
        assert remote.is_initialized is False

        await remote.save_user(sample_user)
        await remote.save_session(CollabSession.open("Room", now=clock()))
        await remote.delete_user(sample_user)
        await remote.subscribe_to_user_updates()
        await remote.subscribe_to_session_updates("S1")
        await remote.sync_data()

        assert await remote.fetch_user() is None
        assert await remote.fetch_sessions() == []
        assert await remote.sign_in_anonymously() is None
        assert await remote.upload_avatar(sample_user.id, b"x", "image/png") is None
        assert await remote.check_connectivity() is False
        assert remote.sync_status is SyncStatus.IDLE
        assert remote.events.empty()


class TestWrites:
    @pytest.mark.anyio
    async def test_first_write_signs_in_anonymously(self, settings, sample_user: User):
        client = make_supabase()
        remote = SupabaseSyncClient(client, settings)

        await remote.save_user(sample_user)

        client.auth.sign_in_anonymously.assert_awaited_once()
        assert remote.owner_id == "anon-1"
        client.table.assert_called_with("users")
        document = client.table.return_value.upsert.call_args.args[0]
        assert document["ownerId"] == "anon-1"
        assert document["id"] == sample_user.id
        assert "bio" not in document
        assert remote.sync_status is SyncStatus.COMPLETED

    @pytest.mark.anyio
    async def test_existing_session_skips_sign_in(self, settings, sample_user: User):
        client = make_supabase(session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)

        await remote.save_user(sample_user)
        await remote.save_user(sample_user)

        client.auth.sign_in_anonymously.assert_not_awaited()
        client.auth.get_session.assert_awaited_once()
        assert remote.owner_id == "owner-9"

    @pytest.mark.anyio
    async def test_save_session_upserts_document(self, settings, clock):
        client = make_supabase(session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)
        session = CollabSession.open("Room", now=clock())

        await remote.save_session(session)

        client.table.assert_called_with("sessions")
        document = client.table.return_value.upsert.call_args.args[0]
        assert document["name"] == "Room"
        assert document["ownerId"] == "owner-9"

    @pytest.mark.anyio
    async def test_backend_failure_raises_remote_sync_error(self, settings, sample_user: User):
        client = make_supabase(session_owner="owner-9")
        client.table.return_value.execute.side_effect = RuntimeError("503 from PostgREST")
        remote = SupabaseSyncClient(client, settings)

        with pytest.raises(RemoteSyncError) as exc:
            await remote.save_user(sample_user)

        assert exc.value.operation == "save_user"
        assert isinstance(exc.value.cause, RuntimeError)
        assert remote.sync_status is SyncStatus.FAILED
        assert "503" in remote.last_error

    @pytest.mark.anyio
    async def test_delete_user_removes_sessions_and_avatar(self, settings, sample_user: User):
        client = make_supabase(session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)
        sample_user.avatar_url = AVATAR_URL

        await remote.delete_user(sample_user)

        tables = [c.args[0] for c in client.table.call_args_list]
        assert tables == ["users", "sessions"]
        query = client.table.return_value
        query.eq.assert_any_call("id", sample_user.id)
        query.eq.assert_any_call("ownerId", "owner-9")
        client.storage.from_.return_value.remove.assert_awaited_once_with(["avatars/u.png"])

    @pytest.mark.anyio
    async def test_upload_avatar_returns_public_url(self, settings):
        client = make_supabase(session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)

        url = await remote.upload_avatar("u", b"png-bytes", "image/png")

        assert url == AVATAR_URL
        bucket = client.storage.from_.return_value
        path, data, options = bucket.upload.call_args.args
        assert path == "avatars/u.png"
        assert data == b"png-bytes"
        assert options["content-type"] == "image/png"


class TestReads:
    @pytest.mark.anyio
    async def test_fetch_user_decodes_row(self, settings, sample_user: User):
        row = user_to_document(sample_user) | {"ownerId": "owner-9"}
        client = make_supabase(rows=[row], session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)

        user = await remote.fetch_user()

        assert user.id == sample_user.id
        assert user.username == "alice_01"
        client.table.return_value.eq.assert_called_with("ownerId", "owner-9")

    @pytest.mark.anyio
    async def test_fetch_user_without_auth_session_returns_none(self, settings):
        client = make_supabase()
        remote = SupabaseSyncClient(client, settings)

        assert await remote.fetch_user() is None
        client.auth.sign_in_anonymously.assert_not_awaited()

    @pytest.mark.anyio
    async def test_fetch_user_with_bad_document_fails(self, settings):
        client = make_supabase(rows=[{"id": "x"}], session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)

        with pytest.raises(RemoteSyncError):
            await remote.fetch_user()
        assert remote.sync_status is SyncStatus.FAILED

    @pytest.mark.anyio
    async def test_fetch_sessions_skips_undecodable_rows(self, settings, clock):
        good = session_to_document(CollabSession.open("Room", now=clock()))
        client = make_supabase(rows=[good, {"id": "broken"}], session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)

        sessions = await remote.fetch_sessions()

        assert [s.name for s in sessions] == ["Room"]

    @pytest.mark.anyio
    async def test_sync_data_emits_events(self, settings, sample_user: User, clock):
        client = make_supabase(session_owner="owner-9")
        user_row = user_to_document(sample_user)
        session_row = session_to_document(CollabSession.open("Room", now=clock()))
        client.table.return_value.execute.side_effect = [
            SimpleNamespace(data=[user_row]),
            SimpleNamespace(data=[session_row]),
        ]
        remote = SupabaseSyncClient(client, settings)

        await remote.sync_data()

        first = remote.events.get_nowait()
        second = remote.events.get_nowait()
        assert isinstance(first, UserUpdated)
        assert first.user.id == sample_user.id
        assert isinstance(second, SessionUpdated)
        assert second.session.name == "Room"

    @pytest.mark.anyio
    async def test_connectivity(self, settings):
        client = make_supabase()
        remote = SupabaseSyncClient(client, settings)
        assert await remote.check_connectivity() is True
        assert remote.is_online is True

        client.table.return_value.execute.side_effect = ConnectionError("offline")
        assert await remote.check_connectivity() is False
        assert remote.is_online is False


class TestRealtime:
    @pytest.mark.anyio
    async def test_session_subscription_queues_updates(self, settings, clock):
        client = make_supabase(session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)

        await remote.subscribe_to_session_updates("S1")
        await remote.subscribe_to_session_updates("S1")

        client.channel.assert_called_once_with("session-S1")
        channel = client.channel.return_value
        channel.subscribe.assert_awaited_once()
        kwargs = channel.on_postgres_changes.call_args.kwargs
        assert kwargs["table"] == "sessions"
        assert kwargs["filter"] == "id=eq.S1"

        session = CollabSession.open("Remote room", now=clock())
        kwargs["callback"]({"data": {"record": session_to_document(session)}})

        event = remote.events.get_nowait()
        assert isinstance(event, SessionUpdated)
        assert event.session.id == session.id

    @pytest.mark.anyio
    async def test_user_subscription_filters_by_owner(self, settings, sample_user: User):
        client = make_supabase(session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)

        await remote.subscribe_to_user_updates()

        kwargs = client.channel.return_value.on_postgres_changes.call_args.kwargs
        assert kwargs["filter"] == "ownerId=eq.owner-9"
        kwargs["callback"]({"data": {"new": user_to_document(sample_user)}})
        assert remote.events.get_nowait().user.id == sample_user.id

    @pytest.mark.anyio
    async def test_malformed_payloads_are_dropped(self, settings):
        client = make_supabase(session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)
        await remote.subscribe_to_user_updates()
        callback = client.channel.return_value.on_postgres_changes.call_args.kwargs["callback"]

        callback("not a dict")
        callback({"data": {"record": {}}})
        callback({"data": {"record": {"id": "missing-everything"}}})

        assert remote.events.empty()

    @pytest.mark.anyio
    async def test_close_removes_channels(self, settings):
        client = make_supabase(session_owner="owner-9")
        remote = SupabaseSyncClient(client, settings)
        await remote.subscribe_to_user_updates()
        await remote.subscribe_to_session_updates("S1")

        await remote.close()

        assert client.remove_channel.await_count == 2
