"""Shared pytest fixtures."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from horizon.core.platform import Platform
from horizon.database import build_engine, create_db_and_tables, open_local_session
from horizon.models.user import User
from horizon.repositories.local_store import LocalStore
from horizon.services.sync_engine import HybridSyncEngine

from tests.fakes import DEVICE_ID, FakeCloudKit, FakeRemote, FrozenClock


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_engine():
    engine = build_engine("sqlite://")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def local_session(db_engine):
    session = open_local_session(db_engine)
    yield session
    session.close()


@pytest.fixture
def store(local_session) -> LocalStore:
    return LocalStore(local_session)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def cloudkit() -> FakeCloudKit:
    return FakeCloudKit()


@pytest.fixture
def make_engine(store, clock):
    """Factory: HybridSyncEngine over the in-memory store and frozen clock."""

    def factory(
        platform: Platform = Platform.IOS,
        remote=None,
        cloudkit=None,
        **kwargs,
    ) -> HybridSyncEngine:
        return HybridSyncEngine(
            store,
            platform=platform,
            device_id=kwargs.pop("device_id", DEVICE_ID),
            remote=remote,
            cloudkit=cloudkit,
            clock=clock,
            **kwargs,
        )

    return factory


@pytest.fixture
def sample_user(clock) -> User:
    return User.create(
        username="alice_01",
        email="Alice@Example.com",
        password_hash="hashed-secret",
        device_id="DEVICE-ALICE",
        platform="iOS",
        now=clock(),
    )
