# horizon/services/sync_engine.py
"""
Hybrid sync engine: one current user / current session, three backends.

Write ordering (every mutating operation):
  1. mutate the entity in memory
  2. LocalStore.save(); a LocalStorageError fails the operation
  3. best-effort propagation in background tasks:
       - remote document store (if the platform has one)
       - CloudKit (if online)
     failures are logged and only show up in `sync_status` / `last_sync_error`

Concurrency:
  All state mutations run on the event loop thread, in synchronous code
  between awaits. Remote push events arrive on the remote client's queue
  and are applied by a single consumer task, so merges never interleave
  with writes.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Coroutine

from horizon.core.errors import (
    CloudKitSyncError,
    DocumentError,
    HorizonError,
    LocalStorageError,
    RemoteSyncError,
)
from horizon.core.observable import StateObserver
from horizon.core.platform import Backend, Platform, available_backends, promo_codes_for
from horizon.models.position import DevicePosition
from horizon.models.session import CollabSession
from horizon.models.types import utcnow
from horizon.models.user import DEFAULT_UNLOCKED_SCREENS, User
from horizon.repositories.local_store import LocalStore
from horizon.services.cloudkit_sync import (
    USER_RECORD_TYPE,
    CloudKitResult,
    CloudKitSyncClient,
    create_user_record,
)
from horizon.services.remote_sync import (
    RemoteBackend,
    RemoteEvent,
    SessionUpdated,
    SyncStatus,
    UserUpdated,
)

logger = logging.getLogger(__name__)

OFFLINE_MODE_MESSAGE = "Using offline mode due to data storage issues"
PREMIUM_FAILED_MESSAGE = "Failed to activate premium"


class EngineState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    CREATING = "creating"
    LOADED = "loaded"
    SYNCING = "syncing"


@dataclass(frozen=True)
class PublishedState:
    """Snapshot handed to observers after every mutation."""

    current_user: User | None
    current_session: CollabSession | None
    is_premium: bool
    unlocked_screens: int
    is_loading: bool
    error_message: str | None
    sync_status: SyncStatus
    last_sync_error: str | None
    is_online: bool
    lifecycle: EngineState
    local_store_available: bool


class HybridSyncEngine:
    """
    Orchestrates the local store, the remote document store and CloudKit.

    Responsibilities:
      - load or create the current user for this device
      - local-first writes with best-effort cloud propagation
      - merge remote user / session changes (periodic and push-driven)
      - premium gating and session membership

    Backends are injected. Passing a backend the platform does not have
    raises ValueError.
    """

    def __init__(
        self,
        store: LocalStore,
        *,
        platform: Platform,
        device_id: str,
        remote: RemoteBackend | None = None,
        cloudkit: CloudKitSyncClient | None = None,
        sync_interval: float = 300.0,
        connectivity_interval: float = 30.0,
        position_retention: int = 500,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backends = available_backends(platform)
        if remote is not None and Backend.REMOTE not in self.backends:
            raise ValueError(f"Remote document store is not available on {platform.value}")
        if cloudkit is not None and Backend.APPLE_ECOSYSTEM not in self.backends:
            raise ValueError(f"CloudKit is not available on {platform.value}")

        self.store = store
        self.platform = platform
        self.device_id = device_id
        self.remote = remote
        self.cloudkit = cloudkit
        self.sync_interval = sync_interval
        self.connectivity_interval = connectivity_interval
        self.position_retention = position_retention
        self.clock = clock

        # ----- Published state -----
        self.current_user: User | None = None
        self.current_session: CollabSession | None = None
        self.is_loading = False
        self.error_message: str | None = None
        self.sync_status = SyncStatus.IDLE
        self.last_sync_error: str | None = None
        self.is_online = False
        self.lifecycle = EngineState.UNLOADED
        self.local_store_available = True

        self.observers = StateObserver()
        self.last_sync_time: datetime | None = None

        self._background: set[asyncio.Task] = set()
        self._loops: list[asyncio.Task] = []

    # ----- Published state -----

    @property
    def is_premium(self) -> bool:
        return self.current_user.is_premium if self.current_user else False

    @property
    def unlocked_screens(self) -> int:
        if self.current_user is None:
            return DEFAULT_UNLOCKED_SCREENS
        return self.current_user.unlocked_screens

    def state(self) -> PublishedState:
        return PublishedState(
            current_user=self.current_user,
            current_session=self.current_session,
            is_premium=self.is_premium,
            unlocked_screens=self.unlocked_screens,
            is_loading=self.is_loading,
            error_message=self.error_message,
            sync_status=self.sync_status,
            last_sync_error=self.last_sync_error,
            is_online=self.is_online,
            lifecycle=self.lifecycle,
            local_store_available=self.local_store_available,
        )

    def _publish(self) -> None:
        self.observers.notify(self.state())

    # ----- Lifecycle -----

    async def start(self) -> None:
        """Load the current user and start the background loops."""
        self.load_current_user()
        self._loops.append(asyncio.create_task(self._connectivity_loop()))
        self._loops.append(asyncio.create_task(self._periodic_loop()))
        if self.remote is not None:
            self._loops.append(asyncio.create_task(self._consume_events()))
        logger.info(
            "Sync engine started (platform=%s, backends=%s)",
            self.platform.value,
            sorted(b.value for b in self.backends),
        )

    async def close(self) -> None:
        """Stop the loops, cancel pending propagation and release clients."""
        tasks = [*self._loops, *self._background]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()
        self._background.clear()

        if self.remote is not None:
            await self.remote.close()
        if self.cloudkit is not None:
            await self.cloudkit.close()
        logger.info("Sync engine stopped")

    def load_current_user(self) -> User:
        """
        UNLOADED -> LOADING -> {LOADED | CREATING -> LOADED}.

        A local store that cannot be queried (or cannot persist the new
        default user) leaves the engine on an in-memory user in offline mode.
        """
        self.lifecycle = EngineState.LOADING
        self.is_loading = True
        self._publish()

        try:
            user = self.store.find_user_by_device_id(self.device_id)
        except LocalStorageError as e:
            logger.error("Error loading user: %s", e)
            return self._adopt_minimal_user()

        if user is not None:
            self.current_user = user
            logger.info("Loaded existing user: %s", user.username)
            self._restore_session(user)
        else:
            self.lifecycle = EngineState.CREATING
            self._publish()
            user = self._default_user()
            self.store.insert(user)
            try:
                self.store.save()
            except LocalStorageError as e:
                logger.error("Error creating user: %s", e)
                return self._adopt_minimal_user()
            self.current_user = user
            logger.info("Created new user: %s", user.username)

        self.lifecycle = EngineState.LOADED
        self.is_loading = False
        self._publish()
        self._spawn(self._initial_remote_sync(user))
        return user

    def _default_user(self) -> User:
        username = f"User_{self.device_id[:8]}"
        return User.create(
            username=username,
            email=f"{username.lower()}@example.com",
            password_hash="",
            device_id=self.device_id,
            platform=self.platform.value,
            now=self.clock(),
        )

    def _adopt_minimal_user(self) -> User:
        """In-memory fallback when the local store is unusable."""
        self.store.discard()
        user = self._default_user()
        self.current_user = user
        self.local_store_available = False
        self.error_message = OFFLINE_MODE_MESSAGE
        self.lifecycle = EngineState.LOADED
        self.is_loading = False
        logger.warning("Created minimal user due to local storage issues: %s", user.username)
        self._publish()
        return user

    def _restore_session(self, user: User) -> None:
        if not user.current_session_id:
            return
        try:
            self.current_session = self.store.get_session(user.current_session_id)
        except LocalStorageError as e:
            logger.error("Error restoring session %s: %s", user.current_session_id, e)

    async def _initial_remote_sync(self, user: User) -> None:
        if self.remote is None:
            return
        try:
            await self.remote.save_user(user)
            await self.remote.subscribe_to_user_updates()
            if self.current_session is not None:
                await self.remote.subscribe_to_session_updates(self.current_session.id)
        except HorizonError as e:
            self._record_remote_failure("initial sync", e)
            return
        self._record_remote_success()

    # ----- Background plumbing -----

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_for_background(self) -> None:
        """Wait for every pending propagation task (remote and CloudKit)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self.cloudkit is not None:
            await self.cloudkit.wait_idle()

    def _record_remote_failure(self, operation: str, error: Exception) -> None:
        logger.warning("Remote %s failed: %s", operation, error)
        self.sync_status = SyncStatus.FAILED
        self.last_sync_error = str(error)
        self._publish()

    def _record_remote_success(self) -> None:
        self.sync_status = SyncStatus.COMPLETED
        self.last_sync_error = None
        self._publish()

    def _on_cloudkit_result(self, result: CloudKitResult) -> None:
        if result.ok:
            logger.info("Record synced to CloudKit: %s", result.record_name)
            return
        error = result.error or CloudKitSyncError("CloudKit sync failed")
        self._record_remote_failure(f"CloudKit sync of {result.record_name}", error)

    def _propagate_user(self, user: User) -> None:
        if self.remote is not None:
            self._spawn(self._remote_save_user(user))
        if self.cloudkit is not None and self.is_online:
            self.cloudkit.sync_record(user, on_result=self._on_cloudkit_result)

    def _propagate_session(self, session: CollabSession) -> None:
        if self.remote is not None:
            self._spawn(self._remote_share_session(session))
        if self.cloudkit is not None and self.is_online:
            self.cloudkit.sync_session(session, on_result=self._on_cloudkit_result)

    async def _remote_save_user(self, user: User) -> None:
        try:
            await self.remote.save_user(user)
        except HorizonError as e:
            self._record_remote_failure("user save", e)
            return
        self._record_remote_success()

    async def _remote_share_session(self, session: CollabSession) -> None:
        try:
            await self.remote.save_session(session)
            await self.remote.subscribe_to_session_updates(session.id)
        except HorizonError as e:
            self._record_remote_failure("session save", e)
            return
        self._record_remote_success()

    async def _remote_delete_user(self, user: User) -> None:
        try:
            await self.remote.delete_user(user)
        except HorizonError as e:
            self._record_remote_failure("user deletion", e)
            return
        self._record_remote_success()

    async def _cloudkit_delete_user(self, user: User) -> None:
        try:
            await self.cloudkit.delete_record(USER_RECORD_TYPE, user.id)
        except CloudKitSyncError as e:
            self._record_remote_failure("CloudKit user deletion", e)

    def _save_local(self, failure_message: str | None = None) -> None:
        try:
            self.store.save()
        except LocalStorageError as e:
            self.error_message = failure_message or str(e)
            self._publish()
            raise

    # ----- Users -----

    async def save_user(self, user: User) -> None:
        """
        Persist `user` locally, then propagate in the background.

        Raises:
            LocalStorageError: the local save failed; nothing was propagated.
        """
        user.updated_at = self.clock()
        self.store.insert(user)
        self._save_local()
        logger.info("User saved locally: %s", user.username)
        self._publish()
        self._propagate_user(user)

    async def delete_user(self, user: User) -> None:
        """
        Delete locally first (fatal on failure), then cascade to every
        available backend independently.
        """
        try:
            self.store.delete(user)
        except LocalStorageError as e:
            self.store.discard()
            self.error_message = str(e)
            self._publish()
            raise
        self._save_local()
        logger.info("User deleted locally: %s", user.username)

        if self.current_user is not None and self.current_user.id == user.id:
            self.current_user = None
        self._publish()

        if self.remote is not None:
            self._spawn(self._remote_delete_user(user))
        if self.cloudkit is not None and self.is_online:
            self._spawn(self._cloudkit_delete_user(user))

    def find_user_by_email(self, email: str) -> User | None:
        return self.store.find_user_by_email(email)

    def find_user_by_username(self, username: str) -> User | None:
        return self.store.find_user_by_username(username)

    def find_user_by_reset_token(self, token: str) -> User | None:
        return self.store.find_user_by_reset_token(token)

    async def update_avatar(self, data: bytes, content_type: str) -> str | None:
        """
        Upload an avatar to remote object storage and store its URL.

        Returns None when there is no current user or no remote store.
        Upload failures raise RemoteSyncError: nothing was saved locally yet.
        """
        user = self.current_user
        if user is None or self.remote is None:
            return None
        url = await self.remote.upload_avatar(user.id, data, content_type)
        if url is None:
            return None
        user.avatar_url = url
        await self.save_user(user)
        return url

    # ----- Sessions -----

    def create_session(self, name: str) -> CollabSession:
        now = self.clock()
        session = CollabSession.open(name, now=now)
        user = self.current_user
        if user is not None:
            session.add_participant(user.device_id)
            user.current_session_id = session.id
            user.updated_at = now

        self.store.insert(session)
        self._save_local()
        self.current_session = session
        logger.info("Session created: %s", session.name)
        self._publish()
        self._propagate_session(session)
        return session

    def active_sessions(self) -> list[CollabSession]:
        """Sessions in the local directory that are still active, most recent first."""
        return self.store.list_active_sessions()

    def join_session(self, session_id: str) -> bool:
        """
        Join a session known to the local store.

        Returns False (current session unchanged) when the id is unknown
        locally; there is no remote lookup.
        """
        session = self.store.get_session(session_id)
        if session is None:
            logger.info("Session not found locally: %s", session_id)
            return False

        now = self.clock()
        user = self.current_user
        if user is not None:
            session.add_participant(user.device_id)
            user.current_session_id = session.id
            user.updated_at = now
        session.touch(now)

        self._save_local()
        self.current_session = session
        logger.info("Joined session: %s", session.name)
        self._publish()
        self._propagate_session(session)
        return True

    def record_device_position(
        self, x: float, y: float, z: float, rotation: float = 0.0
    ) -> DevicePosition | None:
        """
        Append a pose sample for this device to the current session.

        Samples beyond the newest `position_retention` for the session are
        pruned in the same save. Returns None without a current session.
        """
        session = self.current_session
        if session is None:
            return None

        position = DevicePosition.record(
            x=x,
            y=y,
            z=z,
            rotation=rotation,
            device_id=self.device_id,
            session_id=session.id,
            now=self.clock(),
        )
        self.store.insert(position)
        pruned = self.store.prune_positions(session.id, self.position_retention)
        self._save_local()
        if pruned:
            logger.debug("Pruned %d old positions from session %s", pruned, session.id)

        if self.cloudkit is not None and self.is_online:
            self.cloudkit.sync_position(position, on_result=self._on_cloudkit_result)
        return position

    def positions_for_session(
        self, session_id: str, limit: int | None = None
    ) -> list[DevicePosition]:
        return self.store.list_positions(session_id, limit)

    # ----- Premium -----

    def unlock_premium_with_promo_code(self, code: str) -> bool:
        """Case-insensitive allow-list check; any other input changes nothing."""
        normalized = code.upper()
        if normalized not in promo_codes_for(self.platform):
            logger.info("Rejected promo code")
            return False
        user = self.current_user
        if user is None:
            return False

        user.apply_premium(self.clock())
        user.promo_code_used = normalized
        self._save_local()
        logger.info("Premium unlocked with promo code: %s", normalized)
        self._publish()
        self._propagate_user(user)
        return True

    def purchase_premium(self) -> bool:
        """Apply premium after an external purchase confirmation."""
        user = self.current_user
        if user is None:
            return False

        user.apply_premium(self.clock())
        self._save_local(PREMIUM_FAILED_MESSAGE)
        logger.info("Premium purchased successfully")
        self._publish()
        self._propagate_user(user)
        return True

    def can_access(self, screen_number: int) -> bool:
        return screen_number <= self.unlocked_screens

    # ----- Merging -----

    def merge_remote_user(self, remote_user: User) -> bool:
        """
        Copy the merge-list fields of `remote_user` onto the current user and
        save locally. Security fields (password hash, tokens, login counters,
        lock) are never touched.
        """
        local = self.current_user
        if local is None:
            return False

        local.is_premium = remote_user.is_premium
        local.unlocked_screens = min(remote_user.unlocked_screens, local.total_screens)
        local.ads_enabled = remote_user.ads_enabled
        local.subscription_expiry_date = remote_user.subscription_expiry_date
        local.promo_code_used = remote_user.promo_code_used
        local.display_name = remote_user.display_name
        local.avatar_url = remote_user.avatar_url
        local.bio = remote_user.bio
        local.preferences = remote_user.preferences
        local.updated_at = self.clock()

        self._save_local()
        logger.info("Local user updated from remote")
        self._publish()
        return True

    def merge_remote_session(self, remote_session: CollabSession) -> CollabSession:
        """
        Update the current session in place when ids match; otherwise store
        the remote session locally and adopt it as current. The current user
        is pointed at the adopted session in the same local save.
        """
        current = self.current_session
        if current is not None and current.id == remote_session.id:
            target = current
        else:
            target = self.store.get_session(remote_session.id)

        if target is None:
            self.store.insert(remote_session)
            target = remote_session
        else:
            target.name = remote_session.name
            target.last_active = remote_session.last_active
            target.is_active = remote_session.is_active
            target.participants = list(remote_session.participants or [])

        user = self.current_user
        if user is not None and user.current_session_id != target.id:
            user.current_session_id = target.id
            user.updated_at = self.clock()

        self._save_local()
        self.current_session = target
        logger.info("Local session updated from remote: %s", target.id)
        self._publish()
        return target

    def apply_remote_event(self, event: RemoteEvent) -> None:
        if isinstance(event, UserUpdated):
            self.merge_remote_user(event.user)
        elif isinstance(event, SessionUpdated):
            self.merge_remote_session(event.session)
        else:
            logger.warning("Ignoring unknown remote event: %r", event)

    def drain_events(self) -> int:
        """Apply every queued remote event now; returns how many were applied."""
        if self.remote is None:
            return 0
        applied = 0
        while not self.remote.events.empty():
            event = self.remote.events.get_nowait()
            try:
                self.apply_remote_event(event)
            except LocalStorageError as e:
                logger.error("Failed to save remote update: %s", e)
            applied += 1
        return applied

    async def _consume_events(self) -> None:
        while True:
            event = await self.remote.events.get()
            try:
                self.apply_remote_event(event)
            except LocalStorageError as e:
                logger.error("Failed to save remote update: %s", e)

    # ----- Reconciliation -----

    async def perform_periodic_sync(self, force: bool = False) -> bool:
        """
        One reconciliation tick. Returns True if a sync ran.

        Skipped when offline, without a current user, or (unless `force`)
        when the previous sync is younger than the interval. With a remote
        store the remote user is merged in; without one (visionOS) the
        current user is pushed to CloudKit.

        Raises:
            LocalStorageError: saving the merged user failed.
        """
        if not self.is_online or self.current_user is None:
            return False
        now = self.clock()
        if (
            not force
            and self.last_sync_time is not None
            and (now - self.last_sync_time).total_seconds() < self.sync_interval
        ):
            return False

        self.lifecycle = EngineState.SYNCING
        self.sync_status = SyncStatus.SYNCING
        self._publish()
        try:
            if self.remote is not None:
                remote_user = await self.remote.fetch_user()
                if remote_user is not None and self.current_user is not None:
                    self.merge_remote_user(remote_user)
            elif self.cloudkit is not None:
                result = await self.cloudkit.save_with_retry(
                    create_user_record(self.current_user)
                )
                if not result.ok:
                    raise result.error or CloudKitSyncError("CloudKit sync failed")
        except (RemoteSyncError, CloudKitSyncError, DocumentError) as e:
            logger.warning("Periodic sync failed: %s", e)
            self.sync_status = SyncStatus.FAILED
            self.last_sync_error = str(e)
            return True
        except LocalStorageError as e:
            self.sync_status = SyncStatus.FAILED
            self.last_sync_error = str(e)
            raise
        finally:
            self.lifecycle = EngineState.LOADED
            self._publish()

        self.last_sync_time = now
        self._record_remote_success()
        logger.info("Periodic sync completed successfully")
        return True

    async def sync_data(self) -> None:
        """Full pull from the remote store; results are merged before returning."""
        if self.remote is None:
            return
        try:
            await self.remote.sync_data()
        except HorizonError as e:
            self._record_remote_failure("data sync", e)
        self.drain_events()

    async def refresh_connectivity(self) -> bool:
        """Probe every configured backend; online if any of them answers."""
        results = []
        if self.remote is not None:
            results.append(await self.remote.check_connectivity())
        if self.cloudkit is not None:
            results.append(await self.cloudkit.check_connectivity())

        online = any(results)
        if online != self.is_online:
            self.is_online = online
            logger.info("Connectivity changed: %s", "online" if online else "offline")
            self._publish()
        return online

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sync_interval)
            try:
                await self.perform_periodic_sync()
            except LocalStorageError as e:
                logger.error("Periodic sync could not save locally: %s", e)

    async def _connectivity_loop(self) -> None:
        while True:
            await self.refresh_connectivity()
            await asyncio.sleep(self.connectivity_interval)
