# horizon/core/dependencies.py
import logging

from fastapi import Depends, HTTPException, Request, status
from sqlmodel import Session
from supabase import AsyncClient

from horizon.core.config import Settings
from horizon.core.platform import Backend, Platform, available_backends, resolve_device_id
from horizon.models.user import User
from horizon.repositories.local_store import LocalStore
from horizon.services.cloudkit_sync import CloudKitSyncClient
from horizon.services.remote_sync import SupabaseSyncClient
from horizon.services.sync_engine import HybridSyncEngine

logger = logging.getLogger(__name__)


def build_sync_engine(
    settings: Settings,
    session: Session,
    supabase: AsyncClient | None = None,
) -> HybridSyncEngine:
    """
    Wire the engine for the configured platform.

    Only backends the platform supports are constructed:
      - remote client: every platform except visionOS
      - CloudKit client: only when a container and API token are configured
    """
    platform = Platform.parse(settings.PLATFORM)
    backends = available_backends(platform)

    remote = None
    if Backend.REMOTE in backends:
        remote = SupabaseSyncClient(supabase, settings)

    cloudkit = None
    if Backend.APPLE_ECOSYSTEM in backends and settings.cloudkit_configured:
        cloudkit = CloudKitSyncClient(settings)

    device_id = resolve_device_id(settings)
    logger.info("Device %s on %s", device_id, platform.value)

    return HybridSyncEngine(
        LocalStore(session),
        platform=platform,
        device_id=device_id,
        remote=remote,
        cloudkit=cloudkit,
        sync_interval=settings.SYNC_INTERVAL_SECONDS,
        connectivity_interval=settings.CONNECTIVITY_CHECK_SECONDS,
        position_retention=settings.POSITION_RETENTION_PER_SESSION,
    )


def get_engine(request: Request) -> HybridSyncEngine:
    """
    FastAPI dependency returning the engine built in the lifespan handler.

    Usage:

        @router.get("/example")
        async def example(engine: HybridSyncEngine = Depends(get_engine)):
            ...
    """
    return request.app.state.engine


def require_current_user(engine: HybridSyncEngine = Depends(get_engine)) -> User:
    """
    Dependency: the engine's current user.

    Raises:
        HTTPException(404): no user is loaded (e.g. after account deletion).
    """
    if engine.current_user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No current user",
        )
    return engine.current_user
