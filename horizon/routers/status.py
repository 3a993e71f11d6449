# horizon/routers/status.py
from fastapi import APIRouter, Depends

from horizon.core.dependencies import get_engine
from horizon.schemas.status import StatusRead
from horizon.services.sync_engine import HybridSyncEngine

router = APIRouter(prefix="/status", tags=["Status"])


def _status(engine: HybridSyncEngine) -> StatusRead:
    state = engine.state()
    return StatusRead(
        platform=engine.platform.value,
        device_id=engine.device_id,
        backends=sorted(b.value for b in engine.backends),
        lifecycle=state.lifecycle.value,
        is_loading=state.is_loading,
        is_online=state.is_online,
        is_premium=state.is_premium,
        unlocked_screens=state.unlocked_screens,
        sync_status=state.sync_status.value,
        last_sync_error=state.last_sync_error,
        error_message=state.error_message,
        local_store_available=state.local_store_available,
        current_user_id=state.current_user.id if state.current_user else None,
        current_session_id=state.current_session.id if state.current_session else None,
    )


@router.get("", response_model=StatusRead)
async def read_status(engine: HybridSyncEngine = Depends(get_engine)):
    """Published engine state: loading / online / sync status / errors."""
    return _status(engine)


@router.post("/sync", response_model=StatusRead)
async def force_sync(engine: HybridSyncEngine = Depends(get_engine)):
    """
    Reconcile now: refresh connectivity, run a forced periodic sync, then a
    full pull from the remote store.
    """
    await engine.refresh_connectivity()
    await engine.perform_periodic_sync(force=True)
    await engine.sync_data()
    return _status(engine)
