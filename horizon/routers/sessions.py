# horizon/routers/sessions.py
from fastapi import APIRouter, Depends, HTTPException, status

from horizon.core.dependencies import get_engine
from horizon.schemas.session import (
    PositionCreate,
    PositionRead,
    SessionCreate,
    SessionRead,
)
from horizon.services.sync_engine import HybridSyncEngine

router = APIRouter(prefix="/sessions", tags=["Sessions"])


@router.post("", response_model=SessionRead, status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: SessionCreate,
    engine: HybridSyncEngine = Depends(get_engine),
):
    """
    Create a session, add this device as a participant and make it current.
    """
    return engine.create_session(payload.name)


@router.get("", response_model=list[SessionRead])
async def list_sessions(engine: HybridSyncEngine = Depends(get_engine)):
    """Active sessions known locally (the join directory)."""
    return engine.active_sessions()


@router.get("/current", response_model=SessionRead)
async def read_current_session(engine: HybridSyncEngine = Depends(get_engine)):
    if engine.current_session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No current session",
        )
    return engine.current_session


@router.post("/current/positions", response_model=PositionRead, status_code=status.HTTP_201_CREATED)
async def record_position(
    payload: PositionCreate,
    engine: HybridSyncEngine = Depends(get_engine),
):
    """Append a pose sample for this device to the current session."""
    position = engine.record_device_position(
        payload.x, payload.y, payload.z, payload.rotation
    )
    if position is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Join or create a session first",
        )
    return position


@router.post("/{session_id}/join", response_model=SessionRead)
async def join_session(
    session_id: str,
    engine: HybridSyncEngine = Depends(get_engine),
):
    """
    Join a session known locally.

    404 when the id is not in the local store; there is no remote lookup.
    """
    if not engine.join_session(session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )
    return engine.current_session


@router.get("/{session_id}/positions", response_model=list[PositionRead])
async def list_positions(
    session_id: str,
    limit: int | None = None,
    engine: HybridSyncEngine = Depends(get_engine),
):
    """Pose samples for a session, newest first."""
    return engine.positions_for_session(session_id, limit)
