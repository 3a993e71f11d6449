# horizon/routers/users.py
import json

from fastapi import (
    APIRouter,
    Depends,
    File,
    HTTPException,
    Response,
    UploadFile,
    status,
)

from horizon.core.dependencies import get_engine, require_current_user
from horizon.core.errors import RemoteSyncError
from horizon.core.storage_utils import ALLOWED_IMAGE_CONTENT_TYPES, MAX_AVATAR_BYTES
from horizon.models.user import User
from horizon.schemas.user import UserProfileUpdate, UserRead
from horizon.services.sync_engine import HybridSyncEngine

router = APIRouter(prefix="/users", tags=["Users"])


# -------- Current user --------


@router.get("/me", response_model=UserRead)
async def read_me(current_user: User = Depends(require_current_user)):
    """Return the engine's current user."""
    return current_user


@router.patch("/me", response_model=UserRead)
async def update_me(
    payload: UserProfileUpdate,
    engine: HybridSyncEngine = Depends(get_engine),
    current_user: User = Depends(require_current_user),
):
    """
    Partial profile update, saved locally then propagated.

    Rules:
      - username: 3-20 chars, letters / digits / underscore
      - email: must look like an address; stored lowercase
      - nothing is changed if any field is rejected (400)
    """
    if payload.username is not None and not User.is_valid_username(payload.username):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid username",
        )
    if payload.email is not None and not User.is_valid_email(payload.email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid email",
        )

    if payload.username is not None:
        current_user.username = payload.username
    if payload.email is not None:
        current_user.set_email(payload.email)
    if payload.display_name is not None:
        current_user.display_name = payload.display_name
    if payload.bio is not None:
        current_user.bio = payload.bio
    if payload.preferences is not None:
        current_user.preferences = json.dumps(payload.preferences)

    await engine.save_user(current_user)
    return current_user


@router.delete("/me", status_code=status.HTTP_204_NO_CONTENT)
async def delete_me(
    engine: HybridSyncEngine = Depends(get_engine),
    current_user: User = Depends(require_current_user),
):
    """
    Delete the account locally, then on every available backend.

    Remote deletion is best-effort; the response does not wait for it.
    """
    await engine.delete_user(current_user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/me/avatar", response_model=UserRead)
async def upload_avatar(
    file: UploadFile = File(...),
    engine: HybridSyncEngine = Depends(get_engine),
    current_user: User = Depends(require_current_user),
):
    """
    Upload an avatar to remote object storage and store its public URL.

    - Accepts JPEG, PNG, WEBP up to 5MB.
    - 503 when no remote storage is available on this platform / config.
    """
    if file.content_type not in ALLOWED_IMAGE_CONTENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Avatar must be a JPEG, PNG or WEBP image",
        )

    file_bytes = await file.read()
    if len(file_bytes) > MAX_AVATAR_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="Avatar exceeds 5MB",
        )

    try:
        url = await engine.update_avatar(file_bytes, file.content_type)
    except RemoteSyncError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Avatar upload failed",
        ) from e

    if url is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Remote storage is not available",
        )
    return current_user


# -------- Lookup --------


@router.get("/lookup", response_model=UserRead)
async def lookup_user(
    email: str | None = None,
    username: str | None = None,
    reset_token: str | None = None,
    engine: HybridSyncEngine = Depends(get_engine),
):
    """
    Find a local user by exactly one of: email (case-insensitive),
    username (exact) or password-reset token.
    """
    given = [v for v in (email, username, reset_token) if v is not None]
    if len(given) != 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide exactly one of email, username, reset_token",
        )

    if email is not None:
        user = engine.find_user_by_email(email)
    elif username is not None:
        user = engine.find_user_by_username(username)
    else:
        user = engine.find_user_by_reset_token(reset_token)

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    return user
