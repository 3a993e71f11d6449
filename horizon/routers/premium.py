# horizon/routers/premium.py
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from horizon.core.dependencies import get_engine, require_current_user
from horizon.models.user import User
from horizon.schemas.premium import (
    PremiumStatus,
    PromoCodeRequest,
    PurchaseConfirmation,
    ScreenAccess,
)
from horizon.services.sync_engine import HybridSyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/premium", tags=["Premium"])


def _premium_status(user: User) -> PremiumStatus:
    return PremiumStatus(
        is_premium=user.is_premium,
        unlocked_screens=user.unlocked_screens,
        total_screens=user.total_screens,
        ads_enabled=user.ads_enabled,
        subscription_status=user.subscription_status(),
    )


@router.get("", response_model=PremiumStatus)
async def read_premium(current_user: User = Depends(require_current_user)):
    return _premium_status(current_user)


@router.post("/promo", response_model=PremiumStatus)
async def redeem_promo_code(
    payload: PromoCodeRequest,
    engine: HybridSyncEngine = Depends(get_engine),
    current_user: User = Depends(require_current_user),
):
    """
    Unlock premium with a promo code (case-insensitive).

    Unknown codes are rejected with 400 and change nothing.
    """
    if not engine.unlock_premium_with_promo_code(payload.code):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid promo code",
        )
    return _premium_status(current_user)


@router.post("/purchase", response_model=PremiumStatus)
async def confirm_purchase(
    payload: PurchaseConfirmation,
    engine: HybridSyncEngine = Depends(get_engine),
    current_user: User = Depends(require_current_user),
):
    """Apply premium after the store integration confirmed a purchase."""
    logger.info("Purchase confirmed: %s", payload.transaction_id)
    engine.purchase_premium()
    return _premium_status(current_user)


@router.get("/screens/{screen_number}", response_model=ScreenAccess)
async def check_screen_access(
    screen_number: int,
    engine: HybridSyncEngine = Depends(get_engine),
):
    return ScreenAccess(screen=screen_number, allowed=engine.can_access(screen_number))
