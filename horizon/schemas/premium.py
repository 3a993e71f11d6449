# horizon/schemas/premium.py
from pydantic import ConfigDict
from sqlmodel import SQLModel, Field


class PromoCodeRequest(SQLModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(min_length=1, max_length=50)


class PurchaseConfirmation(SQLModel):
    """
    Purchase-confirmation event forwarded by the store integration.

    Receipts are validated upstream; only the transaction id is logged.
    """

    model_config = ConfigDict(extra="forbid")

    transaction_id: str = Field(min_length=1)
    product_id: str | None = None


class PremiumStatus(SQLModel):
    is_premium: bool
    unlocked_screens: int
    total_screens: int
    ads_enabled: bool
    subscription_status: str


class ScreenAccess(SQLModel):
    screen: int
    allowed: bool
