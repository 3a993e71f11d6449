# horizon/models/user.py
import re
import uuid
from datetime import datetime, timedelta
from enum import Enum

from sqlmodel import SQLModel, Field

from horizon.models.types import UTCDateTime, add_years, utcnow

DEFAULT_UNLOCKED_SCREENS = 2
DEFAULT_TOTAL_SCREENS = 10

MAX_FAILED_LOGINS = 5
LOCKOUT_PERIOD = timedelta(minutes=15)
VERIFICATION_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_TTL = timedelta(hours=1)

_EMAIL_RE = re.compile(r"[A-Z0-9a-z._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,64}")
_USERNAME_RE = re.compile(r"[a-zA-Z0-9_]{3,20}")
_LETTER_RE = re.compile(r"[A-Za-z]")
_DIGIT_RE = re.compile(r"[0-9]")


class UserValidationError(str, Enum):
    """Returned (never raised) when a required user field is empty."""

    INVALID_USERNAME = "Username cannot be empty"
    INVALID_EMAIL = "Email cannot be empty"
    INVALID_DEVICE_ID = "Device ID cannot be empty"
    INVALID_PLATFORM = "Platform cannot be empty"


class User(SQLModel, table=True):
    """
    One installation-bound account.

    Identity:
      - id: uuid4 string generated locally; also the remote document key.
      - device_id: the installation that owns this row (startup lookup key).

    Invariants:
      - email is stored lowercase (use `create` / `set_email`)
      - unlocked_screens <= total_screens
      - verification / reset tokens are single-use
      - failed_login_attempts returns to 0 on successful login or reset

    Only `password_hash` is kept; hashing happens outside this package.
    """

    __tablename__ = "users"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        index=True,
    )

    username: str = Field(index=True, description="3-20 chars, alphanumeric + underscore")
    email: str = Field(index=True, description="Always lowercase")
    password_hash: str = Field(default="", description="Never plaintext")
    device_id: str = Field(index=True)
    platform: str

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    # ----- Account status -----
    is_email_verified: bool = False
    email_verification_token: str | None = None
    email_verification_expiry: datetime | None = Field(default=None, sa_type=UTCDateTime)
    is_active: bool = True
    last_login_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    last_active_at: datetime | None = Field(default=None, sa_type=UTCDateTime)

    # ----- Premium -----
    is_premium: bool = False
    # monthly | yearly | lifetime
    subscription_type: str | None = None
    subscription_expiry_date: datetime | None = Field(default=None, sa_type=UTCDateTime)
    promo_code_used: str | None = None
    unlocked_screens: int = DEFAULT_UNLOCKED_SCREENS
    total_screens: int = DEFAULT_TOTAL_SCREENS
    ads_enabled: bool = True

    # ----- Session -----
    current_session_id: str | None = None

    # ----- Profile -----
    display_name: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    # Opaque JSON blob owned by the UI layer
    preferences: str = "{}"

    # ----- Security -----
    password_reset_token: str | None = Field(default=None, index=True)
    password_reset_expiry: datetime | None = Field(default=None, sa_type=UTCDateTime)
    failed_login_attempts: int = 0
    account_locked_until: datetime | None = Field(default=None, sa_type=UTCDateTime)

    # ----- Construction -----

    @classmethod
    def create(
        cls,
        username: str,
        email: str,
        password_hash: str,
        device_id: str,
        platform: str,
        *,
        now: datetime | None = None,
    ) -> "User":
        """
        Build a new user with the free-tier defaults:
        unlocked_screens=2, total_screens=10, ads on, not premium,
        no failed logins. Callers validate inputs first.
        """
        now = now or utcnow()
        return cls(
            username=username,
            email=email.lower(),
            password_hash=password_hash,
            device_id=device_id,
            platform=platform,
            created_at=now,
            updated_at=now,
            last_active_at=now,
            display_name=username,
        )

    def set_email(self, email: str) -> None:
        self.email = email.lower()

    # ----- Validation (pure) -----

    @staticmethod
    def is_valid_email(email: str) -> bool:
        return bool(_EMAIL_RE.fullmatch(email))

    @staticmethod
    def is_valid_username(username: str) -> bool:
        return bool(_USERNAME_RE.fullmatch(username))

    @staticmethod
    def is_valid_password(password: str) -> bool:
        """At least 8 characters with one letter and one digit."""
        return (
            len(password) >= 8
            and _LETTER_RE.search(password) is not None
            and _DIGIT_RE.search(password) is not None
        )

    @staticmethod
    def validate_required(
        username: str, email: str, device_id: str, platform: str
    ) -> UserValidationError | None:
        if not username.strip():
            return UserValidationError.INVALID_USERNAME
        if not email.strip():
            return UserValidationError.INVALID_EMAIL
        if not device_id.strip():
            return UserValidationError.INVALID_DEVICE_ID
        if not platform.strip():
            return UserValidationError.INVALID_PLATFORM
        return None

    # ----- Derived state -----

    def is_account_locked(self, now: datetime | None = None) -> bool:
        if self.account_locked_until is None:
            return False
        return (now or utcnow()) < self.account_locked_until

    @property
    def can_login(self) -> bool:
        return self.is_active and not self.is_account_locked()

    def subscription_status(self, now: datetime | None = None) -> str:
        """Human-readable status: Free | Expired | Premium (...)."""
        if not self.is_premium:
            return "Free"
        if self.subscription_expiry_date is None:
            return "Premium (No expiry)"
        if (now or utcnow()) > self.subscription_expiry_date:
            return "Expired"
        return f"Premium (Expires {self.subscription_expiry_date:%b %d, %Y})"

    # ----- Login counters -----

    def increment_failed_login(self, now: datetime | None = None) -> None:
        """Count a failed login; the 5th (and later) failure locks for 15 minutes."""
        self.failed_login_attempts += 1
        if self.failed_login_attempts >= MAX_FAILED_LOGINS:
            self.account_locked_until = (now or utcnow()) + LOCKOUT_PERIOD

    def reset_failed_login(self) -> None:
        self.failed_login_attempts = 0
        self.account_locked_until = None

    def record_successful_login(self, now: datetime | None = None) -> None:
        now = now or utcnow()
        self.last_login_at = now
        self.last_active_at = now
        self.reset_failed_login()

    # ----- Email verification -----

    def generate_verification_token(self, now: datetime | None = None) -> str:
        self.email_verification_token = str(uuid.uuid4())
        self.email_verification_expiry = (now or utcnow()) + VERIFICATION_TOKEN_TTL
        return self.email_verification_token

    def verify_email(self, token: str, now: datetime | None = None) -> bool:
        """
        Succeeds only when `token` matches and now < expiry.
        On success the token and expiry are cleared together.
        """
        if not self._token_matches(
            self.email_verification_token, self.email_verification_expiry, token, now
        ):
            return False
        self.is_email_verified = True
        self.email_verification_token = None
        self.email_verification_expiry = None
        return True

    # ----- Password reset -----

    def generate_reset_token(self, now: datetime | None = None) -> str:
        self.password_reset_token = str(uuid.uuid4())
        self.password_reset_expiry = (now or utcnow()) + RESET_TOKEN_TTL
        return self.password_reset_token

    def reset_password(
        self, token: str, new_password_hash: str, now: datetime | None = None
    ) -> bool:
        if not self._token_matches(
            self.password_reset_token, self.password_reset_expiry, token, now
        ):
            return False
        self.password_hash = new_password_hash
        self.password_reset_token = None
        self.password_reset_expiry = None
        self.reset_failed_login()
        return True

    @staticmethod
    def _token_matches(
        stored: str | None,
        expiry: datetime | None,
        token: str,
        now: datetime | None,
    ) -> bool:
        if stored is None or expiry is None or stored != token:
            return False
        return (now or utcnow()) < expiry

    # ----- Premium -----

    def apply_premium(self, now: datetime | None = None) -> None:
        """Premium state shared by promo-code and purchase unlocks."""
        now = now or utcnow()
        self.is_premium = True
        self.unlocked_screens = self.total_screens
        self.ads_enabled = False
        self.subscription_expiry_date = add_years(now, 1)
        self.updated_at = now

    def can_access_screen(self, screen_number: int) -> bool:
        return screen_number <= self.unlocked_screens
