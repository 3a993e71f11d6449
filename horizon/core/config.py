# horizon/core/config.py
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized application settings loaded from environment.

    Required: nothing. Every backend beyond the local store is optional.

    Remote document store (Supabase):
      - SUPABASE_URL
      - SUPABASE_KEY (anon key; anonymous sign-in must be enabled)

    Apple-ecosystem store (CloudKit Web Services):
      - CLOUDKIT_CONTAINER (e.g. iCloud.com.example.horizon)
      - CLOUDKIT_API_TOKEN
      - CLOUDKIT_WEB_AUTH_TOKEN (optional, needed for the private database)

    Device:
      - PLATFORM (iOS | macOS | watchOS | tvOS | visionOS)
      - DEVICE_ID (optional; a stable id is generated in DATA_DIR otherwise)
    """

    PROJECT_NAME: str = "Horizon Sync"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Local store
    DATA_DIR: Path = Path.home() / ".horizon"
    DATABASE_URL: str | None = None

    # Device identity
    PLATFORM: str = "iOS"
    DEVICE_ID: str | None = None

    # Supabase
    SUPABASE_URL: str | None = None
    SUPABASE_KEY: str | None = None
    SUPABASE_USERS_TABLE: str = "users"
    SUPABASE_SESSIONS_TABLE: str = "sessions"
    SUPABASE_AVATAR_BUCKET: str = "avatars"

    # CloudKit
    CLOUDKIT_BASE_URL: str = "https://api.apple-cloudkit.com"
    CLOUDKIT_CONTAINER: str | None = None
    CLOUDKIT_ENVIRONMENT: str = "development"
    CLOUDKIT_API_TOKEN: str | None = None
    CLOUDKIT_WEB_AUTH_TOKEN: str | None = None
    CLOUDKIT_TIMEOUT_SECONDS: float = 15.0
    CLOUDKIT_MAX_RETRIES: int = 3
    CLOUDKIT_RETRY_UNIT_SECONDS: float = 1.0

    # Sync engine
    SYNC_INTERVAL_SECONDS: float = 300.0
    CONNECTIVITY_CHECK_SECONDS: float = 30.0
    POSITION_RETENTION_PER_SESSION: int = 500

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def database_url(self) -> str:
        """SQLite file under DATA_DIR unless DATABASE_URL overrides it."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"sqlite:///{self.DATA_DIR / 'horizon.db'}"

    @property
    def supabase_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_KEY)

    @property
    def cloudkit_configured(self) -> bool:
        return bool(self.CLOUDKIT_CONTAINER and self.CLOUDKIT_API_TOKEN)


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings loader.
    Ensures we don't re-parse .env on every import / request.
    """
    return Settings()
