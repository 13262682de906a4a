# app/core/config.py
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global application configuration.

    Values are loaded from environment variables at runtime.

    Groups
    ------
    - Zoom API credentials and endpoints (used by the rate-limited gateway)
    - Attendance threshold and ingestion dedup history
    - Gateway pacing / retry / cache knobs
    - Reconciliation queue retry budget and drain cadence
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "Attendance Ledger"
    APP_ENV: str = Field("local", description="Environment name: local/dev/stage/prod")
    LOG_LEVEL: str = Field("INFO", description="Root log level for the service.")

    DB_URL: str = Field(
        "sqlite+aiosqlite:///./attendance_ledger.db",
        description="SQLAlchemy-compatible async database URL",
    )

    # --- Zoom (Server-to-Server OAuth app) ---
    ZOOM_ACCOUNT_ID: str | None = None
    ZOOM_CLIENT_ID: str | None = None
    ZOOM_CLIENT_SECRET: str | None = None
    ZOOM_API_BASE_URL: str = "https://api.zoom.us/v2"
    ZOOM_OAUTH_URL: str = "https://zoom.us/oauth/token"

    # --- Attendance ---
    ATTENDANCE_THRESHOLD: float = Field(
        default=85.0,
        description="Minimum attendance percentage required for a Present verdict.",
    )
    DEDUP_HISTORY_SIZE: int = Field(
        default=1000,
        description="Number of most recent event idempotency keys remembered.",
    )

    # --- Gateway ---
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    GATEWAY_MAX_RETRIES: int = 3
    GATEWAY_INTERVAL_MEETING_SECONDS: float = 1.0
    GATEWAY_INTERVAL_REPORT_SECONDS: float = 2.0
    GATEWAY_INTERVAL_USER_SECONDS: float = 1.0
    GATEWAY_INTERVAL_DEFAULT_SECONDS: float = 0.5
    GATEWAY_RESPONSE_CACHE_TTL_SECONDS: float = Field(
        default=300.0,
        description="Lifetime of cached GET responses keyed by caller-supplied cache keys.",
    )
    TOKEN_MIN_REFRESH_INTERVAL_SECONDS: float = Field(
        default=60.0,
        description="Minimum spacing between two fresh OAuth token requests.",
    )
    TOKEN_EXPIRY_MARGIN_SECONDS: float = Field(
        default=300.0,
        description="Tokens are refreshed this many seconds before they actually expire.",
    )

    # --- Reconciliation ---
    RECONCILIATION_MAX_ATTEMPTS: int = Field(
        default=5,
        description="Queued reconciliation attempts before an item is marked exhausted.",
    )
    RECONCILIATION_QUEUE_DRAIN_INTERVAL_SECONDS: float = 60.0

    # --- Stale session cleanup ---
    STALE_SESSION_MAX_OPEN_HOURS: float = Field(
        default=3.0,
        description="Sessions still open this long after their join are force-closed.",
    )
    STALE_SESSION_SWEEP_INTERVAL_SECONDS: float = 1800.0

    NOTIFICATION_QUEUE_SIZE: int = 1000

    @property
    def gateway_intervals(self) -> dict[str, float]:
        return {
            "meeting": self.GATEWAY_INTERVAL_MEETING_SECONDS,
            "report": self.GATEWAY_INTERVAL_REPORT_SECONDS,
            "user": self.GATEWAY_INTERVAL_USER_SECONDS,
            "default": self.GATEWAY_INTERVAL_DEFAULT_SECONDS,
        }


@lru_cache()
def get_settings() -> Settings:
    """
    Cached accessor for application settings.

    Settings are read and validated only once per process.
    """
    return Settings()
