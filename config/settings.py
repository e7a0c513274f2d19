"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Mentorship Marketplace"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Stripe ───────────────────────────────────────────────
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"
    PLATFORM_FEE_PERCENT: float = 10.0

    # ── Zoom ─────────────────────────────────────────────────
    ZOOM_ACCOUNT_ID: str = ""
    ZOOM_CLIENT_ID: str = ""
    ZOOM_CLIENT_SECRET: str = ""
    ZOOM_WEBHOOK_SECRET_TOKEN: str = ""
    ZOOM_WEBHOOK_TOLERANCE_SECONDS: int = 300
    ZOOM_API_BASE_URL: str = "https://api.zoom.us/v2"
    ZOOM_OAUTH_URL: str = "https://zoom.us/oauth/token"
    ZOOM_API_TIMEOUT_SECONDS: float = 10.0

    # ── Provider resilience ──────────────────────────────────
    PROVIDER_BREAKER_FAIL_MAX: int = 5
    PROVIDER_BREAKER_RESET_SECONDS: int = 60

    # ── Frontend ─────────────────────────────────────────────
    FRONTEND_URL: str = "http://localhost:3000"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Business Config ──────────────────────────────────────
    MEETING_MIN_ATTENDED_MINUTES: int = 5
    NOTIFICATIONS_PAGE_SIZE_MAX: int = 50

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance, call this everywhere."""
    return Settings()


settings = get_settings()
