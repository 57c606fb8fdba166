"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"

    # Shared secret for service-to-service calls (UI backend, schedulers)
    INTERNAL_API_KEY: Optional[str] = None

    # Meta app credentials (token exchange, OAuth code exchange)
    META_APP_ID: Optional[str] = None
    META_APP_SECRET: Optional[str] = None
    META_GRAPH_API_VERSION: str = "v21.0"
    META_GRAPH_BASE_URL: str = "https://graph.facebook.com"
    META_REQUEST_TIMEOUT_SECONDS: float = 60.0

    # Retry / pacing policy for the Graph client
    META_MAX_RETRIES: int = 3
    META_BACKOFF_BASE_SECONDS: float = 1.0
    META_BACKOFF_CEILING_SECONDS: float = 30.0
    META_MAX_PAGES: int = 200
    META_BATCH_SIZE: int = 50
    META_CALLS_PER_HOUR: Optional[int] = None
    META_AUTH_FAILURE_THRESHOLD: int = 1

    # Creative resolution
    CREATIVE_BATCH_DELAY_MS: int = 200
    ENTITY_SYNC_TTL_HOURS: int = 6

    # Media cache (filesystem root served as static files by the edge)
    MEDIA_CACHE_ENABLED: bool = False
    MEDIA_CACHE_ROOT: str = "./media-cache"
    MEDIA_CACHE_PUBLIC_URL: str = "http://localhost:8000/media"
    MEDIA_CACHE_MAX_BYTES: int = 10 * 1024 * 1024

    # Redis Configuration (arq queue)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Scheduled syncs (arq cron)
    SYNC_CREATIVES_ON_DAILY: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def require_internal_key(
    x_internal_key: Optional[str] = Header(default=None, alias="X-Internal-Key"),
) -> None:
    """Reject calls that do not carry the shared internal service key.

    User authentication lives in the UI backend; this service only trusts
    callers holding INTERNAL_API_KEY.
    """
    expected = get_settings().INTERNAL_API_KEY
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_API_KEY is not configured",
        )
    if not x_internal_key or not hmac.compare_digest(x_internal_key, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal key")
