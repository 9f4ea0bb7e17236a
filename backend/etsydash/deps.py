"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Cookie, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .security import decode_token


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:3000"
    COOKIE_SECURE: bool = False

    # Etsy Open API v3
    ETSY_API_KEY: str = ""
    ETSY_API_BASE: str = "https://openapi.etsy.com/v3"
    ETSY_OAUTH_CONNECT_URL: str = "https://www.etsy.com/oauth/connect"
    ETSY_REDIRECT_URI: str = "http://localhost:8000/etsy/callback"
    ETSY_SCOPES: str = "transactions_r transactions_w listings_r listings_w shops_r shops_w"
    ETSY_REQUEST_TIMEOUT_SECONDS: float = 30.0
    ETSY_PAGE_SIZE: int = 100
    ETSY_TOKEN_REFRESH_BUFFER_SECONDS: int = 60

    # Sync policy
    SYNC_MAX_RETRIES: int = 3
    SYNC_RETRY_BACKOFF_SECONDS: float = 1.0
    SYNC_ORDERS_DAYS_BACK: int = 30

    # Redis (ARQ scheduled sync)
    REDIS_URL: str = "redis://localhost:6379/0"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_current_user_id(
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
) -> str:
    """Resolve the calling seller from the `access_token` cookie.

    The cookie value is expected to be in the form: "Bearer <jwt>". Session
    issuance is handled by the auth service; here we only verify and read `sub`.
    """
    if not access_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    if access_token.startswith("Bearer "):
        token = access_token[len("Bearer "):]
    else:
        token = access_token

    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return str(subject)
