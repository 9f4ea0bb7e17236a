"""Explicit Etsy API configuration.

WHAT: A plain config struct handed to the token manager and the gateway
WHY: Neither reads the environment on its own; routers and the worker build
     one from Settings and tests build one by hand
"""

from dataclasses import dataclass

from etsydash.deps import Settings, get_settings


DEFAULT_API_BASE = "https://openapi.etsy.com/v3"
TOKEN_PATH = "/public/oauth/token"


@dataclass(frozen=True)
class EtsyClientConfig:
    api_key: str
    base_url: str = DEFAULT_API_BASE
    timeout_seconds: float = 30.0
    page_size: int = 100
    refresh_buffer_seconds: int = 60

    @property
    def token_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{TOKEN_PATH}"

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "EtsyClientConfig":
        settings = settings or get_settings()
        return cls(
            api_key=settings.ETSY_API_KEY,
            base_url=settings.ETSY_API_BASE,
            timeout_seconds=settings.ETSY_REQUEST_TIMEOUT_SECONDS,
            page_size=settings.ETSY_PAGE_SIZE,
            refresh_buffer_seconds=settings.ETSY_TOKEN_REFRESH_BUFFER_SECONDS,
        )
