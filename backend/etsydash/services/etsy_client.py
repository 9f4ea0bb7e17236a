"""Etsy Open API v3 client.

WHAT:
    Typed request wrapper around the Etsy REST API with:
    - Lazy token validation before every request (TokenManager)
    - Bearer auth plus the `x-api-key` application header
    - limit/offset pagination helpers
    - Non-2xx responses surfaced as MarketplaceApiError

WHY:
    Encapsulates all Etsy API interaction for the sync service. Only the
    endpoints the sync needs are covered. Retries are deliberately NOT done
    here; the sync orchestrator owns the retry policy.

REFERENCES:
    - Etsy Open API v3: https://developers.etsy.com/documentation/reference
    - Pagination: https://developers.etsy.com/documentation/essentials/requests#pagination
"""

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from etsydash.models import Store
from etsydash.services.etsy_config import EtsyClientConfig
from etsydash.services.etsy_errors import MarketplaceApiError
from etsydash.services.token_service import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class EtsyPage:
    """One page of a list endpoint."""
    results: List[Dict[str, Any]] = field(default_factory=list)
    count: int = 0
    offset: int = 0
    limit: int = 0


PageFetcher = Callable[[int, int], Awaitable[EtsyPage]]


async def iter_pages(fetch_page: PageFetcher, limit: int) -> AsyncIterator[EtsyPage]:
    """Walk a limit/offset endpoint page by page.

    Stops on the first empty page, or once offset + limit reaches the reported
    count, whichever comes first. Pages are awaited strictly one after another.
    """
    offset = 0
    while True:
        page = await fetch_page(offset, limit)
        if not page.results:
            break

        yield page

        if offset + limit >= page.count:
            break
        offset += limit


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class EtsyClient:
    """REST client for one connected store.

    Usage:
        client = EtsyClient(config, token_manager, db, store)
        page = await client.get_listings(store.etsy_shop_id, limit=100, offset=0)
        images = await client.get_listing_images(listing_id)
    """

    def __init__(
        self,
        config: EtsyClientConfig,
        token_manager: TokenManager,
        db: Session,
        store: Store,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.token_manager = token_manager
        self.db = db
        self.store = store
        self._http_client = http_client
        self.base_url = config.base_url.rstrip("/")

        logger.info("[ETSY_CLIENT] Initialized for store %s (shop=%s)", store.id, store.etsy_shop_id)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Issue one authenticated request and return the decoded JSON body.

        Raises:
            CredentialExpiredError / TokenRefreshError: From the token manager.
            MarketplaceApiError: Non-2xx response or transport failure.
        """
        credentials = await self.token_manager.ensure_valid(self.db, self.store)
        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "x-api-key": self.config.api_key,
            "Content-Type": "application/json",
        }
        url = f"{self.base_url}{path}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        try:
            if self._http_client is not None:
                response = await self._http_client.request(method, url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                    response = await client.request(method, url, params=params, headers=headers)
        except httpx.TransportError as exc:
            logger.warning("[ETSY_CLIENT] Transport error on %s %s: %s", method, path, exc)
            raise MarketplaceApiError(
                status_code=None,
                body=None,
                message=f"Etsy request failed: {exc}",
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text
            logger.warning(
                "[ETSY_CLIENT] %s %s returned %d", method, path, response.status_code
            )
            raise MarketplaceApiError(
                status_code=response.status_code,
                body=body,
                message=f"Etsy API error: {response.status_code}",
                retry_after=_parse_retry_after(response),
            )

        try:
            return response.json()
        except ValueError as exc:
            logger.warning(
                "[ETSY_CLIENT] %s %s returned a non-JSON body (status %d)",
                method, path, response.status_code,
            )
            raise MarketplaceApiError(
                status_code=response.status_code,
                body=response.text,
                message="Etsy API returned an unreadable response",
            ) from exc

    # =========================================================================
    # LISTINGS
    # =========================================================================

    async def get_listings(
        self,
        shop_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        state: Optional[str] = None,
    ) -> EtsyPage:
        limit = limit or self.config.page_size
        data = await self._request(
            "GET",
            f"/application/shops/{shop_id}/listings",
            params={"limit": limit, "offset": offset, "state": state},
        )
        return EtsyPage(
            results=data.get("results") or [],
            count=int(data.get("count") or 0),
            offset=offset,
            limit=limit,
        )

    async def get_listing_images(self, listing_id: str) -> List[Dict[str, Any]]:
        """Images for a listing, sorted ascending by rank (first is primary)."""
        data = await self._request("GET", f"/application/listings/{listing_id}/images")
        images = data.get("results") or []
        return sorted(images, key=lambda img: img.get("rank") if img.get("rank") is not None else float("inf"))

    # =========================================================================
    # RECEIPTS
    # =========================================================================

    async def get_receipts(
        self,
        shop_id: str,
        min_created: Optional[int] = None,
        max_created: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> EtsyPage:
        limit = limit or self.config.page_size
        data = await self._request(
            "GET",
            f"/application/shops/{shop_id}/receipts",
            params={
                "min_created": min_created,
                "max_created": max_created,
                "limit": limit,
                "offset": offset,
            },
        )
        return EtsyPage(
            results=data.get("results") or [],
            count=int(data.get("count") or 0),
            offset=offset,
            limit=limit,
        )
