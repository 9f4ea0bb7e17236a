"""Etsy OAuth 2.0 (authorization code + PKCE) helpers.

WHAT:
    - PKCE verifier/challenge generation (S256)
    - Authorize URL construction
    - Authorization-code exchange at the Etsy token endpoint
    - Store upsert keyed by the Etsy shop id

WHY:
    The routers stay thin (cookies, redirects) while everything that talks to
    Etsy or writes a Store lives here and can be tested without HTTP.

REFERENCES:
    - https://developers.etsy.com/documentation/essentials/authentication
    - etsydash/routers/etsy_oauth.py
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from etsydash.models import Store
from etsydash.services.etsy_config import EtsyClientConfig
from etsydash.services.etsy_errors import MarketplaceApiError, TokenRefreshError
from etsydash.services.token_service import store_tokens
from etsydash.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime


def generate_state() -> str:
    """Random CSRF state (32 hex chars)."""
    return secrets.token_hex(16)


def generate_pkce_pair() -> Tuple[str, str]:
    """Return (code_verifier, code_challenge) using the S256 method."""
    verifier = secrets.token_hex(32)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return verifier, challenge


def build_authorize_url(
    *,
    connect_url: str,
    api_key: str,
    redirect_uri: str,
    scopes: str,
    state: str,
    code_challenge: str,
) -> str:
    params = {
        "response_type": "code",
        "client_id": api_key,
        "redirect_uri": redirect_uri,
        "scope": scopes,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{connect_url}?{urlencode(params)}"


async def exchange_code_for_tokens(
    config: EtsyClientConfig,
    *,
    code: str,
    code_verifier: str,
    redirect_uri: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> TokenGrant:
    """Exchange an authorization code for an access/refresh token pair.

    Raises:
        TokenRefreshError: If Etsy rejects the exchange or the response is incomplete.
    """
    data = {
        "grant_type": "authorization_code",
        "client_id": config.api_key,
        "redirect_uri": redirect_uri,
        "code": code,
        "code_verifier": code_verifier,
    }
    try:
        if http_client is not None:
            response = await http_client.post(config.token_url, data=data)
        else:
            async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                response = await client.post(config.token_url, data=data)
    except httpx.HTTPError as exc:
        logger.error("[ETSY_OAUTH] Token exchange request failed: %s", exc)
        raise TokenRefreshError(f"Token exchange request failed: {exc}") from exc

    if response.status_code >= 400:
        logger.error("[ETSY_OAUTH] Token exchange rejected (status=%d)", response.status_code)
        raise TokenRefreshError(
            f"Token exchange failed with status {response.status_code}",
            status_code=response.status_code,
        )

    payload = response.json()
    access_token = payload.get("access_token")
    if not access_token:
        raise TokenRefreshError("Token exchange response missing access_token")

    expires_in = int(payload.get("expires_in") or 0)
    logger.info("[ETSY_OAUTH] Token exchange successful (expires_in=%ds)", expires_in)
    return TokenGrant(
        access_token=access_token,
        refresh_token=payload.get("refresh_token"),
        expires_at=utcnow() + timedelta(seconds=expires_in),
    )


async def fetch_owner_shops(
    config: EtsyClientConfig,
    access_token: str,
    http_client: Optional[httpx.AsyncClient] = None,
) -> List[Dict[str, Any]]:
    """Shops owned by the user who just granted access.

    Called before any Store exists, so it authenticates with the fresh token
    directly instead of going through the token manager.
    """
    url = f"{config.base_url.rstrip('/')}/application/users/me/shops"
    headers = {
        "Authorization": f"Bearer {access_token}",
        "x-api-key": config.api_key,
    }
    try:
        if http_client is not None:
            response = await http_client.get(url, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                response = await client.get(url, headers=headers)
    except httpx.TransportError as exc:
        raise MarketplaceApiError(status_code=None, message=f"Etsy request failed: {exc}") from exc

    if response.status_code >= 400:
        raise MarketplaceApiError(status_code=response.status_code, body=response.text)

    data = response.json()
    if "results" in data:
        return data.get("results") or []
    # Single-shop payload
    return [data] if data.get("shop_id") else []


def connect_store(db: Session, user_id: str, grant: TokenGrant, shop: Dict[str, Any]) -> Store:
    """Create or update the Store for an Etsy shop.

    Reconnecting an existing shop only replaces its tokens (and reactivates
    it); shop metadata and ownership are set on creation.
    """
    etsy_shop_id = str(shop["shop_id"])
    store = db.query(Store).filter(Store.etsy_shop_id == etsy_shop_id).first()

    if store is None:
        store = Store(
            user_id=user_id,
            etsy_shop_id=etsy_shop_id,
            shop_name=shop.get("shop_name") or etsy_shop_id,
            shop_url=shop.get("url"),
            currency=shop.get("currency_code") or "USD",
            is_active=True,
        )
        db.add(store)
        db.flush()
        logger.info("[ETSY_OAUTH] Created store %s for shop %s", store.id, etsy_shop_id)
    else:
        store.is_active = True
        logger.info("[ETSY_OAUTH] Reconnected store %s for shop %s", store.id, etsy_shop_id)

    return store_tokens(
        db,
        store,
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        expires_at=grant.expires_at,
    )
