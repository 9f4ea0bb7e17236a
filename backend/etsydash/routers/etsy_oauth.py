"""Etsy OAuth 2.0 (PKCE) flow endpoints.

WHAT:
    /etsy/connect starts the flow: generates state + PKCE verifier, keeps them
    in short-lived httpOnly cookies and redirects to Etsy's consent screen.
    /etsy/callback validates state, exchanges the code, fetches the seller's
    shop and upserts the Store by its Etsy shop id.

WHY:
    Reconnecting the same shop must refresh its tokens rather than create a
    second Store.

REFERENCES:
    - https://developers.etsy.com/documentation/essentials/authentication
    - etsydash/services/etsy_oauth.py
"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Cookie, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from etsydash.database import get_db
from etsydash.deps import Settings, get_current_user_id, get_settings
from etsydash.services.etsy_config import EtsyClientConfig
from etsydash.services.etsy_errors import EtsySyncError
from etsydash.services.etsy_oauth import (
    build_authorize_url,
    connect_store,
    exchange_code_for_tokens,
    fetch_owner_shops,
    generate_pkce_pair,
    generate_state,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/etsy", tags=["Etsy OAuth"])

STATE_COOKIE = "etsy_state"
VERIFIER_COOKIE = "etsy_code_verifier"
COOKIE_MAX_AGE = 600


def _settings_redirect(settings: Settings, **params: str) -> RedirectResponse:
    response = RedirectResponse(url=f"{settings.FRONTEND_URL}/settings/stores?{urlencode(params)}")
    response.delete_cookie(STATE_COOKIE)
    response.delete_cookie(VERIFIER_COOKIE)
    return response


@router.get("/connect")
def etsy_connect(
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Redirect the seller to Etsy's OAuth consent screen."""
    state = generate_state()
    verifier, challenge = generate_pkce_pair()

    auth_url = build_authorize_url(
        connect_url=settings.ETSY_OAUTH_CONNECT_URL,
        api_key=settings.ETSY_API_KEY,
        redirect_uri=settings.ETSY_REDIRECT_URI,
        scopes=settings.ETSY_SCOPES,
        state=state,
        code_challenge=challenge,
    )

    response = RedirectResponse(url=auth_url)
    for name, value in ((STATE_COOKIE, state), (VERIFIER_COOKIE, verifier)):
        response.set_cookie(
            name,
            value,
            max_age=COOKIE_MAX_AGE,
            httponly=True,
            secure=settings.COOKIE_SECURE,
            samesite="lax",
        )

    logger.info("[ETSY_OAUTH] Redirecting user %s to Etsy consent", user_id)
    return response


@router.get("/callback")
async def etsy_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    stored_state: Optional[str] = Cookie(default=None, alias=STATE_COOKIE),
    code_verifier: Optional[str] = Cookie(default=None, alias=VERIFIER_COOKIE),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Handle Etsy's redirect back after consent."""
    if error:
        logger.error("[ETSY_OAUTH] OAuth error from Etsy: %s", error)
        return _settings_redirect(settings, error=error)

    if not state or state != stored_state or not code_verifier:
        logger.error("[ETSY_OAUTH] State mismatch or missing verifier")
        return _settings_redirect(settings, error="invalid_state")

    if not code:
        return _settings_redirect(settings, error="no_code")

    config = EtsyClientConfig.from_settings(settings)

    try:
        grant = await exchange_code_for_tokens(
            config,
            code=code,
            code_verifier=code_verifier,
            redirect_uri=settings.ETSY_REDIRECT_URI,
        )
    except EtsySyncError as exc:
        logger.error("[ETSY_OAUTH] Token exchange failed: %s", exc.message)
        return _settings_redirect(settings, error="token_exchange_failed")

    try:
        shops = await fetch_owner_shops(config, grant.access_token)
    except EtsySyncError as exc:
        logger.error("[ETSY_OAUTH] Failed to fetch shops: %s", exc.message)
        return _settings_redirect(settings, error="shops_fetch_failed")

    if not shops:
        return _settings_redirect(settings, error="no_shops")

    # First shop; Etsy users own at most one
    try:
        store = connect_store(db, user_id, grant, shops[0])
    except EtsySyncError as exc:
        logger.error("[ETSY_OAUTH] Failed to save store: %s", exc.message)
        return _settings_redirect(settings, error="store_save_failed")

    logger.info("[ETSY_OAUTH] Connected store %s for user %s", store.id, user_id)
    return _settings_redirect(settings, success="true")
