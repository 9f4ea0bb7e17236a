"""Token service for Etsy OAuth credentials.

WHAT:
    Encrypts and persists a store's access/refresh token pair and keeps it
    valid: before every authenticated Etsy request the gateway asks
    `TokenManager.ensure_valid`, which refreshes lazily when the access token
    is within the refresh buffer of its expiry.

WHY:
    - Keeps encryption and the refresh grant out of the gateway and routers.
    - Etsy invalidates a refresh token after first use, so two coroutines
      refreshing the same store would burn the pair. Refreshes are serialized
      per store and the expiry is re-checked once the lock is held.
    - Stored tokens are only overwritten after a fully successful response.

REFERENCES:
    - etsydash/security.py (encrypt_secret / decrypt_secret)
    - https://developers.etsy.com/documentation/essentials/authentication#requesting-a-refresh-oauth-token
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from etsydash.models import Store
from etsydash.security import encrypt_secret, decrypt_secret
from etsydash.services.etsy_config import EtsyClientConfig
from etsydash.services.etsy_errors import (
    CredentialExpiredError,
    PersistenceError,
    TokenRefreshError,
)
from etsydash.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass
class EtsyCredentials:
    """Decrypted credential pair for one store."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]

    def needs_refresh(self, now: datetime, buffer: timedelta) -> bool:
        # Unknown expiry is treated as already expired
        if self.expires_at is None:
            return True
        return now >= self.expires_at - buffer

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is None or now >= self.expires_at


def _label(store: Store) -> str:
    return f"store:{store.id}"


def store_tokens(
    db: Session,
    store: Store,
    *,
    access_token: str,
    refresh_token: Optional[str],
    expires_at: Optional[datetime],
) -> Store:
    """Encrypt and persist a token pair on the store, committing the change.

    Raises:
        PersistenceError: If the commit fails (the session is rolled back).
    """
    label = _label(store)
    store.access_token_enc = encrypt_secret(access_token, context=f"{label}:access")
    store.refresh_token_enc = (
        encrypt_secret(refresh_token, context=f"{label}:refresh") if refresh_token else None
    )
    store.token_expires_at = expires_at
    try:
        db.add(store)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("[TOKEN_SERVICE] Failed to persist tokens for %s: %s", label, exc)
        raise PersistenceError(
            "Failed to persist refreshed credentials", store_id=str(store.id), unit="credentials"
        ) from exc

    logger.info("[TOKEN_SERVICE] Stored encrypted tokens for %s (expires_at=%s)", label, expires_at)
    return store


def load_credentials(store: Store) -> EtsyCredentials:
    """Decrypt the stored credential pair.

    Raises:
        CredentialExpiredError: If the store has no access token at all.
    """
    if not store.access_token_enc:
        raise CredentialExpiredError(store_id=str(store.id))

    label = _label(store)
    access_token = decrypt_secret(store.access_token_enc, context=f"{label}:access")
    refresh_token = (
        decrypt_secret(store.refresh_token_enc, context=f"{label}:refresh")
        if store.refresh_token_enc
        else None
    )
    return EtsyCredentials(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=store.token_expires_at,
    )


class TokenManager:
    """Owns the credential lifecycle for Etsy stores.

    State per store: VALID -> (expiry within buffer) -> REFRESHING -> VALID | FAILED.

    One instance is shared per process (see `get_token_manager`) so the
    per-store refresh locks actually serialize concurrent syncs.

    Usage:
        manager = TokenManager(EtsyClientConfig.from_settings())
        creds = await manager.ensure_valid(db, store)
    """

    def __init__(
        self,
        config: EtsyClientConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self._http_client = http_client
        self._clock = clock
        self._buffer = timedelta(seconds=config.refresh_buffer_seconds)
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, store_id: str) -> asyncio.Lock:
        lock = self._locks.get(store_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[store_id] = lock
        return lock

    async def ensure_valid(self, db: Session, store: Store) -> EtsyCredentials:
        """Return usable credentials for the store, refreshing if needed.

        Raises:
            CredentialExpiredError: Token expired and no refresh token stored.
            TokenRefreshError: Refresh grant failed; stored tokens untouched.
            PersistenceError: New tokens could not be saved.
        """
        credentials = load_credentials(store)
        if not credentials.needs_refresh(self._clock(), self._buffer):
            return credentials

        store_id = str(store.id)
        async with self._lock_for(store_id):
            # Another coroutine may have refreshed while we waited
            db.refresh(store)
            credentials = load_credentials(store)
            now = self._clock()
            if not credentials.needs_refresh(now, self._buffer):
                logger.debug("[TOKEN_SERVICE] Token already refreshed for store %s", store_id)
                return credentials

            if not credentials.refresh_token:
                if credentials.is_expired(now):
                    logger.warning("[TOKEN_SERVICE] Store %s token expired, no refresh token", store_id)
                    raise CredentialExpiredError(store_id=store_id)
                return credentials

            return await self._refresh(db, store, credentials.refresh_token)

    async def _refresh(self, db: Session, store: Store, refresh_token: str) -> EtsyCredentials:
        store_id = str(store.id)
        logger.info("[TOKEN_SERVICE] Refreshing access token for store %s", store_id)

        payload = await self._request_refresh(store_id, refresh_token)

        access_token = payload.get("access_token")
        new_refresh_token = payload.get("refresh_token")
        expires_in = payload.get("expires_in")
        if not access_token or not new_refresh_token or expires_in is None:
            raise TokenRefreshError(
                "Refresh response missing access_token, refresh_token or expires_in",
                store_id=store_id,
            )

        try:
            expires_at = self._clock() + timedelta(seconds=int(expires_in))
        except (TypeError, ValueError) as exc:
            raise TokenRefreshError(
                f"Invalid expires_in in refresh response: {expires_in!r}", store_id=store_id
            ) from exc

        store_tokens(
            db,
            store,
            access_token=access_token,
            refresh_token=new_refresh_token,
            expires_at=expires_at,
        )
        logger.info("[TOKEN_SERVICE] Refreshed token for store %s (expires_at=%s)", store_id, expires_at)
        return EtsyCredentials(
            access_token=access_token,
            refresh_token=new_refresh_token,
            expires_at=expires_at,
        )

    async def _request_refresh(self, store_id: str, refresh_token: str) -> dict:
        data = {
            "grant_type": "refresh_token",
            "client_id": self.config.api_key,
            "refresh_token": refresh_token,
        }
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.config.token_url, data=data)
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                    response = await client.post(self.config.token_url, data=data)
        except httpx.HTTPError as exc:
            logger.error("[TOKEN_SERVICE] Refresh request failed for store %s: %s", store_id, exc)
            raise TokenRefreshError(f"Token refresh request failed: {exc}", store_id=store_id) from exc

        if response.status_code >= 400:
            logger.error(
                "[TOKEN_SERVICE] Refresh rejected for store %s (status=%d)",
                store_id, response.status_code,
            )
            raise TokenRefreshError(
                f"Token refresh failed with status {response.status_code}",
                store_id=store_id,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise TokenRefreshError("Token refresh returned invalid JSON", store_id=store_id) from exc


_token_manager: Optional[TokenManager] = None


def get_token_manager() -> TokenManager:
    """Process-wide TokenManager built from settings."""
    global _token_manager
    if _token_manager is None:
        _token_manager = TokenManager(EtsyClientConfig.from_settings())
    return _token_manager
