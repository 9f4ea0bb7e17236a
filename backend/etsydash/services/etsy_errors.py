"""
Etsy Sync Exceptions
====================

Custom exception types raised by the token manager, the Etsy gateway and the
sync orchestrator.

WHY THIS FILE EXISTS
--------------------
Syncing a shop fails in ways that need different reactions from callers:
- Credentials gone for good (seller must reconnect)
- Refresh grant rejected (abort this attempt, keep stored tokens)
- Remote API errors (some are worth retrying, most are not)
- Local write failures (abort one unit, keep earlier units)

RELATED FILES
-------------
- etsydash/services/token_service.py: CredentialExpiredError, TokenRefreshError
- etsydash/services/etsy_client.py: MarketplaceApiError
- etsydash/services/etsy_sync_service.py: PersistenceError, SyncCancelledError
- etsydash/routers/etsy_sync.py: maps these to HTTP status codes
"""

from typing import Any, Optional


class EtsySyncError(Exception):
    """
    Base exception for all sync-path errors.

    USAGE:
        try:
            await sync_store(db, store_id, ...)
        except EtsySyncError as e:
            store.last_sync_error = e.message
    """

    def __init__(self, message: str, store_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.store_id = store_id


class StoreNotFoundError(EtsySyncError):
    """No Store row exists for the requested id."""

    def __init__(self, store_id: Any):
        super().__init__(f"Store {store_id} not found", store_id=str(store_id))


class CredentialExpiredError(EtsySyncError):
    """
    No usable token for the store.

    WHAT:
        The access token is expired (or missing) and there is no refresh
        token to renew it.

    RECOVERY:
        Terminal. The seller must go through the OAuth connect flow again.
    """

    def __init__(self, store_id: Optional[str] = None, message: Optional[str] = None):
        if message is None:
            message = "Etsy connection has expired. Please reconnect your shop."
        super().__init__(message, store_id=store_id)


class TokenRefreshError(EtsySyncError):
    """
    Refresh-token grant failed.

    Stored credentials are left untouched; the current sync attempt aborts.
    """

    def __init__(
        self,
        message: str,
        store_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, store_id=store_id)
        self.status_code = status_code


class MarketplaceApiError(EtsySyncError):
    """
    Non-2xx response (or transport failure) from the Etsy API.

    ATTRIBUTES:
        status_code: HTTP status, or None when the request never got a response
        body: Response body as returned by Etsy (parsed JSON when possible)
        retry_after: Seconds from a Retry-After header, if present
    """

    def __init__(
        self,
        status_code: Optional[int],
        body: Any = None,
        message: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        if message is None:
            message = f"Etsy API error (status={status_code})"
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        """True for rate limiting, server errors and transport failures."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class PersistenceError(EtsySyncError):
    """A local write failed; the current unit was rolled back."""

    def __init__(self, message: str, store_id: Optional[str] = None, unit: Optional[str] = None):
        super().__init__(message, store_id=store_id)
        self.unit = unit


class SyncCancelledError(EtsySyncError):
    """Sync was cancelled at a page boundary; committed units stay committed."""

    def __init__(self, store_id: Optional[str] = None, processed: int = 0):
        super().__init__("Sync cancelled", store_id=store_id)
        self.processed = processed
