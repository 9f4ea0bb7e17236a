"""Etsy synchronization endpoint.

WHAT:
    Thin HTTP wrapper for the Etsy sync service.

WHY:
    - Router handles auth, ownership and request parsing only
    - Business logic is shared with the ARQ worker
    - Sync errors map to stable HTTP codes so the UI can prompt a reconnect

REFERENCES:
    - etsydash/services/etsy_sync_service.py
    - etsydash/workers/arq_worker.py (scheduled path)
"""

from __future__ import annotations

import logging
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from etsydash.database import get_db
from etsydash.deps import Settings, get_current_user_id, get_settings
from etsydash.services.etsy_errors import (
    CredentialExpiredError,
    EtsySyncError,
    MarketplaceApiError,
    PersistenceError,
    StoreNotFoundError,
    SyncCancelledError,
    TokenRefreshError,
)
from etsydash.services.etsy_sync_service import EtsySyncResponse, RetryPolicy, sync_store
from etsydash.services.store_service import get_owned_store

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class EtsySyncRequest(BaseModel):
    """Request body for POST /etsy/sync."""

    store_id: UUID = Field(description="Store to sync")
    sync_type: Literal["all", "listings", "orders"] = Field(default="all")
    days_back: int = Field(default=30, ge=1, le=365, description="Receipt window for order sync")


class EtsySyncCounts(BaseModel):
    listings: int = 0
    orders: int = 0


class EtsySyncStatsResponse(BaseModel):
    """Statistics returned from Etsy sync operations."""

    listings_created: int = Field(default=0)
    listings_updated: int = Field(default=0)
    listings_unchanged: int = Field(default=0)
    orders_created: int = Field(default=0)
    orders_updated: int = Field(default=0)
    order_items_created: int = Field(default=0)
    customers_created: int = Field(default=0)
    customers_updated: int = Field(default=0)
    retries: int = Field(default=0, description="Gateway calls retried after 429/5xx")
    duration_seconds: float = Field(default=0.0)

    model_config = {"from_attributes": True}


class EtsySyncAPIResponse(BaseModel):
    success: bool
    synced: EtsySyncCounts
    stats: EtsySyncStatsResponse
    message: str = ""


def _to_api_response(result: EtsySyncResponse) -> EtsySyncAPIResponse:
    """Convert the internal dataclass to the API response model."""
    return EtsySyncAPIResponse(
        success=result.success,
        synced=EtsySyncCounts(listings=result.listings_synced, orders=result.orders_synced),
        stats=EtsySyncStatsResponse.model_validate(result.stats),
        message=result.message,
    )


def _to_http_error(exc: EtsySyncError) -> HTTPException:
    if isinstance(exc, StoreNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, (CredentialExpiredError, SyncCancelledError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if isinstance(exc, (TokenRefreshError, MarketplaceApiError)):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Sync failed")


router = APIRouter(prefix="/etsy", tags=["Etsy Sync"])


@router.post("/sync", response_model=EtsySyncAPIResponse)
async def sync_etsy_store(
    request: EtsySyncRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
) -> EtsySyncAPIResponse:
    """Sync listings and/or orders for one of the caller's stores."""
    logger.info(
        "[ETSY_SYNC] HTTP sync requested: store=%s type=%s days_back=%d",
        request.store_id, request.sync_type, request.days_back,
    )

    if get_owned_store(db, user_id, request.store_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")

    try:
        result = await sync_store(
            db,
            request.store_id,
            sync_type=request.sync_type,
            days_back=request.days_back,
            retry=RetryPolicy.from_settings(settings),
        )
    except EtsySyncError as exc:
        raise _to_http_error(exc) from exc

    return _to_api_response(result)
