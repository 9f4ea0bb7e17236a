"""Listing catalog endpoints.

WHAT:
    Browse synced listings, open one with its recent sales, and edit the
    local copy.

WHY:
    Sellers work from the synced catalog; Etsy stays the source of truth and
    the next sync overwrites local edits.
"""

import logging
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from etsydash.database import get_db
from etsydash.deps import get_current_user_id
from etsydash.models import Listing
from etsydash.schemas import (
    ListingDetailOut,
    ListingListResponse,
    ListingSaleOut,
    ListingSummaryOut,
    ListingUpdate,
    PaginationOut,
)
from etsydash.services import listing_service as catalog
from etsydash.services.store_service import get_owned_store_ids

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/listings", tags=["Listings"])


def _summary(listing: Listing, shop_name: str, order_item_count: int) -> dict:
    return dict(
        id=listing.id,
        store_id=listing.store_id,
        shop_name=shop_name,
        etsy_listing_id=listing.etsy_listing_id,
        title=listing.title,
        price=listing.price,
        currency=listing.currency,
        quantity=listing.quantity,
        state=listing.state,
        views=listing.views,
        favorites=listing.num_favorers,
        tags=listing.tags or [],
        primary_image_url=listing.primary_image_url,
        etsy_url=listing.etsy_url,
        updated_at=listing.updated_at,
        order_item_count=order_item_count,
    )


def _detail(db: Session, listing: Listing) -> ListingDetailOut:
    sales = catalog.recent_sales(db, listing)
    return ListingDetailOut(
        **_summary(listing, listing.store.shop_name, len(listing.order_items)),
        description=listing.description,
        materials=listing.materials or [],
        images=listing.images or [],
        processing_min=listing.processing_min,
        processing_max=listing.processing_max,
        recent_sales=[
            ListingSaleOut(
                id=item.id,
                title=item.title,
                quantity=item.quantity,
                price=item.price,
                listing_id=item.listing_id,
                order_id=item.order_id,
                ordered_at=item.order.etsy_created_at,
                buyer_name=item.order.buyer_name,
            )
            for item in sales
        ],
    )


def _load_listing(db: Session, listing_id: UUID, user_id: str) -> Listing:
    try:
        return catalog.get_listing_for_user(db, listing_id, user_id)
    except catalog.ListingNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found")
    except catalog.ListingAccessDeniedError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")


@router.get("", response_model=ListingListResponse)
def list_listings(
    store_id: Optional[UUID] = Query(default=None),
    state: Literal["all", "active", "inactive", "draft", "expired", "unknown"] = Query(default="all"),
    search: Optional[str] = Query(default=None, description="Title substring or exact tag"),
    sort_by: Literal["title", "price", "views", "favorites", "updatedAt"] = Query(default="updatedAt"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ListingListResponse:
    store_ids = get_owned_store_ids(db, user_id, store_id)
    result = catalog.list_listings(
        db,
        store_ids,
        state=state,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return ListingListResponse(
        data=[
            ListingSummaryOut(**_summary(row.listing, row.shop_name, row.order_item_count))
            for row in result.items
        ],
        pagination=PaginationOut(
            total=result.total,
            page=result.page,
            limit=result.limit,
            total_pages=result.total_pages,
        ),
    )


@router.get("/{listing_id}", response_model=ListingDetailOut)
def get_listing(
    listing_id: UUID,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ListingDetailOut:
    listing = _load_listing(db, listing_id, user_id)
    return _detail(db, listing)


@router.patch("/{listing_id}", response_model=ListingDetailOut)
def update_listing(
    listing_id: UUID,
    payload: ListingUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ListingDetailOut:
    listing = _load_listing(db, listing_id, user_id)
    catalog.update_listing(db, listing, payload.model_dump(exclude_unset=True))
    return _detail(db, listing)
