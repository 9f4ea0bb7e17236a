"""Listing catalog read side and local edits.

WHAT:
    Filter/sort/paginate a seller's listings, load one listing with its recent
    sales, and apply seller edits to the local copy.

WHY:
    Listings are the main entity sync writes; the dashboard browses them here
    without touching Etsy.

REFERENCES:
    - etsydash/routers/listings.py
    - etsydash/services/customer_service.py (same paging/ownership shape)
"""

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from etsydash.models import Listing, ListingStateEnum, Order, OrderItem, Store

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "title": Listing.title,
    "price": Listing.price,
    "views": Listing.views,
    "favorites": Listing.num_favorers,
    "updatedAt": Listing.updated_at,
}

EDITABLE_FIELDS = ("title", "description", "price", "tags")


class ListingNotFoundError(LookupError):
    pass


class ListingAccessDeniedError(PermissionError):
    pass


@dataclass
class ListingRow:
    listing: Listing
    shop_name: str
    order_item_count: int = 0


@dataclass
class ListingPage:
    items: List[ListingRow] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _matches_search(listing: Listing, needle: str) -> bool:
    if needle in (listing.title or "").lower():
        return True
    return needle in [str(t).lower() for t in (listing.tags or [])]


def list_listings(
    db: Session,
    store_ids: Sequence[UUID],
    *,
    state: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "updatedAt",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 20,
) -> ListingPage:
    """Filtered, sorted page of listings for the given stores.

    `search` matches the title case-insensitively or any tag exactly
    (tags compared lower-cased). `state="all"` disables the state filter.
    """
    page = max(1, page)
    limit = max(1, limit)
    if not store_ids:
        return ListingPage(page=page, limit=limit)

    query = (
        db.query(Listing, Store.shop_name)
        .join(Store, Store.id == Listing.store_id)
        .filter(Listing.store_id.in_(store_ids))
    )
    if state and state != "all":
        query = query.filter(Listing.state == ListingStateEnum(state))

    column = SORT_COLUMNS.get(sort_by, Listing.updated_at)
    ordering = column.asc() if sort_order == "asc" else column.desc()
    query = query.order_by(ordering, Listing.id)

    if search:
        # Tags are a JSON list; filter in Python to stay dialect-neutral
        needle = search.lower()
        matches = [(listing, shop) for listing, shop in query.all() if _matches_search(listing, needle)]
        total = len(matches)
        rows = matches[(page - 1) * limit: page * limit]
    else:
        total = query.count()
        rows = query.offset((page - 1) * limit).limit(limit).all()

    listing_ids = [listing.id for listing, _ in rows]
    item_counts = dict(
        db.query(OrderItem.listing_id, func.count(OrderItem.id))
        .filter(OrderItem.listing_id.in_(listing_ids))
        .group_by(OrderItem.listing_id)
        .all()
    ) if listing_ids else {}

    return ListingPage(
        items=[
            ListingRow(listing=listing, shop_name=shop, order_item_count=int(item_counts.get(listing.id, 0)))
            for listing, shop in rows
        ],
        total=total,
        page=page,
        limit=limit,
    )


def get_listing_for_user(db: Session, listing_id: UUID, user_id: str) -> Listing:
    """Load a listing and verify the caller owns its store.

    Raises:
        ListingNotFoundError, ListingAccessDeniedError
    """
    listing = db.get(Listing, listing_id)
    if listing is None:
        raise ListingNotFoundError(str(listing_id))
    if listing.store.user_id != user_id:
        raise ListingAccessDeniedError(str(listing_id))
    return listing


def recent_sales(db: Session, listing: Listing, limit: int = 10) -> List[OrderItem]:
    """Latest order lines for a listing, newest order first."""
    return (
        db.query(OrderItem)
        .join(Order, Order.id == OrderItem.order_id)
        .filter(OrderItem.listing_id == listing.id)
        .order_by(Order.etsy_created_at.desc(), OrderItem.id)
        .limit(limit)
        .all()
    )


def update_listing(db: Session, listing: Listing, changes: Dict[str, Any]) -> Listing:
    """Apply seller edits to the local copy only.

    The next listings sync overwrites these fields with Etsy's values.
    """
    applied = []
    for name in EDITABLE_FIELDS:
        if name not in changes:
            continue
        value = changes[name]
        if value is None and name in ("title", "price"):
            continue
        if name == "price":
            value = Decimal(str(value))
        if name == "tags" and value is not None:
            value = list(dict.fromkeys(t.strip() for t in value if t and t.strip()))
        setattr(listing, name, value)
        applied.append(name)

    db.commit()
    db.refresh(listing)
    logger.info("[CATALOG] Updated listing %s fields=%s", listing.id, applied)
    return listing
