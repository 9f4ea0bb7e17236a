"""Store ownership and summary queries used by the routers."""

from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from etsydash.models import Customer, Listing, Order, Store


@dataclass
class StoreSummary:
    store: Store
    listing_count: int = 0
    order_count: int = 0
    customer_count: int = 0


def get_owned_store_ids(db: Session, user_id: str, store_id: Optional[UUID] = None) -> List[UUID]:
    """Store ids owned by the user, optionally narrowed to one store.

    A store_id the user does not own yields an empty list.
    """
    query = db.query(Store.id).filter(Store.user_id == user_id)
    if store_id is not None:
        query = query.filter(Store.id == store_id)
    return [row[0] for row in query.all()]


def get_owned_store(db: Session, user_id: str, store_id: UUID) -> Optional[Store]:
    return db.query(Store).filter(Store.id == store_id, Store.user_id == user_id).first()


def list_store_summaries(db: Session, user_id: str) -> List[StoreSummary]:
    """The user's stores with listing, order and customer counts."""
    stores = (
        db.query(Store)
        .filter(Store.user_id == user_id)
        .order_by(Store.created_at.desc())
        .all()
    )
    if not stores:
        return []

    store_ids = [s.id for s in stores]

    def _counts(model) -> dict:
        rows = (
            db.query(model.store_id, func.count(model.id))
            .filter(model.store_id.in_(store_ids))
            .group_by(model.store_id)
            .all()
        )
        return {store_id: int(count) for store_id, count in rows}

    listings = _counts(Listing)
    orders = _counts(Order)
    customers = _counts(Customer)

    return [
        StoreSummary(
            store=s,
            listing_count=listings.get(s.id, 0),
            order_count=orders.get(s.id, 0),
            customer_count=customers.get(s.id, 0),
        )
        for s in stores
    ]
