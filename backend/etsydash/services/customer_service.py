"""Customer CRM read side and note lifecycle.

WHAT:
    Search/sort/paginate customers across a seller's stores, load one customer
    with recent orders and notes, replace tags, and manage follow-up notes.

WHY:
    Sync owns identity and aggregates; everything seller-managed (tags, notes)
    goes through here so sync never overwrites it.

REFERENCES:
    - etsydash/routers/customers.py
    - etsydash/services/etsy_sync_service.py::recompute_customer_aggregates
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from etsydash.models import Customer, CustomerNote, NoteTypeEnum, Order, Store

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "lastOrderAt": Customer.last_order_at,
    "totalSpent": Customer.total_spent,
    "totalOrders": Customer.total_orders,
    "name": Customer.name,
}


class CustomerNotFoundError(LookupError):
    pass


class NoteNotFoundError(LookupError):
    pass


class CustomerAccessDeniedError(PermissionError):
    pass


@dataclass
class CustomerRow:
    customer: Customer
    shop_name: str
    order_count: int = 0
    note_count: int = 0


@dataclass
class CustomerPage:
    items: List[CustomerRow] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def list_customers(
    db: Session,
    store_ids: Sequence[UUID],
    *,
    search: Optional[str] = None,
    tag: Optional[str] = None,
    sort_by: str = "lastOrderAt",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 20,
) -> CustomerPage:
    """Filtered, sorted page of customers for the given stores."""
    page = max(1, page)
    limit = max(1, limit)
    if not store_ids:
        return CustomerPage(page=page, limit=limit)

    query = (
        db.query(Customer, Store.shop_name)
        .join(Store, Store.id == Customer.store_id)
        .filter(Customer.store_id.in_(store_ids))
    )
    if search:
        pattern = f"%{search.lower()}%"
        query = query.filter(or_(
            func.lower(Customer.name).like(pattern),
            func.lower(Customer.email).like(pattern),
        ))

    column = SORT_COLUMNS.get(sort_by, Customer.last_order_at)
    ordering = column.asc() if sort_order == "asc" else column.desc()
    query = query.order_by(ordering, Customer.id)

    if tag:
        # Tags are a JSON list; filter in Python to stay dialect-neutral
        matches: List[Tuple[Customer, str]] = [
            (c, shop) for c, shop in query.all() if tag in (c.tags or [])
        ]
        total = len(matches)
        rows = matches[(page - 1) * limit: page * limit]
    else:
        total = query.count()
        rows = query.offset((page - 1) * limit).limit(limit).all()

    customer_ids = [c.id for c, _ in rows]
    order_counts = dict(
        db.query(Order.customer_id, func.count(Order.id))
        .filter(Order.customer_id.in_(customer_ids))
        .group_by(Order.customer_id)
        .all()
    ) if customer_ids else {}
    note_counts = dict(
        db.query(CustomerNote.customer_id, func.count(CustomerNote.id))
        .filter(CustomerNote.customer_id.in_(customer_ids))
        .group_by(CustomerNote.customer_id)
        .all()
    ) if customer_ids else {}

    return CustomerPage(
        items=[
            CustomerRow(
                customer=c,
                shop_name=shop,
                order_count=int(order_counts.get(c.id, 0)),
                note_count=int(note_counts.get(c.id, 0)),
            )
            for c, shop in rows
        ],
        total=total,
        page=page,
        limit=limit,
    )


def get_customer_for_user(db: Session, customer_id: UUID, user_id: str) -> Customer:
    """Load a customer and verify the caller owns its store.

    Raises:
        CustomerNotFoundError, CustomerAccessDeniedError
    """
    customer = db.get(Customer, customer_id)
    if customer is None:
        raise CustomerNotFoundError(str(customer_id))
    if customer.store.user_id != user_id:
        raise CustomerAccessDeniedError(str(customer_id))
    return customer


def recent_orders(db: Session, customer: Customer, limit: int = 10) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.customer_id == customer.id)
        .order_by(Order.etsy_created_at.desc())
        .limit(limit)
        .all()
    )


def replace_tags(db: Session, customer: Customer, tags: Sequence[str]) -> Customer:
    # De-duplicate while keeping the seller's order
    customer.tags = list(dict.fromkeys(t.strip() for t in tags if t and t.strip()))
    db.commit()
    logger.info("[CRM] Updated tags for customer %s (%d tags)", customer.id, len(customer.tags))
    return customer


def add_note(
    db: Session,
    customer: Customer,
    content: str,
    note_type: NoteTypeEnum = NoteTypeEnum.note,
    due_date: Optional[datetime] = None,
) -> CustomerNote:
    note = CustomerNote(
        customer_id=customer.id,
        content=content,
        type=note_type,
        due_date=due_date,
        is_completed=False,
    )
    db.add(note)
    db.commit()
    db.refresh(note)
    logger.info("[CRM] Added %s note to customer %s", note_type.value, customer.id)
    return note


def _get_note(db: Session, customer: Customer, note_id: UUID) -> CustomerNote:
    note = db.get(CustomerNote, note_id)
    if note is None or note.customer_id != customer.id:
        raise NoteNotFoundError(str(note_id))
    return note


def set_note_completed(db: Session, customer: Customer, note_id: UUID, is_completed: bool) -> CustomerNote:
    note = _get_note(db, customer, note_id)
    note.is_completed = is_completed
    db.commit()
    db.refresh(note)
    return note


def delete_note(db: Session, customer: Customer, note_id: UUID) -> None:
    note = _get_note(db, customer, note_id)
    db.delete(note)
    db.commit()
    logger.info("[CRM] Deleted note %s from customer %s", note_id, customer.id)
