"""Customer CRM endpoints.

WHAT:
    List/search customers, customer detail, tag replacement and notes.

WHY:
    Sync writes identity and aggregates; sellers manage tags and notes here.
"""

import logging
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from etsydash.database import get_db
from etsydash.deps import get_current_user_id
from etsydash.models import Customer
from etsydash.schemas import (
    CustomerDetailOut,
    CustomerListResponse,
    CustomerNoteCreate,
    CustomerNoteOut,
    CustomerNoteUpdate,
    CustomerSummaryOut,
    CustomerTagsUpdate,
    OrderOut,
    PaginationOut,
)
from etsydash.services import customer_service as crm
from etsydash.services.store_service import get_owned_store_ids

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/customers", tags=["Customers"])


def _summary(customer: Customer, shop_name: str, order_count: int, note_count: int) -> dict:
    return dict(
        id=customer.id,
        store_id=customer.store_id,
        shop_name=shop_name,
        email=customer.email,
        name=customer.name,
        tags=customer.tags or [],
        total_orders=customer.total_orders,
        total_spent=customer.total_spent,
        average_order=customer.average_order,
        first_order_at=customer.first_order_at,
        last_order_at=customer.last_order_at,
        order_count=order_count,
        note_count=note_count,
    )


def _load_customer(db: Session, customer_id: UUID, user_id: str) -> Customer:
    try:
        return crm.get_customer_for_user(db, customer_id, user_id)
    except crm.CustomerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    except crm.CustomerAccessDeniedError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")


@router.get("", response_model=CustomerListResponse)
def list_customers(
    store_id: Optional[UUID] = Query(default=None),
    search: Optional[str] = Query(default=None, description="Case-insensitive name/email match"),
    tag: Optional[str] = Query(default=None),
    sort_by: Literal["lastOrderAt", "totalSpent", "totalOrders", "name"] = Query(default="lastOrderAt"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> CustomerListResponse:
    store_ids = get_owned_store_ids(db, user_id, store_id)
    result = crm.list_customers(
        db,
        store_ids,
        search=search,
        tag=tag,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return CustomerListResponse(
        data=[
            CustomerSummaryOut(**_summary(row.customer, row.shop_name, row.order_count, row.note_count))
            for row in result.items
        ],
        pagination=PaginationOut(
            total=result.total,
            page=result.page,
            limit=result.limit,
            total_pages=result.total_pages,
        ),
    )


@router.get("/{customer_id}", response_model=CustomerDetailOut)
def get_customer(
    customer_id: UUID,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> CustomerDetailOut:
    customer = _load_customer(db, customer_id, user_id)
    orders = crm.recent_orders(db, customer)
    return CustomerDetailOut(
        **_summary(customer, customer.store.shop_name, customer.total_orders, len(customer.notes)),
        etsy_user_id=customer.etsy_user_id,
        orders=[OrderOut.model_validate(o) for o in orders],
        notes=[CustomerNoteOut.model_validate(n) for n in customer.notes],
    )


@router.patch("/{customer_id}/tags", response_model=CustomerSummaryOut)
def update_customer_tags(
    customer_id: UUID,
    payload: CustomerTagsUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> CustomerSummaryOut:
    customer = _load_customer(db, customer_id, user_id)
    crm.replace_tags(db, customer, payload.tags)
    return CustomerSummaryOut(
        **_summary(customer, customer.store.shop_name, customer.total_orders, len(customer.notes))
    )


@router.post("/{customer_id}/notes", response_model=CustomerNoteOut, status_code=status.HTTP_201_CREATED)
def create_note(
    customer_id: UUID,
    payload: CustomerNoteCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> CustomerNoteOut:
    customer = _load_customer(db, customer_id, user_id)
    note = crm.add_note(db, customer, payload.content, payload.type, payload.due_date)
    return CustomerNoteOut.model_validate(note)


@router.patch("/{customer_id}/notes/{note_id}", response_model=CustomerNoteOut)
def update_note(
    customer_id: UUID,
    note_id: UUID,
    payload: CustomerNoteUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> CustomerNoteOut:
    customer = _load_customer(db, customer_id, user_id)
    try:
        note = crm.set_note_completed(db, customer, note_id, payload.is_completed)
    except crm.NoteNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Note not found")
    return CustomerNoteOut.model_validate(note)


@router.delete("/{customer_id}/notes/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_note(
    customer_id: UUID,
    note_id: UUID,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> None:
    customer = _load_customer(db, customer_id, user_id)
    try:
        crm.delete_note(db, customer, note_id)
    except crm.NoteNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Note not found")
