"""Connected store listing endpoint."""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from etsydash.database import get_db
from etsydash.deps import get_current_user_id
from etsydash.schemas import StoreOut
from etsydash.services.store_service import list_store_summaries

router = APIRouter(prefix="/stores", tags=["Stores"])


@router.get("", response_model=List[StoreOut])
def list_stores(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> List[StoreOut]:
    """The caller's stores with listing/order/customer counts."""
    return [
        StoreOut(
            id=summary.store.id,
            etsy_shop_id=summary.store.etsy_shop_id,
            shop_name=summary.store.shop_name,
            shop_url=summary.store.shop_url,
            currency=summary.store.currency,
            is_active=summary.store.is_active,
            last_sync_at=summary.store.last_sync_at,
            sync_status=summary.store.sync_status,
            last_sync_error=summary.store.last_sync_error,
            listing_count=summary.listing_count,
            order_count=summary.order_count,
            customer_count=summary.customer_count,
        )
        for summary in list_store_summaries(db, user_id)
    ]
