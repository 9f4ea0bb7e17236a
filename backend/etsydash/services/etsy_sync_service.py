"""Etsy sync service functions.

WHAT:
    Reconciles one store's Etsy data into the local database:
    - Listings (catalog snapshot with ranked images)
    - Receipts → Orders, OrderItems and Customers (with lifetime aggregates)

WHY:
    - HTTP endpoints and the ARQ worker share the same logic.
    - Every write is an upsert keyed by the Etsy natural key, so a sync that
      was killed halfway is repaired by simply running it again.
    - Each listing, and each receipt with its items and customer aggregates,
      is committed as its own unit. A failure rolls back only that unit.

REFERENCES:
    - etsydash/services/etsy_client.py (gateway and pagination)
    - etsydash/services/fee_calculator.py (fees fixed at first ingestion)
    - https://developers.etsy.com/documentation/reference#operation/getShopReceipts
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from etsydash.models import (
    Customer,
    Listing,
    ListingStateEnum,
    Order,
    OrderItem,
    OrderStatusEnum,
    Store,
    SyncStatusEnum,
)
from etsydash.services.etsy_client import EtsyClient, EtsyPage, iter_pages
from etsydash.services.etsy_config import EtsyClientConfig
from etsydash.services.etsy_errors import (
    EtsySyncError,
    MarketplaceApiError,
    PersistenceError,
    StoreNotFoundError,
    SyncCancelledError,
)
from etsydash.services.fee_calculator import compute_fees, to_decimal
from etsydash.services.token_service import TokenManager, get_token_manager
from etsydash.utils.dates import from_epoch, to_epoch, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MONEY_QUANTUM = Decimal("0.0001")


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

@dataclass
class EtsySyncStats:
    """Statistics from an Etsy sync operation."""
    listings_created: int = 0
    listings_updated: int = 0
    listings_unchanged: int = 0
    orders_created: int = 0
    orders_updated: int = 0
    order_items_created: int = 0
    customers_created: int = 0
    customers_updated: int = 0
    retries: int = 0
    duration_seconds: float = 0.0


@dataclass
class EtsySyncResponse:
    """Response from `sync_store`."""
    success: bool
    stats: EtsySyncStats
    listings_synced: int = 0
    orders_synced: int = 0
    errors: List[str] = field(default_factory=list)
    message: str = ""


# =============================================================================
# RETRY POLICY
# =============================================================================

@dataclass
class RetryPolicy:
    """Bounded retry with exponential backoff for retryable gateway errors.

    Only MarketplaceApiError with `retryable` set (429, 5xx, transport) is
    retried. Token errors and other 4xx propagate on the first attempt.
    """
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 10.0
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def delay_for(self, attempt: int, error: MarketplaceApiError) -> float:
        if error.retry_after is not None:
            return min(error.retry_after, self.max_backoff_seconds)
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.SYNC_MAX_RETRIES),
            backoff_seconds=settings.SYNC_RETRY_BACKOFF_SECONDS,
        )


async def call_with_retry(
    policy: RetryPolicy,
    label: str,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    stats: Optional[EtsySyncStats] = None,
    **kwargs: Any,
) -> T:
    """Await `fn(*args, **kwargs)`, retrying retryable Etsy errors."""
    attempt = 1
    while True:
        try:
            return await fn(*args, **kwargs)
        except MarketplaceApiError as exc:
            if not exc.retryable or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt, exc)
            logger.warning(
                "[ETSY_SYNC] %s failed with status=%s, retrying in %.1fs (attempt %d/%d)",
                label, exc.status_code, delay, attempt, policy.max_attempts,
            )
            if stats is not None:
                stats.retries += 1
            await policy.sleep(delay)
            attempt += 1


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _get_store(db: Session, store_id: UUID) -> Store:
    store = db.get(Store, store_id)
    if store is None:
        raise StoreNotFoundError(store_id)
    return store


def _check_cancelled(cancel_event: Optional[asyncio.Event], store: Store, processed: int) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info("[ETSY_SYNC] Sync cancelled for store %s after %d units", store.id, processed)
        raise SyncCancelledError(store_id=str(store.id), processed=processed)


def _money(value: Optional[Dict[str, Any]]) -> Decimal:
    """Convert an Etsy money object {amount, divisor, currency_code} to decimal units."""
    if not value:
        return Decimal("0")
    amount = to_decimal(value.get("amount") or 0)
    divisor = to_decimal(value.get("divisor") or 1)
    if divisor == 0:
        divisor = Decimal("1")
    return (amount / divisor).quantize(_MONEY_QUANTUM)


def _currency(value: Optional[Dict[str, Any]], default: str) -> str:
    if value and value.get("currency_code"):
        return value["currency_code"]
    return default


def _map_listing_state(state: Optional[str]) -> ListingStateEnum:
    if not state:
        return ListingStateEnum.unknown
    try:
        return ListingStateEnum(state.lower())
    except ValueError:
        return ListingStateEnum.unknown


def _map_order_status(receipt: Dict[str, Any]) -> OrderStatusEnum:
    """shipped > paid > pending."""
    if receipt.get("is_shipped"):
        return OrderStatusEnum.shipped
    if receipt.get("is_paid"):
        return OrderStatusEnum.paid
    return OrderStatusEnum.pending


def _apply_fields(obj: Any, values: Dict[str, Any]) -> bool:
    """Assign only the attributes whose value differs. Returns True if any changed."""
    changed = False
    for name, value in values.items():
        if getattr(obj, name) != value:
            setattr(obj, name, value)
            changed = True
    return changed


def _commit_unit(db: Session, store: Store, unit: str) -> None:
    """Commit one logical unit, rolling it back on failure."""
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("[ETSY_SYNC] Failed to persist %s for store %s: %s", unit, store.id, exc)
        raise PersistenceError(
            f"Failed to persist {unit}", store_id=str(store.id), unit=unit
        ) from exc


# =============================================================================
# LISTINGS
# =============================================================================

def _listing_values(listing: Dict[str, Any], images: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Mutable listing fields, refreshed on every sync."""
    image_urls = [img.get("url_fullxfull") for img in images if img.get("url_fullxfull")]
    shipping_profile = listing.get("shipping_profile") or {}
    return {
        "title": listing.get("title") or "",
        "description": listing.get("description"),
        "price": _money(listing.get("price")),
        "quantity": int(listing.get("quantity") or 0),
        "state": _map_listing_state(listing.get("state")),
        "views": int(listing.get("views") or 0),
        "num_favorers": int(listing.get("num_favorers") or 0),
        "tags": list(listing.get("tags") or []),
        "materials": list(listing.get("materials") or []),
        "images": image_urls,
        "primary_image_url": image_urls[0] if image_urls else None,
        "processing_min": shipping_profile.get("min_processing_days"),
        "processing_max": shipping_profile.get("max_processing_days"),
        "etsy_updated_at": from_epoch(listing.get("updated_timestamp")),
    }


def _upsert_listing(
    db: Session,
    store: Store,
    listing: Dict[str, Any],
    images: List[Dict[str, Any]],
) -> Tuple[Listing, str]:
    """Create or update one listing. Returns (row, "created" | "updated" | "unchanged")."""
    external_id = str(listing["listing_id"])
    values = _listing_values(listing, images)

    existing = db.query(Listing).filter(
        Listing.store_id == store.id,
        Listing.etsy_listing_id == external_id,
    ).first()

    if existing:
        changed = _apply_fields(existing, values)
        return existing, "updated" if changed else "unchanged"

    new_listing = Listing(
        store_id=store.id,
        etsy_listing_id=external_id,
        currency=_currency(listing.get("price"), store.currency or "USD"),
        etsy_url=listing.get("url"),
        etsy_created_at=from_epoch(listing.get("created_timestamp")),
        **values,
    )
    db.add(new_listing)
    return new_listing, "created"


async def sync_listings(
    db: Session,
    store_id: UUID,
    client: EtsyClient,
    *,
    retry: Optional[RetryPolicy] = None,
    cancel_event: Optional[asyncio.Event] = None,
    stats: Optional[EtsySyncStats] = None,
) -> int:
    """Sync every listing of the store's shop.

    WHAT: Page through listings, fetch ranked images, upsert by
          (store_id, etsy_listing_id)
    WHY: Listings feed the catalog views, top-listing analytics and the
         OrderItem → Listing link made during order sync

    Returns:
        Number of listings processed (created + updated + unchanged)

    Raises:
        StoreNotFoundError, CredentialExpiredError, TokenRefreshError,
        MarketplaceApiError, PersistenceError, SyncCancelledError
    """
    retry = retry or RetryPolicy()
    stats = stats if stats is not None else EtsySyncStats()
    store = _get_store(db, store_id)
    shop_id = store.etsy_shop_id
    processed = 0

    logger.info("[ETSY_SYNC] Starting listing sync: store=%s, shop=%s", store.id, shop_id)

    async def fetch_page(offset: int, limit: int) -> EtsyPage:
        return await call_with_retry(
            retry, f"listings page offset={offset}", client.get_listings,
            shop_id, limit=limit, offset=offset, stats=stats,
        )

    async for page in iter_pages(fetch_page, client.config.page_size):
        _check_cancelled(cancel_event, store, processed)
        logger.info(
            "[ETSY_SYNC] Listing page offset=%d: %d results (count=%d)",
            page.offset, len(page.results), page.count,
        )

        for listing in page.results:
            listing_id = str(listing["listing_id"])
            images = await call_with_retry(
                retry, f"images for listing {listing_id}", client.get_listing_images,
                listing_id, stats=stats,
            )
            try:
                _, outcome = _upsert_listing(db, store, listing, images)
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("[ETSY_SYNC] Failed to apply listing %s: %s", listing_id, exc)
                raise PersistenceError(
                    f"Failed to persist listing {listing_id}",
                    store_id=str(store.id),
                    unit=f"listing {listing_id}",
                ) from exc
            _commit_unit(db, store, f"listing {listing_id}")

            if outcome == "created":
                stats.listings_created += 1
            elif outcome == "updated":
                stats.listings_updated += 1
            else:
                stats.listings_unchanged += 1
            processed += 1

    store.last_sync_at = utcnow()
    _commit_unit(db, store, "store sync timestamp")

    logger.info(
        "[ETSY_SYNC] Listing sync complete: store=%s, processed=%d, created=%d, updated=%d",
        store.id, processed, stats.listings_created, stats.listings_updated,
    )
    return processed


# =============================================================================
# ORDERS
# =============================================================================

def _upsert_customer(db: Session, store: Store, receipt: Dict[str, Any], stats: EtsySyncStats) -> Customer:
    email = receipt["buyer_email"]
    name = receipt.get("name")

    existing = db.query(Customer).filter(
        Customer.store_id == store.id,
        Customer.email == email,
    ).first()

    if existing:
        # Display name only; tags and aggregates are not touched here
        if _apply_fields(existing, {"name": name}):
            stats.customers_updated += 1
        return existing

    buyer_user_id = receipt.get("buyer_user_id")
    customer = Customer(
        store_id=store.id,
        email=email,
        name=name,
        etsy_user_id=str(buyer_user_id) if buyer_user_id is not None else None,
        tags=[],
        total_orders=0,
        total_spent=Decimal("0"),
        average_order=Decimal("0"),
    )
    db.add(customer)
    db.flush()
    stats.customers_created += 1
    return customer


def _upsert_order(
    db: Session,
    store: Store,
    receipt: Dict[str, Any],
    customer: Optional[Customer],
    stats: EtsySyncStats,
) -> Order:
    external_id = str(receipt["receipt_id"])
    status_values = {
        "status": _map_order_status(receipt),
        "is_paid": bool(receipt.get("is_paid")),
        "is_shipped": bool(receipt.get("is_shipped")),
    }

    existing = db.query(Order).filter(
        Order.store_id == store.id,
        Order.etsy_receipt_id == external_id,
    ).first()

    if existing:
        # Financial fields are fixed at first ingestion
        changed = _apply_fields(existing, status_values)
        if existing.customer_id is None and customer is not None:
            existing.customer_id = customer.id
            changed = True
        if changed:
            stats.orders_updated += 1
        return existing

    order_total = _money(receipt.get("grandtotal"))
    subtotal = _money(receipt.get("subtotal"))
    transactions = receipt.get("transactions") or []

    # One listing fee per transaction line, not per unit
    fees = compute_fees(subtotal, 1, 0, listing_count=len(transactions))
    etsy_fees = (fees.listing_fee + fees.transaction_fee).quantize(_MONEY_QUANTUM)
    processing_fees = fees.processing_fee.quantize(_MONEY_QUANTUM)

    order = Order(
        store_id=store.id,
        customer_id=customer.id if customer else None,
        etsy_receipt_id=external_id,
        order_total=order_total,
        subtotal=subtotal,
        shipping_cost=_money(receipt.get("total_shipping_cost")),
        tax_cost=_money(receipt.get("total_tax_cost")),
        discount_amount=_money(receipt.get("discount_amt")),
        etsy_fees=etsy_fees,
        processing_fees=processing_fees,
        net_revenue=order_total - etsy_fees - processing_fees,
        currency=_currency(receipt.get("grandtotal"), store.currency or "USD"),
        buyer_email=receipt.get("buyer_email"),
        buyer_name=receipt.get("name"),
        shipping_address={"formatted": receipt.get("formatted_address")},
        etsy_created_at=from_epoch(receipt.get("create_timestamp")) or utcnow(),
        **status_values,
    )
    db.add(order)
    db.flush()
    stats.orders_created += 1
    return order


def _insert_order_items(
    db: Session,
    store: Store,
    order: Order,
    transactions: List[Dict[str, Any]],
    stats: EtsySyncStats,
) -> None:
    """First write wins: existing line items are left exactly as they are."""
    for transaction in transactions:
        transaction_id = str(transaction["transaction_id"])
        item_id = f"{order.id}-{transaction_id}"
        if db.get(OrderItem, item_id) is not None:
            continue

        etsy_listing_id = transaction.get("listing_id")
        listing = None
        if etsy_listing_id is not None:
            listing = db.query(Listing).filter(
                Listing.store_id == store.id,
                Listing.etsy_listing_id == str(etsy_listing_id),
            ).first()

        db.add(OrderItem(
            id=item_id,
            order_id=order.id,
            listing_id=listing.id if listing else None,
            etsy_transaction_id=transaction_id,
            etsy_listing_id=str(etsy_listing_id) if etsy_listing_id is not None else None,
            title=transaction.get("title"),
            quantity=int(transaction.get("quantity") or 1),
            price=_money(transaction.get("price")),
            shipping_cost=_money(transaction.get("shipping_cost")),
            variations=transaction.get("variations") or [],
        ))
        db.flush()
        stats.order_items_created += 1


def recompute_customer_aggregates(db: Session, customer: Customer) -> bool:
    """Rewrite a customer's lifetime aggregates from all of their orders.

    Always a full recomputation, never an increment, so the numbers heal
    after partial failures or reprocessing. Returns True if anything changed.
    """
    db.flush()
    order_count, total_spent, first_order_at, last_order_at = db.query(
        func.count(Order.id),
        func.coalesce(func.sum(Order.order_total), 0),
        func.min(Order.etsy_created_at),
        func.max(Order.etsy_created_at),
    ).filter(Order.customer_id == customer.id).one()

    order_count = int(order_count or 0)
    total_spent = to_decimal(total_spent).quantize(_MONEY_QUANTUM)
    average_order = (total_spent / order_count).quantize(_MONEY_QUANTUM) if order_count else Decimal("0")

    return _apply_fields(customer, {
        "total_orders": order_count,
        "total_spent": total_spent,
        "average_order": average_order,
        "first_order_at": first_order_at,
        "last_order_at": last_order_at,
    })


def _apply_receipt(db: Session, store: Store, receipt: Dict[str, Any], stats: EtsySyncStats) -> Order:
    """Customer → Order → OrderItems → customer aggregates, uncommitted."""
    customer = None
    if receipt.get("buyer_email"):
        customer = _upsert_customer(db, store, receipt, stats)

    order = _upsert_order(db, store, receipt, customer, stats)
    _insert_order_items(db, store, order, receipt.get("transactions") or [], stats)

    if customer is not None:
        recompute_customer_aggregates(db, customer)
    return order


async def sync_orders(
    db: Session,
    store_id: UUID,
    client: EtsyClient,
    days_back: int = 30,
    *,
    retry: Optional[RetryPolicy] = None,
    cancel_event: Optional[asyncio.Event] = None,
    stats: Optional[EtsySyncStats] = None,
    now: Optional[datetime] = None,
) -> int:
    """Sync receipts created in the last `days_back` days.

    WHAT: Page through receipts and apply each one as a single committed unit
    WHY: Orders drive revenue analytics and customer lifetime aggregates

    Returns:
        Number of receipts processed

    Raises:
        StoreNotFoundError, CredentialExpiredError, TokenRefreshError,
        MarketplaceApiError, PersistenceError, SyncCancelledError
    """
    retry = retry or RetryPolicy()
    stats = stats if stats is not None else EtsySyncStats()
    store = _get_store(db, store_id)
    shop_id = store.etsy_shop_id
    min_created = to_epoch((now or utcnow()) - timedelta(days=days_back))
    processed = 0

    logger.info(
        "[ETSY_SYNC] Starting order sync: store=%s, shop=%s, days_back=%d",
        store.id, shop_id, days_back,
    )

    async def fetch_page(offset: int, limit: int) -> EtsyPage:
        return await call_with_retry(
            retry, f"receipts page offset={offset}", client.get_receipts,
            shop_id, min_created=min_created, limit=limit, offset=offset, stats=stats,
        )

    async for page in iter_pages(fetch_page, client.config.page_size):
        _check_cancelled(cancel_event, store, processed)
        logger.info(
            "[ETSY_SYNC] Receipt page offset=%d: %d results (count=%d)",
            page.offset, len(page.results), page.count,
        )

        for receipt in page.results:
            receipt_id = str(receipt["receipt_id"])
            try:
                _apply_receipt(db, store, receipt, stats)
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("[ETSY_SYNC] Failed to apply receipt %s: %s", receipt_id, exc)
                raise PersistenceError(
                    f"Failed to persist receipt {receipt_id}",
                    store_id=str(store.id),
                    unit=f"receipt {receipt_id}",
                ) from exc
            _commit_unit(db, store, f"receipt {receipt_id}")
            processed += 1

    store.last_sync_at = utcnow()
    _commit_unit(db, store, "store sync timestamp")

    logger.info(
        "[ETSY_SYNC] Order sync complete: store=%s, processed=%d, created=%d, updated=%d, items=%d",
        store.id, processed, stats.orders_created, stats.orders_updated, stats.order_items_created,
    )
    return processed


# =============================================================================
# ENTRY POINT
# =============================================================================

def build_client(
    db: Session,
    store: Store,
    *,
    config: Optional[EtsyClientConfig] = None,
    token_manager: Optional[TokenManager] = None,
) -> EtsyClient:
    """EtsyClient for a store using the process-wide token manager."""
    token_manager = token_manager or get_token_manager()
    return EtsyClient(config or token_manager.config, token_manager, db, store)


async def sync_store(
    db: Session,
    store_id: UUID,
    *,
    sync_type: str = "all",
    days_back: int = 30,
    client: Optional[EtsyClient] = None,
    retry: Optional[RetryPolicy] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> EtsySyncResponse:
    """Run listings and/or orders sync for one store, tracking sync status.

    Listings run before orders so new OrderItems can link to fresh listings.
    Errors are recorded on the store (sync_status=error, last_sync_error) and
    re-raised for the caller to map.
    """
    if sync_type not in ("all", "listings", "orders"):
        raise ValueError(f"Unknown sync_type: {sync_type}")

    start = time.monotonic()
    stats = EtsySyncStats()
    store = _get_store(db, store_id)
    client = client or build_client(db, store)

    store.sync_status = SyncStatusEnum.syncing
    store.last_sync_error = None
    _commit_unit(db, store, "sync status")

    listings_synced = 0
    orders_synced = 0
    try:
        if sync_type in ("all", "listings"):
            listings_synced = await sync_listings(
                db, store.id, client, retry=retry, cancel_event=cancel_event, stats=stats,
            )
        if sync_type in ("all", "orders"):
            orders_synced = await sync_orders(
                db, store.id, client, days_back,
                retry=retry, cancel_event=cancel_event, stats=stats,
            )
    except EtsySyncError as exc:
        db.rollback()
        store.sync_status = SyncStatusEnum.error
        store.last_sync_error = exc.message
        _commit_unit(db, store, "sync status")
        logger.error("[ETSY_SYNC] Sync failed for store %s: %s", store.id, exc.message)
        raise
    except Exception as exc:
        db.rollback()
        store.sync_status = SyncStatusEnum.error
        store.last_sync_error = f"Unexpected sync failure: {exc}"
        _commit_unit(db, store, "sync status")
        logger.exception("[ETSY_SYNC] Unexpected sync failure for store %s", store.id)
        raise

    store.sync_status = SyncStatusEnum.success
    _commit_unit(db, store, "sync status")
    stats.duration_seconds = time.monotonic() - start

    logger.info(
        "[ETSY_SYNC] Store %s synced: listings=%d, orders=%d, retries=%d, duration=%.2fs",
        store.id, listings_synced, orders_synced, stats.retries, stats.duration_seconds,
    )
    return EtsySyncResponse(
        success=True,
        stats=stats,
        listings_synced=listings_synced,
        orders_synced=orders_synced,
        message=f"Synced {listings_synced} listings and {orders_synced} orders",
    )
