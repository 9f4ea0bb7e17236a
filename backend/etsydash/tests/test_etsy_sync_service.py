"""Tests for the Etsy sync orchestrator.

Uses an in-memory fake of the Etsy client so every case runs against the
real upsert and aggregate code with a SQLite session.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest

from etsydash.models import Customer, Listing, ListingStateEnum, Order, OrderItem, OrderStatusEnum, SyncStatusEnum
from etsydash.services import etsy_sync_service as svc
from etsydash.services.etsy_client import EtsyPage
from etsydash.services.etsy_errors import MarketplaceApiError, StoreNotFoundError, SyncCancelledError
from etsydash.utils.dates import to_epoch


def _money(cents, currency="USD"):
    return {"amount": cents, "divisor": 100, "currency_code": currency}


def _listing(listing_id, views=10, state="active", price_cents=2500, title=None):
    return {
        "listing_id": listing_id,
        "title": title or f"Listing {listing_id}",
        "state": state,
        "price": _money(price_cents),
        "quantity": 5,
        "views": views,
        "num_favorers": 2,
        "tags": ["ceramic"],
        "materials": ["clay"],
        "url": f"https://www.etsy.com/listing/{listing_id}",
        "created_timestamp": to_epoch(datetime(2025, 1, 1)),
    }


def _receipt(receipt_id, *, email="buyer@example.com", created=datetime(2025, 2, 10, 15, 0),
             grandtotal=3000, subtotal=2500, transactions=None, is_paid=False, is_shipped=False):
    if transactions is None:
        transactions = [_transaction(receipt_id * 10, listing_id=1)]
    return {
        "receipt_id": receipt_id,
        "buyer_email": email,
        "buyer_user_id": 777,
        "name": "Ada Buyer",
        "grandtotal": _money(grandtotal),
        "subtotal": _money(subtotal),
        "total_shipping_cost": _money(500),
        "total_tax_cost": _money(0),
        "discount_amt": _money(0),
        "formatted_address": "1 Main St",
        "is_paid": is_paid,
        "is_shipped": is_shipped,
        "create_timestamp": to_epoch(created),
        "transactions": transactions,
    }


def _transaction(transaction_id, listing_id, price_cents=2500, quantity=1):
    return {
        "transaction_id": transaction_id,
        "listing_id": listing_id,
        "title": f"Item {listing_id}",
        "quantity": quantity,
        "price": _money(price_cents),
        "shipping_cost": _money(500),
        "variations": [],
    }


class _FakeEtsyClient:
    """Serves fixed listings/receipts with limit/offset paging.

    `failures` maps a method name to exceptions raised (in order) before the
    method starts answering normally.
    """

    def __init__(self, listings=None, receipts=None, images=None, failures=None, page_size=2):
        self.config = SimpleNamespace(page_size=page_size)
        self.listings = listings or []
        self.receipts = receipts or []
        self.images = images or {}
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls = []
        self.on_page = None

    def _maybe_fail(self, name):
        self.calls.append(name)
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    async def get_listings(self, shop_id, limit=None, offset=0, state=None):
        self._maybe_fail("get_listings")
        if self.on_page:
            self.on_page(offset)
        return EtsyPage(
            results=self.listings[offset:offset + limit],
            count=len(self.listings),
            offset=offset,
            limit=limit,
        )

    async def get_listing_images(self, listing_id):
        self._maybe_fail("get_listing_images")
        return self.images.get(listing_id, [])

    async def get_receipts(self, shop_id, min_created=None, max_created=None, limit=None, offset=0):
        self._maybe_fail("get_receipts")
        return EtsyPage(
            results=self.receipts[offset:offset + limit],
            count=len(self.receipts),
            offset=offset,
            limit=limit,
        )


class _RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


# =============================================================================
# Listings
# =============================================================================

def test_listing_sync_is_idempotent(test_db_session, store):
    client = _FakeEtsyClient(
        listings=[_listing(1), _listing(2), _listing(3)],
        images={"1": [
            {"rank": 1, "url_fullxfull": "https://img/1a.jpg"},
            {"rank": 2, "url_fullxfull": "https://img/1b.jpg"},
        ]},
    )

    first = svc.EtsySyncStats()
    asyncio.run(svc.sync_listings(test_db_session, store.id, client, stats=first))
    second = svc.EtsySyncStats()
    processed = asyncio.run(svc.sync_listings(test_db_session, store.id, client, stats=second))

    assert processed == 3
    assert first.listings_created == 3
    assert second.listings_created == 0
    assert second.listings_unchanged == 3
    assert test_db_session.query(Listing).count() == 3

    listing = test_db_session.query(Listing).filter(Listing.etsy_listing_id == "1").one()
    assert listing.price == Decimal("25")
    assert listing.images == ["https://img/1a.jpg", "https://img/1b.jpg"]
    assert listing.primary_image_url == "https://img/1a.jpg"
    assert store.last_sync_at is not None


def test_listing_resync_updates_mutable_fields(test_db_session, store):
    client = _FakeEtsyClient(listings=[_listing(1, views=10)])
    asyncio.run(svc.sync_listings(test_db_session, store.id, client))

    client.listings = [_listing(1, views=55, state="expired")]
    stats = svc.EtsySyncStats()
    asyncio.run(svc.sync_listings(test_db_session, store.id, client, stats=stats))

    assert stats.listings_updated == 1
    listing = test_db_session.query(Listing).one()
    assert listing.views == 55
    assert listing.state == ListingStateEnum.expired


def test_unknown_listing_state_maps_to_unknown(test_db_session, store):
    client = _FakeEtsyClient(listings=[_listing(1, state="sold_out")])

    asyncio.run(svc.sync_listings(test_db_session, store.id, client))

    assert test_db_session.query(Listing).one().state == ListingStateEnum.unknown


def test_cancellation_between_pages_keeps_committed_units(test_db_session, store):
    cancel = asyncio.Event()
    client = _FakeEtsyClient(listings=[_listing(i) for i in range(1, 6)])
    client.on_page = lambda offset: cancel.set() if offset >= 2 else None

    with pytest.raises(SyncCancelledError) as exc_info:
        asyncio.run(svc.sync_listings(test_db_session, store.id, client, cancel_event=cancel))

    assert exc_info.value.processed == 2
    assert test_db_session.query(Listing).count() == 2


def test_missing_store_raises(test_db_session):
    import uuid

    with pytest.raises(StoreNotFoundError):
        asyncio.run(svc.sync_listings(test_db_session, uuid.uuid4(), _FakeEtsyClient()))


# =============================================================================
# Retry policy
# =============================================================================

def test_retryable_errors_are_retried_with_backoff(test_db_session, store):
    sleep = _RecordingSleep()
    client = _FakeEtsyClient(
        listings=[_listing(1)],
        failures={"get_listings": [MarketplaceApiError(429), MarketplaceApiError(503)]},
    )
    stats = svc.EtsySyncStats()

    processed = asyncio.run(svc.sync_listings(
        test_db_session, store.id, client,
        retry=svc.RetryPolicy(max_attempts=3, backoff_seconds=1.0, sleep=sleep),
        stats=stats,
    ))

    assert processed == 1
    assert stats.retries == 2
    assert sleep.delays == [1.0, 2.0]


def test_retry_after_header_overrides_backoff(test_db_session, store):
    sleep = _RecordingSleep()
    client = _FakeEtsyClient(
        listings=[_listing(1)],
        failures={"get_listing_images": [MarketplaceApiError(429, retry_after=4)]},
    )

    asyncio.run(svc.sync_listings(
        test_db_session, store.id, client,
        retry=svc.RetryPolicy(max_attempts=2, sleep=sleep),
    ))

    assert sleep.delays == [4]


def test_non_retryable_error_propagates_immediately(test_db_session, store):
    sleep = _RecordingSleep()
    client = _FakeEtsyClient(
        listings=[_listing(1)],
        failures={"get_listings": [MarketplaceApiError(404)]},
    )

    with pytest.raises(MarketplaceApiError) as exc_info:
        asyncio.run(svc.sync_listings(
            test_db_session, store.id, client,
            retry=svc.RetryPolicy(max_attempts=3, sleep=sleep),
        ))

    assert exc_info.value.status_code == 404
    assert client.calls == ["get_listings"]
    assert sleep.delays == []


def test_retries_are_bounded(test_db_session, store):
    sleep = _RecordingSleep()
    client = _FakeEtsyClient(
        listings=[_listing(1)],
        failures={"get_listings": [MarketplaceApiError(500) for _ in range(5)]},
    )

    with pytest.raises(MarketplaceApiError):
        asyncio.run(svc.sync_listings(
            test_db_session, store.id, client,
            retry=svc.RetryPolicy(max_attempts=3, sleep=sleep),
        ))

    assert client.calls == ["get_listings"] * 3
    assert len(sleep.delays) == 2


def test_backoff_is_capped():
    policy = svc.RetryPolicy(backoff_seconds=4.0, max_backoff_seconds=10.0)

    assert policy.delay_for(1, MarketplaceApiError(503)) == 4.0
    assert policy.delay_for(2, MarketplaceApiError(503)) == 8.0
    assert policy.delay_for(3, MarketplaceApiError(503)) == 10.0


# =============================================================================
# Orders, items and customers
# =============================================================================

def test_order_fees_and_net_revenue_at_first_ingestion(test_db_session, store):
    client = _FakeEtsyClient(receipts=[_receipt(1)])

    asyncio.run(svc.sync_orders(test_db_session, store.id, client))

    order = test_db_session.query(Order).one()
    assert order.order_total == Decimal("30")
    assert order.subtotal == Decimal("25")
    # 0.20 listing + 25 * 6.5%
    assert order.etsy_fees == Decimal("1.825")
    # 25 * 3% + 0.25
    assert order.processing_fees == Decimal("1.00")
    assert order.net_revenue == Decimal("27.175")
    assert order.net_revenue == order.order_total - order.etsy_fees - order.processing_fees
    assert order.status == OrderStatusEnum.pending
    assert order.shipping_address == {"formatted": "1 Main St"}
    assert order.etsy_created_at == datetime(2025, 2, 10, 15, 0)


def test_resync_updates_status_but_never_financials(test_db_session, store):
    client = _FakeEtsyClient(receipts=[_receipt(1)])
    asyncio.run(svc.sync_orders(test_db_session, store.id, client))

    client.receipts = [_receipt(1, grandtotal=9900, subtotal=9000, is_paid=True, is_shipped=True)]
    stats = svc.EtsySyncStats()
    asyncio.run(svc.sync_orders(test_db_session, store.id, client, stats=stats))

    order = test_db_session.query(Order).one()
    assert stats.orders_created == 0
    assert stats.orders_updated == 1
    assert order.status == OrderStatusEnum.shipped
    assert order.is_paid is True
    assert order.order_total == Decimal("30")
    assert order.net_revenue == Decimal("27.175")


def test_paid_but_not_shipped_is_paid(test_db_session, store):
    client = _FakeEtsyClient(receipts=[_receipt(1, is_paid=True)])

    asyncio.run(svc.sync_orders(test_db_session, store.id, client))

    assert test_db_session.query(Order).one().status == OrderStatusEnum.paid


def test_order_items_link_known_listings_and_leave_unknown_null(test_db_session, store):
    asyncio.run(svc.sync_listings(test_db_session, store.id, _FakeEtsyClient(listings=[_listing(1)])))
    receipt = _receipt(1, transactions=[
        _transaction(11, listing_id=1),
        _transaction(12, listing_id=404, price_cents=1000),
    ])

    stats = svc.EtsySyncStats()
    asyncio.run(svc.sync_orders(test_db_session, store.id, _FakeEtsyClient(receipts=[receipt]), stats=stats))

    assert stats.order_items_created == 2
    items = {i.etsy_transaction_id: i for i in test_db_session.query(OrderItem).all()}
    listing = test_db_session.query(Listing).one()
    assert items["11"].listing_id == listing.id
    assert items["12"].listing_id is None
    assert items["12"].etsy_listing_id == "404"

    order = test_db_session.query(Order).one()
    # Two transaction lines, two listing fees
    assert order.etsy_fees == Decimal("0.40") + Decimal("25") * Decimal("0.065")


def test_order_items_are_first_write_wins(test_db_session, store):
    client = _FakeEtsyClient(receipts=[_receipt(1, transactions=[_transaction(11, listing_id=1)])])
    asyncio.run(svc.sync_orders(test_db_session, store.id, client))

    client.receipts = [_receipt(1, transactions=[_transaction(11, listing_id=1, price_cents=99900)])]
    stats = svc.EtsySyncStats()
    asyncio.run(svc.sync_orders(test_db_session, store.id, client, stats=stats))

    item = test_db_session.query(OrderItem).one()
    assert stats.order_items_created == 0
    assert item.price == Decimal("25")
    order = test_db_session.query(Order).one()
    assert item.id == f"{order.id}-11"


def test_customer_aggregates_recomputed_regardless_of_order(test_db_session, store):
    newer = _receipt(2, created=datetime(2025, 2, 10), grandtotal=3000)
    older = _receipt(1, created=datetime(2025, 2, 5), grandtotal=2000)
    client = _FakeEtsyClient(receipts=[newer, older])

    asyncio.run(svc.sync_orders(test_db_session, store.id, client))

    customer = test_db_session.query(Customer).one()
    assert customer.total_orders == 2
    assert customer.total_spent == Decimal("50")
    assert customer.average_order == Decimal("25")
    assert customer.first_order_at == datetime(2025, 2, 5)
    assert customer.last_order_at == datetime(2025, 2, 10)
    assert test_db_session.query(Order).filter(Order.customer_id == customer.id).count() == 2


def test_customer_aggregates_heal_after_corruption(test_db_session, store):
    client = _FakeEtsyClient(receipts=[_receipt(1, grandtotal=2000), _receipt(2, grandtotal=4000)])
    asyncio.run(svc.sync_orders(test_db_session, store.id, client))

    customer = test_db_session.query(Customer).one()
    customer.total_orders = 99
    customer.total_spent = Decimal("0")
    test_db_session.commit()

    asyncio.run(svc.sync_orders(test_db_session, store.id, client))

    test_db_session.refresh(customer)
    assert customer.total_orders == 2
    assert customer.total_spent == Decimal("60")
    assert customer.average_order == Decimal("30")


def test_customer_tags_survive_resync(test_db_session, store):
    client = _FakeEtsyClient(receipts=[_receipt(1)])
    asyncio.run(svc.sync_orders(test_db_session, store.id, client))
    customer = test_db_session.query(Customer).one()
    customer.tags = ["vip"]
    test_db_session.commit()

    asyncio.run(svc.sync_orders(test_db_session, store.id, client))

    test_db_session.refresh(customer)
    assert customer.tags == ["vip"]


def test_receipt_without_email_has_no_customer(test_db_session, store):
    client = _FakeEtsyClient(receipts=[_receipt(1, email=None)])

    asyncio.run(svc.sync_orders(test_db_session, store.id, client))

    assert test_db_session.query(Customer).count() == 0
    assert test_db_session.query(Order).one().customer_id is None


def test_resync_with_buyer_email_links_existing_order(test_db_session, store):
    asyncio.run(svc.sync_orders(test_db_session, store.id, _FakeEtsyClient(receipts=[_receipt(1, email=None)])))

    asyncio.run(svc.sync_orders(test_db_session, store.id, _FakeEtsyClient(receipts=[_receipt(1)])))

    customer = test_db_session.query(Customer).one()
    order = test_db_session.query(Order).one()
    assert order.customer_id == customer.id
    assert customer.total_orders == 1
    assert customer.total_spent == Decimal("30.0000")


# =============================================================================
# sync_store
# =============================================================================

def test_sync_store_runs_listings_then_orders(test_db_session, store):
    client = _FakeEtsyClient(listings=[_listing(1)], receipts=[_receipt(1)])

    result = asyncio.run(svc.sync_store(test_db_session, store.id, client=client))

    assert result.success is True
    assert result.listings_synced == 1
    assert result.orders_synced == 1
    assert client.calls.index("get_listings") < client.calls.index("get_receipts")
    assert store.sync_status == SyncStatusEnum.success
    assert store.last_sync_error is None
    # Listing existed before the receipt, so the item is linked
    assert test_db_session.query(OrderItem).one().listing_id is not None


def test_sync_store_orders_only(test_db_session, store):
    client = _FakeEtsyClient(listings=[_listing(1)], receipts=[_receipt(1)])

    result = asyncio.run(svc.sync_store(test_db_session, store.id, sync_type="orders", client=client))

    assert result.listings_synced == 0
    assert "get_listings" not in client.calls


def test_sync_store_records_failure_on_store(test_db_session, store):
    client = _FakeEtsyClient(failures={"get_listings": [MarketplaceApiError(403, message="Forbidden")]})

    with pytest.raises(MarketplaceApiError):
        asyncio.run(svc.sync_store(test_db_session, store.id, client=client))

    test_db_session.refresh(store)
    assert store.sync_status == SyncStatusEnum.error
    assert store.last_sync_error == "Forbidden"


def test_sync_store_records_unexpected_failure_on_store(test_db_session, store):
    client = _FakeEtsyClient(failures={"get_listings": [ValueError("bad listing payload")]})

    with pytest.raises(ValueError):
        asyncio.run(svc.sync_store(test_db_session, store.id, client=client))

    test_db_session.refresh(store)
    assert store.sync_status == SyncStatusEnum.error
    assert "bad listing payload" in store.last_sync_error


def test_sync_store_rejects_unknown_sync_type(test_db_session, store):
    with pytest.raises(ValueError):
        asyncio.run(svc.sync_store(test_db_session, store.id, sync_type="everything", client=_FakeEtsyClient()))
