"""SQLAlchemy ORM models and enums.

This module defines the seller-side schema: connected Etsy stores and the
listings, orders, order items and customers synced from them. Natural keys
(`etsy_*` identifiers scoped by store) are enforced with unique constraints
so that every sync pass reconciles instead of appending.
"""

import uuid
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, Boolean, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base

from etsydash.utils.dates import utcnow


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ListingStateEnum(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    draft = "draft"
    expired = "expired"
    unknown = "unknown"


class OrderStatusEnum(str, enum.Enum):
    pending = "pending"
    paid = "paid"
    shipped = "shipped"


class NoteTypeEnum(str, enum.Enum):
    note = "note"
    follow_up = "follow_up"
    reminder = "reminder"


class SyncStatusEnum(str, enum.Enum):
    idle = "idle"
    syncing = "syncing"
    success = "success"
    error = "error"


def _enum_values(obj):
    return [e.value for e in obj]


# Models --------------------------------------------------------

class Store(Base):
    """One connected Etsy shop.

    WHAT: Holds the shop identity plus its encrypted OAuth credential pair
    WHY: Sync, token refresh and analytics are all scoped by store
    REFERENCES:
        - etsydash/services/etsy_oauth.py::connect_store (upsert by etsy_shop_id)
        - etsydash/services/token_service.py (refresh overwrites the token pair)
    """
    __tablename__ = "stores"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Owner (session subject); authentication itself lives outside this service
    user_id = Column(String, nullable=False, index=True)

    etsy_shop_id = Column(String, nullable=False, unique=True)
    shop_name = Column(String, nullable=False)
    shop_url = Column(String, nullable=True)
    currency = Column(String, nullable=False, default="USD")

    # Fernet ciphertext, see etsydash.security
    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime, nullable=True)
    sync_status = Column(
        Enum(SyncStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=SyncStatusEnum.idle,
    )
    last_sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    listings = relationship("Listing", back_populates="store", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="store", cascade="all, delete-orphan")
    customers = relationship("Customer", back_populates="store", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.shop_name} ({self.etsy_shop_id})"


class Listing(Base):
    """Snapshot of an Etsy listing.

    Never deleted by sync; expired listings keep their row with state=expired.
    `images` is ordered by Etsy rank and `primary_image_url` is its first entry.
    """
    __tablename__ = "listings"
    __table_args__ = (
        UniqueConstraint("store_id", "etsy_listing_id", name="uq_listing_store_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False, index=True)
    etsy_listing_id = Column(String, nullable=False)

    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(18, 4), nullable=False, default=0)
    currency = Column(String, nullable=False, default="USD")
    quantity = Column(Integer, nullable=False, default=0)
    state = Column(
        Enum(ListingStateEnum, values_callable=_enum_values),
        nullable=False,
        default=ListingStateEnum.unknown,
    )

    views = Column(Integer, nullable=False, default=0)
    num_favorers = Column(Integer, nullable=False, default=0)
    tags = Column(JSON, nullable=True)
    materials = Column(JSON, nullable=True)
    images = Column(JSON, nullable=True)
    primary_image_url = Column(String, nullable=True)
    etsy_url = Column(String, nullable=True)

    # Processing-time window from the shipping profile, in days
    processing_min = Column(Integer, nullable=True)
    processing_max = Column(Integer, nullable=True)

    etsy_created_at = Column(DateTime, nullable=True)
    etsy_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    store = relationship("Store", back_populates="listings")
    order_items = relationship("OrderItem", back_populates="listing")

    def __str__(self):
        return f"{self.title} ({self.etsy_listing_id})"


class Customer(Base):
    """Buyer aggregate scoped per store.

    WHAT: Identity (email, name) plus lifetime aggregates over the buyer's orders
    WHY: CRM views sort and segment by spend and recency
    NOTE: total_orders/total_spent/average_order/first_order_at/last_order_at
          are always rewritten from a full pass over the customer's orders.
    """
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("store_id", "email", name="uq_customer_store_email"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False, index=True)

    email = Column(String, nullable=True)
    name = Column(String, nullable=True)
    etsy_user_id = Column(String, nullable=True)

    # Seller-managed; sync never writes tags
    tags = Column(JSON, nullable=True)

    total_orders = Column(Integer, nullable=False, default=0)
    total_spent = Column(Numeric(18, 4), nullable=False, default=0)
    average_order = Column(Numeric(18, 4), nullable=False, default=0)
    first_order_at = Column(DateTime, nullable=True)
    last_order_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    store = relationship("Store", back_populates="customers")
    orders = relationship("Order", back_populates="customer")
    notes = relationship(
        "CustomerNote",
        back_populates="customer",
        cascade="all, delete-orphan",
        order_by="CustomerNote.created_at.desc()",
    )

    def __str__(self):
        return f"{self.name or 'Guest'} ({self.email or 'No email'}) - {self.total_spent}"


class CustomerNote(Base):
    """Free-form follow-up entry attached to a customer."""
    __tablename__ = "customer_notes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    type = Column(
        Enum(NoteTypeEnum, values_callable=_enum_values),
        nullable=False,
        default=NoteTypeEnum.note,
    )
    due_date = Column(DateTime, nullable=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    customer = relationship("Customer", back_populates="notes")

    def __str__(self):
        return f"{self.type.value}: {self.content[:40]}"


class Order(Base):
    """One Etsy receipt.

    WHAT: Money totals (decimal units), derived fees and net revenue, status flags
    WHY: Source of truth for revenue analytics and customer aggregates
    NOTE: Financial columns are written once at first ingestion. Resyncs only
          touch status/is_paid/is_shipped. net_revenue always equals
          order_total - etsy_fees - processing_fees.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("store_id", "etsy_receipt_id", name="uq_order_store_receipt"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False, index=True)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=True, index=True)
    etsy_receipt_id = Column(String, nullable=False)

    order_total = Column(Numeric(18, 4), nullable=False, default=0)
    subtotal = Column(Numeric(18, 4), nullable=False, default=0)
    shipping_cost = Column(Numeric(18, 4), nullable=False, default=0)
    tax_cost = Column(Numeric(18, 4), nullable=False, default=0)
    discount_amount = Column(Numeric(18, 4), nullable=False, default=0)
    etsy_fees = Column(Numeric(18, 4), nullable=False, default=0)
    processing_fees = Column(Numeric(18, 4), nullable=False, default=0)
    net_revenue = Column(Numeric(18, 4), nullable=False, default=0)
    currency = Column(String, nullable=False, default="USD")

    status = Column(
        Enum(OrderStatusEnum, values_callable=_enum_values),
        nullable=False,
        default=OrderStatusEnum.pending,
    )
    is_paid = Column(Boolean, nullable=False, default=False)
    is_shipped = Column(Boolean, nullable=False, default=False)

    buyer_email = Column(String, nullable=True)
    buyer_name = Column(String, nullable=True)
    shipping_address = Column(JSON, nullable=True)

    # Marketplace creation instant; authoritative for chronology
    etsy_created_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    store = relationship("Store", back_populates="orders")
    customer = relationship("Customer", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    def __str__(self):
        return f"Receipt {self.etsy_receipt_id} - {self.order_total} {self.currency}"


class OrderItem(Base):
    """One transaction line of a receipt.

    The primary key is "{order_id}-{etsy_transaction_id}", so inserting the same
    line twice collides instead of duplicating. Rows are never updated.
    """
    __tablename__ = "order_items"

    id = Column(String, primary_key=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    # Null when the listing is unknown locally (e.g. deleted on Etsy)
    listing_id = Column(UUID(as_uuid=True), ForeignKey("listings.id"), nullable=True, index=True)

    etsy_transaction_id = Column(String, nullable=False)
    etsy_listing_id = Column(String, nullable=True)
    title = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(18, 4), nullable=False, default=0)
    shipping_cost = Column(Numeric(18, 4), nullable=False, default=0)
    variations = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="items")
    listing = relationship("Listing", back_populates="order_items")

    def __str__(self):
        return f"{self.title} x{self.quantity}"
