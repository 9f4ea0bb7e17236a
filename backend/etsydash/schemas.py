"""Pydantic schemas for request/response payloads."""

from datetime import datetime, date
from uuid import UUID
from typing import Optional, List

from pydantic import BaseModel, Field

from .models import ListingStateEnum, NoteTypeEnum, OrderStatusEnum, SyncStatusEnum


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


# Analytics -----------------------------------------------------

class DashboardStatsOut(BaseModel):
    """Period rollup for the dashboard header cards."""

    total_revenue: float = Field(default=0.0, description="Sum of order totals in the period")
    total_orders: int = Field(default=0, description="Orders created in the period")
    total_views: int = Field(default=0, description="Lifetime views across all listings")
    conversion_rate: float = Field(default=0.0, description="orders / views * 100")
    average_order_value: float = Field(default=0.0)
    total_fees: float = Field(default=0.0, description="Etsy fees + processing fees")
    net_revenue: float = Field(default=0.0)
    revenue_change: float = Field(default=0.0, description="% vs previous period (0 if no baseline)")
    orders_change: float = Field(default=0.0, description="% vs previous period (0 if no baseline)")

    model_config = {"from_attributes": True}


class ChartPointOut(BaseModel):
    date: date
    revenue: float = 0.0
    orders: int = 0

    model_config = {"from_attributes": True}


class TopListingOut(BaseModel):
    id: UUID
    title: str
    views: int
    favorites: int
    primary_image_url: Optional[str] = None
    price: float
    orders: int = 0
    revenue: float = 0.0

    model_config = {"from_attributes": True}


class AnalyticsResponse(BaseModel):
    """Response for GET /analytics."""

    stats: DashboardStatsOut
    chart_data: List[ChartPointOut] = Field(default_factory=list)
    top_listings: List[TopListingOut] = Field(default_factory=list)

    model_config = {
        "json_schema_extra": {
            "example": {
                "stats": {
                    "total_revenue": 1250.5,
                    "total_orders": 42,
                    "total_views": 3100,
                    "conversion_rate": 1.35,
                    "average_order_value": 29.77,
                    "total_fees": 140.2,
                    "net_revenue": 1110.3,
                    "revenue_change": 12.5,
                    "orders_change": -4.0,
                },
                "chart_data": [{"date": "2025-01-01", "revenue": 55.0, "orders": 2}],
                "top_listings": [],
            }
        }
    }


# Stores --------------------------------------------------------

class StoreOut(BaseModel):
    id: UUID
    etsy_shop_id: str
    shop_name: str
    shop_url: Optional[str] = None
    currency: str
    is_active: bool
    last_sync_at: Optional[datetime] = None
    sync_status: SyncStatusEnum
    last_sync_error: Optional[str] = None
    listing_count: int = 0
    order_count: int = 0
    customer_count: int = 0


# Customers -----------------------------------------------------

class PaginationOut(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class CustomerSummaryOut(BaseModel):
    id: UUID
    store_id: UUID
    shop_name: str
    email: Optional[str] = None
    name: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    total_orders: int = 0
    total_spent: float = 0.0
    average_order: float = 0.0
    first_order_at: Optional[datetime] = None
    last_order_at: Optional[datetime] = None
    order_count: int = 0
    note_count: int = 0


class CustomerListResponse(BaseModel):
    data: List[CustomerSummaryOut] = Field(default_factory=list)
    pagination: PaginationOut


class CustomerNoteOut(BaseModel):
    id: UUID
    content: str
    type: NoteTypeEnum
    due_date: Optional[datetime] = None
    is_completed: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class CustomerNoteCreate(BaseModel):
    """Payload for adding a note to a customer."""

    content: str = Field(min_length=1, description="Free-form note text")
    type: NoteTypeEnum = Field(default=NoteTypeEnum.note)
    due_date: Optional[datetime] = Field(default=None, description="Optional follow-up date")


class CustomerNoteUpdate(BaseModel):
    is_completed: bool


class CustomerTagsUpdate(BaseModel):
    tags: List[str] = Field(default_factory=list)


class OrderItemOut(BaseModel):
    id: str
    title: Optional[str] = None
    quantity: int
    price: float
    listing_id: Optional[UUID] = None

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: UUID
    etsy_receipt_id: str
    order_total: float
    net_revenue: float
    currency: str
    status: OrderStatusEnum
    etsy_created_at: datetime
    items: List[OrderItemOut] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class CustomerDetailOut(CustomerSummaryOut):
    etsy_user_id: Optional[str] = None
    orders: List[OrderOut] = Field(default_factory=list)
    notes: List[CustomerNoteOut] = Field(default_factory=list)


# Listings ------------------------------------------------------

class ListingSummaryOut(BaseModel):
    id: UUID
    store_id: UUID
    shop_name: str
    etsy_listing_id: str
    title: str
    price: float
    currency: str
    quantity: int
    state: ListingStateEnum
    views: int = 0
    favorites: int = 0
    tags: List[str] = Field(default_factory=list)
    primary_image_url: Optional[str] = None
    etsy_url: Optional[str] = None
    updated_at: Optional[datetime] = None
    order_item_count: int = 0


class ListingListResponse(BaseModel):
    data: List[ListingSummaryOut] = Field(default_factory=list)
    pagination: PaginationOut


class ListingSaleOut(OrderItemOut):
    """One order line of a listing, with the order it belongs to."""

    order_id: UUID
    ordered_at: Optional[datetime] = None
    buyer_name: Optional[str] = None


class ListingDetailOut(ListingSummaryOut):
    description: Optional[str] = None
    materials: List[str] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    processing_min: Optional[int] = None
    processing_max: Optional[int] = None
    recent_sales: List[ListingSaleOut] = Field(default_factory=list)


class ListingUpdate(BaseModel):
    """Seller edits to the local listing copy. Omitted fields stay unchanged."""

    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    tags: Optional[List[str]] = None

