"""Read-side analytics over synced Etsy data.

WHAT:
    Dashboard rollups computed from local Orders, OrderItems and Listings:
    - Period stats with period-over-period revenue/order deltas
    - Dense daily revenue/order chart series
    - Top active listings by views with lifetime order count and revenue

WHY:
    Dashboards never call Etsy; everything here reads what sync wrote.

NOTE:
    total_views is the lifetime sum of Listing.views, not windowed to the
    period, while revenue and orders are windowed. conversion_rate is
    therefore orders-in-period per lifetime view.

REFERENCES:
    - etsydash/routers/analytics.py (HTTP surface)
    - etsydash/tests/test_analytics_service.py
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from etsydash.models import Listing, ListingStateEnum, Order, OrderItem
from etsydash.utils.dates import utcnow

logger = logging.getLogger(__name__)

PERIOD_DAYS = {
    "7d": 7,
    "30d": 30,
    "90d": 90,
}
VALID_PERIODS = ("7d", "30d", "90d", "1y")

_ZERO = Decimal("0")


@dataclass
class DashboardStats:
    total_revenue: Decimal = _ZERO
    total_orders: int = 0
    total_views: int = 0
    conversion_rate: float = 0.0
    average_order_value: Decimal = _ZERO
    total_fees: Decimal = _ZERO
    net_revenue: Decimal = _ZERO
    revenue_change: float = 0.0
    orders_change: float = 0.0


@dataclass
class ChartPoint:
    date: date
    revenue: Decimal = _ZERO
    orders: int = 0


@dataclass
class TopListing:
    id: UUID
    title: str
    views: int
    favorites: int
    primary_image_url: Optional[str]
    price: Decimal
    orders: int = 0
    revenue: Decimal = _ZERO


@dataclass
class AnalyticsOverview:
    stats: DashboardStats
    chart_data: List[ChartPoint] = field(default_factory=list)
    top_listings: List[TopListing] = field(default_factory=list)


def resolve_period(period: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Convert a period code to (start, end) ending at `now`.

    Raises:
        ValueError: For anything other than 7d, 30d, 90d or 1y.
    """
    end = now or utcnow()
    if period == "1y":
        try:
            start = end.replace(year=end.year - 1)
        except ValueError:
            # Feb 29 → Feb 28
            start = end.replace(year=end.year - 1, day=28)
        return start, end

    days = PERIOD_DAYS.get(period)
    if days is None:
        raise ValueError(f"Unknown period: {period}. Expected one of {', '.join(VALID_PERIODS)}")
    return end - timedelta(days=days), end


def _get_previous_period(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    """Previous period of the same length, ending where the current one starts."""
    return start - (end - start), start


def _calculate_change_pct(current: Decimal, previous: Decimal) -> float:
    """Percentage change; 0 when there is nothing to compare against."""
    if previous is None or previous <= 0:
        return 0.0
    return float((Decimal(current) - Decimal(previous)) / Decimal(previous) * 100)


def _order_totals(
    db: Session,
    store_ids: Sequence[UUID],
    start: datetime,
    end: datetime,
    *,
    end_inclusive: bool = True,
) -> Tuple[int, Decimal, Decimal, Decimal]:
    """(orders, revenue, fees, net revenue) for orders created in the window."""
    end_clause = Order.etsy_created_at <= end if end_inclusive else Order.etsy_created_at < end
    count, revenue, fees, net = db.query(
        func.count(Order.id),
        func.coalesce(func.sum(Order.order_total), 0),
        func.coalesce(func.sum(Order.etsy_fees + Order.processing_fees), 0),
        func.coalesce(func.sum(Order.net_revenue), 0),
    ).filter(
        Order.store_id.in_(store_ids),
        Order.etsy_created_at >= start,
        end_clause,
    ).one()
    return int(count or 0), Decimal(str(revenue)), Decimal(str(fees)), Decimal(str(net))


def get_stats(
    db: Session,
    store_ids: Sequence[UUID],
    period: str = "30d",
    now: Optional[datetime] = None,
) -> DashboardStats:
    """Aggregate revenue, orders, fees and views for the period.

    Deltas compare against the immediately preceding period of equal length.
    """
    if not store_ids:
        return DashboardStats()

    start, end = resolve_period(period, now)
    prev_start, prev_end = _get_previous_period(start, end)

    total_orders, total_revenue, total_fees, net_revenue = _order_totals(db, store_ids, start, end)
    prev_orders, prev_revenue, _, _ = _order_totals(
        db, store_ids, prev_start, prev_end, end_inclusive=False
    )

    total_views = db.query(func.coalesce(func.sum(Listing.views), 0)).filter(
        Listing.store_id.in_(store_ids),
    ).scalar()
    total_views = int(total_views or 0)

    conversion_rate = total_orders / total_views * 100 if total_views > 0 else 0.0
    average_order_value = total_revenue / total_orders if total_orders > 0 else _ZERO

    stats = DashboardStats(
        total_revenue=total_revenue,
        total_orders=total_orders,
        total_views=total_views,
        conversion_rate=conversion_rate,
        average_order_value=average_order_value,
        total_fees=total_fees,
        net_revenue=net_revenue,
        revenue_change=_calculate_change_pct(total_revenue, prev_revenue),
        orders_change=_calculate_change_pct(Decimal(total_orders), Decimal(prev_orders)),
    )
    logger.debug(
        "[ANALYTICS] Stats for %d stores, period=%s: revenue=%s orders=%d",
        len(store_ids), period, total_revenue, total_orders,
    )
    return stats


def get_chart_series(
    db: Session,
    store_ids: Sequence[UUID],
    start_date: datetime,
    end_date: datetime,
) -> List[ChartPoint]:
    """Daily revenue and order counts for every UTC day in [start_date, end_date].

    Days without orders are present with zeros.
    """
    if not store_ids:
        return []

    rows = db.query(Order.etsy_created_at, Order.order_total).filter(
        Order.store_id.in_(store_ids),
        Order.etsy_created_at >= start_date,
        Order.etsy_created_at <= end_date,
    ).all()

    buckets: Dict[date, ChartPoint] = {}
    for created_at, order_total in rows:
        day = created_at.date()
        point = buckets.setdefault(day, ChartPoint(date=day))
        point.revenue += Decimal(str(order_total))
        point.orders += 1

    series: List[ChartPoint] = []
    current = start_date.date() if isinstance(start_date, datetime) else start_date
    last = end_date.date() if isinstance(end_date, datetime) else end_date
    while current <= last:
        series.append(buckets.get(current) or ChartPoint(date=current))
        current += timedelta(days=1)
    return series


def get_top_listings(
    db: Session,
    store_ids: Sequence[UUID],
    limit: int = 5,
) -> List[TopListing]:
    """Active listings by views, each with lifetime OrderItem count and price sum."""
    if not store_ids:
        return []

    order_count = func.count(OrderItem.id)
    revenue = func.coalesce(func.sum(OrderItem.price), 0)
    rows = (
        db.query(Listing, order_count, revenue)
        .outerjoin(OrderItem, OrderItem.listing_id == Listing.id)
        .filter(
            Listing.store_id.in_(store_ids),
            Listing.state == ListingStateEnum.active,
        )
        .group_by(Listing.id)
        .order_by(Listing.views.desc(), Listing.title.asc())
        .limit(limit)
        .all()
    )

    return [
        TopListing(
            id=listing.id,
            title=listing.title,
            views=listing.views,
            favorites=listing.num_favorers,
            primary_image_url=listing.primary_image_url,
            price=listing.price,
            orders=int(count or 0),
            revenue=Decimal(str(total)),
        )
        for listing, count, total in rows
    ]


def get_analytics_overview(
    db: Session,
    store_ids: Sequence[UUID],
    period: str = "30d",
    now: Optional[datetime] = None,
) -> AnalyticsOverview:
    """Stats, chart series and top listings for one dashboard request."""
    start, end = resolve_period(period, now)
    return AnalyticsOverview(
        stats=get_stats(db, store_ids, period, now=end),
        chart_data=get_chart_series(db, store_ids, start, end),
        top_listings=get_top_listings(db, store_ids),
    )
