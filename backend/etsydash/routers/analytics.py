"""Dashboard analytics endpoint.

WHAT:
    GET /analytics returns period stats, a dense daily chart series and the
    top active listings for the caller's stores (or one of them).

WHY:
    Thin wrapper: ownership scoping here, rollups in analytics_service.
"""

import logging
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from etsydash.database import get_db
from etsydash.deps import get_current_user_id
from etsydash.schemas import AnalyticsResponse, ChartPointOut, DashboardStatsOut, TopListingOut
from etsydash.services.analytics_service import get_analytics_overview
from etsydash.services.store_service import get_owned_store_ids

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["Analytics"])


@router.get("", response_model=AnalyticsResponse)
def get_analytics(
    store_id: Optional[UUID] = Query(default=None, description="Limit to one store"),
    period: Literal["7d", "30d", "90d", "1y"] = Query(default="30d"),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> AnalyticsResponse:
    store_ids = get_owned_store_ids(db, user_id, store_id)
    if not store_ids:
        return AnalyticsResponse(stats=DashboardStatsOut())

    overview = get_analytics_overview(db, store_ids, period)
    logger.info(
        "[ANALYTICS] user=%s stores=%d period=%s orders=%d",
        user_id, len(store_ids), period, overview.stats.total_orders,
    )
    return AnalyticsResponse(
        stats=DashboardStatsOut.model_validate(overview.stats),
        chart_data=[ChartPointOut.model_validate(p) for p in overview.chart_data],
        top_listings=[TopListingOut.model_validate(t) for t in overview.top_listings],
    )
