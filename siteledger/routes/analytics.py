from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from siteledger.api.deps import REPORT_ROLES, get_analytics_service, require_roles
from siteledger.core.timezone import company_tz
from siteledger.schemas.analytics import (
    AnalyticsFilter,
    AnalyticsSummary,
    CashFlowReport,
    Period,
    ProjectBalance,
)
from siteledger.models.user import Actor
from siteledger.services.analytics_service import AnalyticsService, period_range

router = APIRouter(prefix="/analytics", tags=["analytics"])


def analytics_filter(
    project_id: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    period: Optional[Period] = Query(None, description="Named period; overrides date_from/date_to"),
) -> AnalyticsFilter:
    if period is not None:
        date_from, date_to = period_range(period, datetime.now(company_tz()).date())
    return AnalyticsFilter(project_id=project_id, date_from=date_from, date_to=date_to)


@router.get("/summary", response_model=AnalyticsSummary)
async def analytics_summary(
    filters: AnalyticsFilter = Depends(analytics_filter),
    actor: Actor = Depends(require_roles(*REPORT_ROLES)),
    service: AnalyticsService = Depends(get_analytics_service)
):
    """Totals, expense categories, projects and daily history for a window."""
    return await service.get_analytics_summary(actor.company_id, filters)


@router.get("/cash-flow", response_model=CashFlowReport)
async def cash_flow(
    filters: AnalyticsFilter = Depends(analytics_filter),
    actor: Actor = Depends(require_roles(*REPORT_ROLES)),
    service: AnalyticsService = Depends(get_analytics_service)
):
    """Category by month matrix of income and expense."""
    return await service.get_cash_flow_report(actor.company_id, filters)


@router.get("/projects/{project_id}/balance", response_model=ProjectBalance)
async def project_balance(
    project_id: str,
    actor: Actor = Depends(require_roles(*REPORT_ROLES)),
    service: AnalyticsService = Depends(get_analytics_service)
):
    return await service.get_project_balance(actor.company_id, project_id)
