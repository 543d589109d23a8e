# GET /api/v1/analytics/*

from fastapi import APIRouter, Depends, Query

from eventpulse.api.deps import get_services, get_tenant
from eventpulse.core.config import settings
from eventpulse.core.container import Services
from eventpulse.schemas.analytics import (
    DAUResponse,
    DateRangePreset,
    FunnelResponse,
    OverviewResponse,
    PagesResponse,
    RealtimeResponse,
    RetentionPeriod,
    RetentionResponse,
)
from eventpulse.services.tenants import Tenant

router = APIRouter(prefix=f"{settings.api_prefix}/analytics", tags=["analytics"])


@router.get("/overview", response_model=OverviewResponse)
async def get_overview(
        date_range: DateRangePreset = Query(default="30d", description="One of 1d, 7d, 30d, 90d"),
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    Totals for the date range plus the 10 most frequent events.

    - **date_range**: 1d, 7d, 30d or 90d
    """
    return await services.analytics.overview(tenant.tenant_id, date_range)


@router.get("/users/daily-active", response_model=DAUResponse)
async def get_daily_active_users(
        date_range: DateRangePreset = Query(default="30d", description="One of 1d, 7d, 30d, 90d"),
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """Unique users and sessions per day"""
    return await services.analytics.daily_active_users(tenant.tenant_id, date_range)


@router.get("/funnel", response_model=FunnelResponse)
async def get_funnel(
        events: str = Query(..., description="Comma-separated event names, in funnel order (at least 2)"),
        date_range: DateRangePreset = Query(default="30d", description="One of 1d, 7d, 30d, 90d"),
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    Step-by-step conversion. The first step is always 100%; each later step
    is the share of the previous step's users.
    """
    return await services.analytics.funnel(tenant.tenant_id, events.split(","), date_range)


@router.get("/retention", response_model=RetentionResponse)
async def get_retention(
        period: RetentionPeriod = Query(default="daily", description="daily, weekly or monthly"),
        date_range: DateRangePreset = Query(default="90d", description="One of 1d, 7d, 30d, 90d"),
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """First-seen cohorts and how many users came back exactly one period later"""
    return await services.analytics.retention(tenant.tenant_id, period, date_range)


@router.get("/pages", response_model=PagesResponse)
async def get_pages(
        date_range: DateRangePreset = Query(default="30d", description="One of 1d, 7d, 30d, 90d"),
        page: int = Query(default=1, ge=1, description="Page number"),
        limit: int = Query(default=20, ge=1, le=100, description="Pages per result page"),
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """Most viewed pages with visitors, sessions and average load time"""
    return await services.analytics.pages(tenant.tenant_id, date_range, page, limit)


@router.get("/realtime", response_model=RealtimeResponse)
async def get_realtime(
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    return await services.analytics.realtime(tenant.tenant_id)
