from fastapi import APIRouter, Depends, Query

from eventpulse.api.deps import get_services, get_tenant
from eventpulse.core.config import settings
from eventpulse.core.container import Services
from eventpulse.schemas.ai import (
    AIQueryRequest,
    AIQueryResponse,
    ExplainResponse,
    QueryCheckRequest,
    QueryCheckResponse,
    QueryHistoryResponse,
    SuggestionsResponse,
)
from eventpulse.services.tenants import Tenant

router = APIRouter(prefix=f"{settings.api_prefix}/ai", tags=["ai"])


@router.post("/query", response_model=AIQueryResponse)
async def ask(
        request: AIQueryRequest,
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """
    Answer a natural-language question about the caller's events.

    The generated query is validated before it runs; a rejected query is
    returned in the error body and is never executed.
    """
    return await services.nl_query.answer(request.question, tenant, request.context)


@router.get("/suggestions", response_model=SuggestionsResponse)
async def suggestions(
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    return await services.nl_query.suggestions(tenant)


@router.get("/history", response_model=QueryHistoryResponse)
async def history(
        limit: int = Query(default=20, ge=1, le=100),
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """The caller's past questions, newest first"""
    return await services.nl_query.history_for(tenant, limit)


@router.post("/validate", response_model=QueryCheckResponse)
async def validate(
        request: QueryCheckRequest,
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    """Run the safety checks on a query without executing it"""
    return await services.nl_query.check(request.query, tenant)


@router.post("/explain", response_model=ExplainResponse)
async def explain(
        request: QueryCheckRequest,
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    return await services.nl_query.explain(request.query, tenant)
