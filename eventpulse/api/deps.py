from typing import Optional

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from eventpulse.core.container import Services
from eventpulse.services.tenants import Tenant, require_tenant

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, else the socket peer"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


async def get_tenant(
        credential: Optional[str] = Depends(api_key_header),
        services: Services = Depends(get_services)
) -> Tenant:
    return await require_tenant(services.tenants, credential)
