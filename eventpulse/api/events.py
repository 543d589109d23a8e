from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
import structlog

from eventpulse.api.deps import api_key_header, client_ip, get_services
from eventpulse.core.config import settings
from eventpulse.core.container import Services
from eventpulse.schemas.event import IngestResponse, RecentEventsResponse

logger = structlog.get_logger()
router = APIRouter(prefix=f"{settings.api_prefix}/events", tags=["events"])


@router.post("", response_model=IngestResponse, status_code=status.HTTP_201_CREATED)
async def ingest_event(
        request: Request,
        payload: Any = Body(...),
        credential: Optional[str] = Depends(api_key_header),
        services: Services = Depends(get_services)
):
    """
    Ingest a single event.

    - **event_name**: 1-100 characters
    - **properties**: flat map of string, number or boolean values (max 50 keys, 10 KB)
    """
    return await services.ingestion.ingest(
        payload,
        credential,
        batch=False,
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent")
    )


@router.post("/batch", response_model=IngestResponse, status_code=status.HTTP_201_CREATED)
async def ingest_batch(
        request: Request,
        payload: Any = Body(...),
        credential: Optional[str] = Depends(api_key_header),
        services: Services = Depends(get_services)
):
    """
    Ingest a batch of 1-100 events. The batch is all-or-nothing: one invalid
    event rejects the whole request and nothing is stored.
    """
    return await services.ingestion.ingest(
        payload,
        credential,
        batch=True,
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent")
    )


@router.get("/recent", response_model=RecentEventsResponse)
async def recent_events(
        limit: int = Query(default=10, ge=1, le=100, description="Number of events"),
        credential: Optional[str] = Depends(api_key_header),
        services: Services = Depends(get_services)
):
    """Most recent events for the caller's project, newest first"""
    return await services.ingestion.recent(credential, limit)


@router.post("/validate")
async def validate_event(payload: Any = Body(...), services: Services = Depends(get_services)):
    """Validate an event payload without storing it"""
    event = services.ingestion.validate(payload)
    return {"valid": True, "sanitized_event": event.model_dump(mode="json")}


@router.get("/schema")
async def event_schema():
    return {
        "event_schema": {
            "required_fields": ["event_name"],
            "optional_fields": ["id", "user_id", "session_id", "properties", "timestamp", "platform"],
            "field_types": {
                "id": "string, 1-64 characters",
                "event_name": f"string, 1-{settings.max_event_name_length} characters",
                "user_id": "string",
                "session_id": "string",
                "properties": (
                    f"object of string/number/boolean values, at most {settings.max_property_keys} keys "
                    f"and {settings.max_properties_bytes} bytes"
                ),
                "timestamp": "ISO 8601 date-time, defaults to receipt time",
                "platform": "one of web, android, ios (default web)"
            },
            "batch": {"field": "events", "min_items": 1, "max_items": settings.max_batch_size}
        },
        "examples": [
            {
                "event_name": "page_view",
                "user_id": "user_123",
                "session_id": "session_456",
                "properties": {"page": "/home", "referrer": "https://google.com"},
                "platform": "web"
            },
            {
                "event_name": "button_click",
                "user_id": "user_123",
                "properties": {"button_id": "signup", "page": "/pricing"},
                "platform": "web"
            }
        ]
    }
