import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
import structlog

from eventpulse.api.deps import get_services, get_tenant
from eventpulse.core.config import settings
from eventpulse.core.container import Services
from eventpulse.core.errors import AnalyticsError
from eventpulse.services.realtime import RealtimeHub, dashboard_topic, filter_topic, now_iso, project_topic
from eventpulse.services.tenants import Tenant

logger = structlog.get_logger()
router = APIRouter(tags=["realtime"])


def _topic_for(action: str, tenant_id: str, message: Dict[str, Any]) -> tuple[str, Optional[Dict[str, Any]]]:
    """Map a client action to a topic on the connection's own tenant"""
    if action in ("join_project", "leave_project"):
        return project_topic(tenant_id), None

    if action in ("join_dashboard", "leave_dashboard"):
        dashboard_id = message.get("dashboard_id")
        if not isinstance(dashboard_id, str) or not dashboard_id:
            raise ValueError("dashboard_id is required")
        return dashboard_topic(tenant_id, dashboard_id), None

    if action in ("subscribe_events", "unsubscribe_events"):
        filters = message.get("filters") or {}
        if not isinstance(filters, dict):
            raise ValueError("filters must be an object")
        return filter_topic(tenant_id, filters), filters

    raise ValueError(f"Unknown action: {action}")


def handle_action(hub: RealtimeHub, connection_id: str, tenant_id: str, message: Any) -> Dict[str, Any]:
    if not isinstance(message, dict):
        return {"type": "error", "message": "Messages must be JSON objects"}

    action = message.get("action") or message.get("type") or ""
    try:
        topic, filters = _topic_for(action, tenant_id, message)
    except ValueError as e:
        return {"type": "error", "message": str(e)}

    if action.startswith(("join_", "subscribe_")):
        hub.subscribe(connection_id, topic, filters)
        return {"type": "subscribed", "topic": topic}

    hub.unsubscribe(connection_id, topic)
    return {"type": "unsubscribed", "topic": topic}


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, api_key: Optional[str] = Query(None)):
    """
    Live event stream. Authenticate with ?api_key=..., then send
    {"action": "join_project"} or another subscription action.
    """
    services: Services = websocket.app.state.services

    if not api_key:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="API key required")
        return

    try:
        tenant = await services.tenants.resolve(api_key)
    except AnalyticsError as e:
        logger.error("realtime_auth_failed", error=e.message)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Tenant resolution failed")
        return

    if tenant is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid API key")
        return

    await websocket.accept()
    hub = services.hub
    connection_id = uuid.uuid4().hex
    hub.connect(connection_id, tenant.tenant_id, websocket.send_json)
    hub.notify(connection_id, {
        "type": "connected",
        "connection_id": connection_id,
        "timestamp": now_iso()
    })

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                hub.notify(connection_id, {"type": "error", "message": "Invalid JSON"})
                continue
            hub.notify(connection_id, handle_action(hub, connection_id, tenant.tenant_id, message))
    except WebSocketDisconnect:
        logger.info("realtime_socket_closed", connection_id=connection_id)
    finally:
        hub.disconnect(connection_id)


@router.get(f"{settings.api_prefix}/realtime/stats")
async def realtime_stats(
        tenant: Tenant = Depends(get_tenant),
        services: Services = Depends(get_services)
):
    return {
        "connected_clients": services.hub.connected_count,
        "project_subscribers": services.hub.topic_size(project_topic(tenant.tenant_id))
    }
