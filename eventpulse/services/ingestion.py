from typing import Any, List, Optional
from uuid import uuid4

from pydantic import ValidationError
import structlog

from eventpulse.core.errors import ClientInputError
from eventpulse.core.timeutil import to_naive_utc, utcnow
from eventpulse.middleware.rate_limit import RedisTokenBucket
from eventpulse.schemas.event import (
    EventBatchCreate,
    EventCreate,
    IngestResponse,
    RecentEventsResponse,
    StoredEvent,
)
from eventpulse.services.cache import RecentEventsCache
from eventpulse.services.event_store import EventStore
from eventpulse.services.realtime import RealtimeHub
from eventpulse.services.tenants import Tenant, TenantResolver, hash_api_key, require_tenant

logger = structlog.get_logger()


def validation_error_to_client_error(exc: ValidationError) -> ClientInputError:
    """Name the first offending field; list every problem in details"""
    errors = exc.errors()
    first = errors[0]
    field = ".".join(str(part) for part in first["loc"]) or None
    details = [
        f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
        for error in errors
    ]
    return ClientInputError(first["msg"], field=field, details=details)


class IngestionGateway:
    """
    Validated write path into the event store.

    Order of effects: tenant resolution, all-or-nothing validation, rate
    limiting, one durable write, then best-effort cache update and fan-out.
    A failed durable write fails the request and skips the side effects.
    """

    def __init__(
            self,
            store: EventStore,
            recent_cache: RecentEventsCache,
            hub: RealtimeHub,
            tenants: TenantResolver,
            rate_limiter: RedisTokenBucket,
            recent_max: int = 100
    ):
        self.store = store
        self.recent_cache = recent_cache
        self.hub = hub
        self.tenants = tenants
        self.rate_limiter = rate_limiter
        self.recent_max = recent_max

    @staticmethod
    def parse(raw_payload: Any, batch: bool) -> List[EventCreate]:
        try:
            if batch:
                return EventBatchCreate.model_validate(raw_payload).events
            return [EventCreate.model_validate(raw_payload)]
        except ValidationError as e:
            raise validation_error_to_client_error(e)

    async def ingest(
            self,
            raw_payload: Any,
            credential: Optional[str],
            *,
            batch: bool,
            client_ip: Optional[str] = None,
            user_agent: Optional[str] = None
    ) -> IngestResponse:
        tenant = await require_tenant(self.tenants, credential)
        incoming = self.parse(raw_payload, batch)

        await self.rate_limiter.enforce(hash_api_key(credential), cost=len(incoming))

        received_at = utcnow()
        events = [
            self._enrich(event, tenant, received_at, client_ip, user_agent)
            for event in incoming
        ]

        # Durable write first; ExecutionError propagates and nothing else happens
        await self.store.append(events)

        await self._update_recent_cache(tenant.tenant_id, events)
        self._fan_out(tenant.tenant_id, events)

        logger.info(
            "events_ingested",
            tenant_id=tenant.tenant_id,
            count=len(events),
            batch=batch
        )

        return IngestResponse(
            message=f"Accepted {len(events)} event{'s' if len(events) != 1 else ''}",
            accepted=len(events),
            event_ids=[event.id for event in events],
            timestamp=received_at
        )

    @staticmethod
    def _enrich(
            event: EventCreate,
            tenant: Tenant,
            received_at,
            client_ip: Optional[str],
            user_agent: Optional[str]
    ) -> StoredEvent:
        if event.user_id:
            user_id = event.user_id
        elif event.session_id:
            user_id = f"anonymous_{event.session_id}"
        else:
            user_id = "anonymous"

        return StoredEvent(
            id=event.id or str(uuid4()),
            tenant_id=tenant.tenant_id,
            user_id=user_id,
            session_id=event.session_id,
            event_name=event.event_name,
            properties=event.properties,
            timestamp=to_naive_utc(event.timestamp) if event.timestamp else received_at,
            platform=event.platform,
            ip=client_ip,
            user_agent=user_agent,
            received_at=received_at
        )

    async def _update_recent_cache(self, tenant_id: str, events: List[StoredEvent]) -> None:
        try:
            await self.recent_cache.push(tenant_id, events)
        except Exception as e:
            logger.warning("recent_cache_update_failed", tenant_id=tenant_id, error=repr(e))

    def _fan_out(self, tenant_id: str, events: List[StoredEvent]) -> None:
        try:
            for event in events:
                self.hub.publish_event(tenant_id, event.model_dump(mode="json"))
            self.hub.publish_metric(tenant_id, "events_ingested", len(events))
        except Exception as e:
            logger.warning("fan_out_failed", tenant_id=tenant_id, error=repr(e))

    async def recent(self, credential: Optional[str], limit: int = 10) -> RecentEventsResponse:
        tenant = await require_tenant(self.tenants, credential)
        limit = max(1, min(limit, self.recent_max))

        try:
            cached = await self.recent_cache.get_range(tenant.tenant_id, limit)
        except Exception as e:
            logger.warning("recent_cache_read_failed", tenant_id=tenant.tenant_id, error=repr(e))
            cached = []

        if cached:
            return RecentEventsResponse(events=cached, source="cache", count=len(cached))

        events = await self.store.recent(tenant.tenant_id, limit)
        return RecentEventsResponse(events=events, source="database", count=len(events))

    def validate(self, raw_payload: Any) -> EventCreate:
        return self.parse(raw_payload, batch=False)[0]
