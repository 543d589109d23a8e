from dataclasses import dataclass
from typing import Optional

from redis.asyncio import Redis
import structlog

from eventpulse.core.config import Settings
from eventpulse.core.database import AsyncSessionLocal, connect_redis, get_duckdb_connection, init_db
from eventpulse.middleware.rate_limit import RedisTokenBucket
from eventpulse.services.analytics import AnalyticsService
from eventpulse.services.cache import RecentEventsCache, ResponseCache
from eventpulse.services.event_store import EventStore
from eventpulse.services.history import QueryHistory
from eventpulse.services.ingestion import IngestionGateway
from eventpulse.services.llm import OpenAIGenerator, TextGenerator, get_openai_client
from eventpulse.services.nl_query import NLQueryService
from eventpulse.services.realtime import RealtimeHub
from eventpulse.services.tenants import SqlTenantResolver, TenantResolver

logger = structlog.get_logger()


@dataclass
class Services:
    """Everything a request handler needs, built once per process"""
    settings: Settings
    store: EventStore
    tenants: TenantResolver
    hub: RealtimeHub
    recent_cache: RecentEventsCache
    ingestion: IngestionGateway
    analytics: AnalyticsService
    nl_query: NLQueryService
    redis: Optional[Redis] = None

    async def close(self) -> None:
        self.store.close()
        if self.redis is not None:
            await self.redis.aclose()


def assemble(
        settings: Settings,
        *,
        store: EventStore,
        tenants: TenantResolver,
        generator: TextGenerator,
        history: QueryHistory,
        redis: Optional[Redis] = None
) -> Services:
    """Wire the services around the given collaborators"""
    hub = RealtimeHub(
        queue_size=settings.fanout_queue_size,
        send_timeout=settings.fanout_send_timeout_seconds
    )
    recent_cache = RecentEventsCache(
        redis,
        max_len=settings.recent_events_max,
        ttl=settings.recent_events_ttl,
        timeout=settings.cache_timeout_seconds
    )
    response_cache = ResponseCache(
        redis,
        ttl=settings.analytics_cache_ttl,
        timeout=settings.cache_timeout_seconds
    )

    ingestion = IngestionGateway(
        store,
        recent_cache,
        hub,
        tenants,
        RedisTokenBucket(settings.event_rate_limit, settings.rate_limit_period, redis, name="events_rate"),
        recent_max=settings.recent_events_max
    )
    nl_query = NLQueryService(
        store,
        generator,
        history,
        RedisTokenBucket(settings.ai_rate_limit, settings.rate_limit_period, redis, name="ai_rate"),
        max_question_length=settings.question_max_length,
        result_cap=settings.query_result_cap,
        max_tokens=settings.llm_max_tokens,
        request_timeout=settings.ai_request_timeout_seconds
    )

    return Services(
        settings=settings,
        store=store,
        tenants=tenants,
        hub=hub,
        recent_cache=recent_cache,
        ingestion=ingestion,
        analytics=AnalyticsService(store, response_cache, recent_cache),
        nl_query=nl_query,
        redis=redis
    )


async def build_services(settings: Settings) -> Services:
    """Production wiring: DuckDB event store, Postgres, Redis when reachable, OpenAI"""
    await init_db()
    redis = await connect_redis(settings.redis_url)
    store = EventStore(get_duckdb_connection(settings.duckdb_path), timeout=settings.store_timeout_seconds)

    generator = OpenAIGenerator(
        get_openai_client(settings.llm_api_key, settings.llm_base_url),
        model=settings.llm_model,
        timeout=settings.llm_timeout_seconds
    )
    if generator.client is None:
        logger.warning("llm_not_configured")

    return assemble(
        settings,
        store=store,
        tenants=SqlTenantResolver(AsyncSessionLocal),
        generator=generator,
        history=QueryHistory(AsyncSessionLocal),
        redis=redis
    )
