from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Type, TypeVar

from pydantic import BaseModel
import structlog

from eventpulse.core.errors import ClientInputError
from eventpulse.core.timeutil import utcnow
from eventpulse.schemas.analytics import (
    DAUResponse,
    DailyActiveUsers,
    DateRange,
    FunnelResponse,
    FunnelStep,
    OverviewMetrics,
    OverviewResponse,
    PageStats,
    PagesResponse,
    Pagination,
    RealtimeMetrics,
    RealtimeResponse,
    RetentionCohort,
    RetentionResponse,
    TopEvent,
)
from eventpulse.services.cache import RecentEventsCache, ResponseCache
from eventpulse.services.event_store import EventStore

logger = structlog.get_logger()

ResponseT = TypeVar("ResponseT", bound=BaseModel)

# Retention period -> DuckDB date part; never taken from request text
RETENTION_UNITS = {"daily": "day", "weekly": "week", "monthly": "month"}

REALTIME_WINDOW = timedelta(minutes=5)

SCOPE = "tenant_id = $tenant_id AND timestamp >= $start AND timestamp < $end"


def compute_funnel(steps: Sequence[str], users_per_step: Sequence[int]) -> List[FunnelStep]:
    """
    Conversion per step: the first step is 100%, step i is
    users[i] / users[i-1] * 100 rounded to 2 decimals (0 when the previous
    step has no users).
    """
    if len(steps) < 2:
        raise ClientInputError("At least 2 events required for funnel analysis", field="events")
    if len(steps) != len(users_per_step):
        raise ValueError("steps and users_per_step must be the same length")

    funnel = []
    for index, (event_name, users) in enumerate(zip(steps, users_per_step)):
        if index == 0:
            rate = 100.0
        else:
            previous = users_per_step[index - 1]
            rate = round(users / previous * 100, 2) if previous > 0 else 0.0
        funnel.append(FunnelStep(step=index + 1, event_name=event_name, users=users, conversion_rate=rate))
    return funnel


class AnalyticsService:
    """Parameterized aggregate queries over the event store, cached per full parameter tuple"""

    def __init__(self, store: EventStore, cache: ResponseCache, recent_cache: RecentEventsCache):
        self.store = store
        self.cache = cache
        self.recent_cache = recent_cache

    async def _cached(
            self,
            endpoint: str,
            tenant_id: str,
            params: Sequence[Any],
            model: Type[ResponseT],
            compute: Callable[[], Awaitable[ResponseT]]
    ) -> ResponseT:
        key = self.cache.make_key(endpoint, tenant_id, *params)

        try:
            cached = await self.cache.get(key)
        except Exception as e:
            logger.warning("analytics_cache_read_failed", key=key, error=repr(e))
            cached = None

        if cached is not None:
            logger.info("analytics_cache_hit", endpoint=endpoint, tenant_id=tenant_id)
            cached["from_cache"] = True
            return model.model_validate(cached)

        response = await compute()

        try:
            await self.cache.set(key, response.model_dump(mode="json"))
        except Exception as e:
            logger.warning("analytics_cache_write_failed", key=key, error=repr(e))

        return response

    @staticmethod
    def _scope(tenant_id: str, date_range: DateRange) -> Dict[str, Any]:
        return {"tenant_id": tenant_id, "start": date_range.start, "end": date_range.end}

    async def overview(self, tenant_id: str, preset: str = "30d") -> OverviewResponse:
        async def compute() -> OverviewResponse:
            date_range = DateRange.resolve(preset)
            params = self._scope(tenant_id, date_range)

            rows = await self.store.query(
                f"""
                SELECT
                    COUNT(*) AS total_events,
                    COUNT(DISTINCT user_id) AS unique_users,
                    COUNT(DISTINCT session_id) AS sessions,
                    COUNT(*) FILTER (WHERE event_name = 'page_view') AS page_views
                FROM events
                WHERE {SCOPE}
                """,
                params
            )
            totals = rows[0] if rows else {}

            top_rows = await self.store.query(
                f"""
                SELECT
                    event_name,
                    COUNT(*) AS event_count,
                    COUNT(DISTINCT user_id) AS unique_users
                FROM events
                WHERE {SCOPE}
                GROUP BY event_name
                ORDER BY event_count DESC, event_name
                LIMIT 10
                """,
                params
            )

            total_events = int(totals.get("total_events") or 0)
            sessions = int(totals.get("sessions") or 0)
            logger.info("overview_query_executed", tenant_id=tenant_id, date_range=preset)

            return OverviewResponse(
                overview=OverviewMetrics(
                    total_events=total_events,
                    unique_users=int(totals.get("unique_users") or 0),
                    sessions=sessions,
                    page_views=int(totals.get("page_views") or 0),
                    events_per_session=round(total_events / sessions, 2) if sessions else 0.0
                ),
                top_events=[TopEvent(**row) for row in top_rows],
                date_range=date_range,
                generated_at=utcnow()
            )

        return await self._cached("overview", tenant_id, (preset,), OverviewResponse, compute)

    async def daily_active_users(self, tenant_id: str, preset: str = "30d") -> DAUResponse:
        async def compute() -> DAUResponse:
            date_range = DateRange.resolve(preset)
            rows = await self.store.query(
                f"""
                SELECT
                    CAST(timestamp AS DATE) AS date,
                    COUNT(DISTINCT user_id) AS active_users,
                    COUNT(DISTINCT session_id) AS sessions
                FROM events
                WHERE {SCOPE}
                GROUP BY CAST(timestamp AS DATE)
                ORDER BY date
                """,
                self._scope(tenant_id, date_range)
            )
            logger.info("dau_query_executed", tenant_id=tenant_id, date_range=preset, days=len(rows))

            return DAUResponse(
                daily_active_users=[
                    DailyActiveUsers(date=str(row["date"]), active_users=row["active_users"], sessions=row["sessions"])
                    for row in rows
                ],
                date_range=date_range
            )

        return await self._cached("daily-active", tenant_id, (preset,), DAUResponse, compute)

    async def funnel(self, tenant_id: str, steps: Sequence[str], preset: str = "30d") -> FunnelResponse:
        steps = [step.strip() for step in steps if step and step.strip()]
        if len(steps) < 2:
            raise ClientInputError("At least 2 events required for funnel analysis", field="events")

        async def compute() -> FunnelResponse:
            date_range = DateRange.resolve(preset)
            params = self._scope(tenant_id, date_range)
            # Step names are bound as a list, never spliced into the SQL text
            params["steps"] = list(steps)

            rows = await self.store.query(
                f"""
                SELECT event_name, COUNT(DISTINCT user_id) AS users
                FROM events
                WHERE {SCOPE}
                  AND list_contains($steps, event_name)
                GROUP BY event_name
                """,
                params
            )
            users_by_event = {row["event_name"]: int(row["users"]) for row in rows}
            logger.info("funnel_query_executed", tenant_id=tenant_id, steps=len(steps))

            return FunnelResponse(
                funnel=compute_funnel(steps, [users_by_event.get(step, 0) for step in steps]),
                date_range=date_range,
                events_analyzed=list(steps)
            )

        return await self._cached("funnel", tenant_id, (preset, ",".join(steps)), FunnelResponse, compute)

    async def retention(self, tenant_id: str, period: str = "daily", preset: str = "90d") -> RetentionResponse:
        unit = RETENTION_UNITS.get(period)
        if unit is None:
            raise ClientInputError(f"Unknown retention period {period!r}", field="period")

        async def compute() -> RetentionResponse:
            date_range = DateRange.resolve(preset)
            rows = await self.store.query(
                f"""
                WITH activity AS (
                    SELECT user_id, date_trunc('{unit}', timestamp) AS period_start
                    FROM events
                    WHERE {SCOPE}
                    GROUP BY user_id, period_start
                ),
                first_seen AS (
                    SELECT user_id, MIN(period_start) AS first_seen_date
                    FROM activity
                    GROUP BY user_id
                )
                SELECT
                    CAST(f.first_seen_date AS DATE) AS first_seen_date,
                    COUNT(DISTINCT f.user_id) AS cohort_size,
                    COUNT(DISTINCT a.user_id) FILTER (
                        WHERE a.period_start = f.first_seen_date + INTERVAL 1 {unit.upper()}
                    ) AS retained_users
                FROM first_seen f
                LEFT JOIN activity a ON a.user_id = f.user_id
                GROUP BY f.first_seen_date
                ORDER BY f.first_seen_date DESC
                LIMIT 20
                """,
                self._scope(tenant_id, date_range)
            )
            logger.info("retention_query_executed", tenant_id=tenant_id, period=period, cohorts=len(rows))

            cohorts = []
            for row in rows:
                cohort_size = int(row["cohort_size"])
                retained = int(row["retained_users"])
                cohorts.append(RetentionCohort(
                    first_seen_date=str(row["first_seen_date"]),
                    cohort_size=cohort_size,
                    retained_users=retained,
                    retention_rate=round(retained / cohort_size * 100, 2) if cohort_size else 0.0
                ))

            return RetentionResponse(
                retention_analysis=cohorts,
                period=period,
                date_range=date_range,
                generated_at=utcnow()
            )

        return await self._cached("retention", tenant_id, (preset, period), RetentionResponse, compute)

    async def pages(self, tenant_id: str, preset: str = "30d", page: int = 1, limit: int = 20) -> PagesResponse:
        page = max(page, 1)
        limit = max(1, min(limit, 100))
        offset = (page - 1) * limit

        async def compute() -> PagesResponse:
            date_range = DateRange.resolve(preset)
            params = self._scope(tenant_id, date_range)
            # One extra row tells us whether another page exists
            params.update({"limit": limit + 1, "offset": offset})

            rows = await self.store.query(
                f"""
                SELECT
                    json_extract_string(properties, '$.page') AS page,
                    COUNT(*) AS page_views,
                    COUNT(DISTINCT user_id) AS unique_visitors,
                    COUNT(DISTINCT session_id) AS sessions,
                    ROUND(AVG(TRY_CAST(json_extract_string(properties, '$.load_time') AS DOUBLE)), 2) AS avg_load_time
                FROM events
                WHERE {SCOPE}
                  AND event_name = 'page_view'
                  AND COALESCE(json_extract_string(properties, '$.page'), '') <> ''
                GROUP BY page
                ORDER BY page_views DESC, page
                LIMIT $limit OFFSET $offset
                """,
                params
            )
            logger.info("pages_query_executed", tenant_id=tenant_id, page=page, limit=limit)

            return PagesResponse(
                pages=[PageStats(**row) for row in rows[:limit]],
                pagination=Pagination(limit=limit, offset=offset, has_more=len(rows) > limit),
                date_range=date_range
            )

        return await self._cached("pages", tenant_id, (preset, page, limit), PagesResponse, compute)

    async def realtime(self, tenant_id: str) -> RealtimeResponse:
        """Last five minutes of activity plus the newest cached events; never cached"""
        params = {"tenant_id": tenant_id, "since": utcnow() - REALTIME_WINDOW}

        rows = await self.store.query(
            """
            SELECT
                COUNT(*) AS events,
                COUNT(DISTINCT user_id) AS active_users,
                COUNT(DISTINCT session_id) AS active_sessions
            FROM events
            WHERE tenant_id = $tenant_id AND timestamp >= $since
            """,
            params
        )
        top_rows = await self.store.query(
            """
            SELECT event_name, COUNT(*) AS cnt
            FROM events
            WHERE tenant_id = $tenant_id AND timestamp >= $since
            GROUP BY event_name
            ORDER BY cnt DESC, event_name
            LIMIT 5
            """,
            params
        )
        totals = rows[0] if rows else {}

        try:
            recent = await self.recent_cache.get_range(tenant_id, 10)
        except Exception as e:
            logger.warning("recent_cache_read_failed", tenant_id=tenant_id, error=repr(e))
            recent = []

        return RealtimeResponse(
            realtime_metrics=RealtimeMetrics(
                events_last_5min=int(totals.get("events") or 0),
                active_users_last_5min=int(totals.get("active_users") or 0),
                active_sessions_last_5min=int(totals.get("active_sessions") or 0),
                top_events_last_5min=[row["event_name"] for row in top_rows]
            ),
            recent_events=[event.model_dump(mode="json") for event in recent],
            timestamp=utcnow()
        )
