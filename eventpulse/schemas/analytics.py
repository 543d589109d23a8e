from pydantic import BaseModel
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from eventpulse.core.timeutil import utcnow

DateRangePreset = Literal["1d", "7d", "30d", "90d"]
RetentionPeriod = Literal["daily", "weekly", "monthly"]

_PRESET_DAYS = {"1d": 1, "7d": 7, "30d": 30, "90d": 90}


class DateRange(BaseModel):
    """A preset resolved to explicit UTC bounds"""
    preset: DateRangePreset
    start: datetime
    end: datetime

    @classmethod
    def resolve(cls, preset: str, now: Optional[datetime] = None) -> "DateRange":
        if preset not in _PRESET_DAYS:
            raise ValueError(f"Unknown date range {preset!r}")
        end = now or utcnow()
        return cls(preset=preset, start=end - timedelta(days=_PRESET_DAYS[preset]), end=end)


class TopEvent(BaseModel):
    """Top events response"""
    event_name: str
    event_count: int
    unique_users: int


class OverviewMetrics(BaseModel):
    total_events: int
    unique_users: int
    sessions: int
    page_views: int
    events_per_session: float


class OverviewResponse(BaseModel):
    overview: OverviewMetrics
    top_events: List[TopEvent]
    date_range: DateRange
    generated_at: datetime
    from_cache: bool = False


class DailyActiveUsers(BaseModel):
    """Daily Active Users response"""
    date: str
    active_users: int
    sessions: int


class DAUResponse(BaseModel):
    daily_active_users: List[DailyActiveUsers]
    date_range: DateRange
    from_cache: bool = False


class FunnelStep(BaseModel):
    step: int
    event_name: str
    users: int
    conversion_rate: float


class FunnelResponse(BaseModel):
    funnel: List[FunnelStep]
    date_range: DateRange
    events_analyzed: List[str]
    from_cache: bool = False


class RetentionCohort(BaseModel):
    """Single cohort retention data"""
    first_seen_date: str
    cohort_size: int
    retained_users: int
    retention_rate: float


class RetentionResponse(BaseModel):
    """Cohort retention response"""
    retention_analysis: List[RetentionCohort]
    period: RetentionPeriod
    date_range: DateRange
    generated_at: datetime
    from_cache: bool = False


class PageStats(BaseModel):
    page: str
    page_views: int
    unique_visitors: int
    sessions: int
    avg_load_time: Optional[float] = None


class Pagination(BaseModel):
    limit: int
    offset: int
    has_more: bool


class PagesResponse(BaseModel):
    pages: List[PageStats]
    pagination: Pagination
    date_range: DateRange
    from_cache: bool = False


class RealtimeMetrics(BaseModel):
    events_last_5min: int
    active_users_last_5min: int
    active_sessions_last_5min: int
    top_events_last_5min: List[str]


class RealtimeResponse(BaseModel):
    realtime_metrics: RealtimeMetrics
    recent_events: List[Dict[str, Any]]
    timestamp: datetime
