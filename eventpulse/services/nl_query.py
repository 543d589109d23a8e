"""Natural-language question -> validated, tenant-scoped, bounded query -> shaped results.

Per request the pipeline moves through received -> context_built ->
query_generated -> validated (or rejected) -> executed (or execution_failed)
-> insights_attached -> returned. Every transition is logged as
``nl_query_state``. Nothing is retried automatically.
"""

import asyncio
import json
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

import structlog

from eventpulse.core.errors import (
    AnalyticsError,
    ClientInputError,
    ExecutionError,
    GenerationError,
    ValidationRejectedError,
)
from eventpulse.core.timeutil import utcnow
from eventpulse.middleware.rate_limit import RedisTokenBucket
from eventpulse.schemas.ai import (
    AIQueryContext,
    AIQueryResponse,
    ExplainResponse,
    QueryCheckResponse,
    QueryHistoryResponse,
    SuggestionsResponse,
)
from eventpulse.schemas.analytics import DateRange
from eventpulse.services.event_store import EventStore
from eventpulse.services.history import QueryHistory
from eventpulse.services.insights import build_frame, derive_insights, suggest_visualization
from eventpulse.services.llm import TextGenerator
from eventpulse.services.query_guard import ensure_valid, extract_query, query_parameters, validate_query
from eventpulse.services.tenants import Tenant

logger = structlog.get_logger()

FALLBACK_EVENT_NAMES = ["page_view", "button_click", "form_submit"]

EVENTS_SCHEMA = {
    "table": "events",
    "columns": [
        {"name": "id", "type": "VARCHAR", "description": "Unique event identifier"},
        {"name": "tenant_id", "type": "VARCHAR", "description": "Project identifier; always filter with tenant_id = $tenant_id"},
        {"name": "user_id", "type": "VARCHAR", "description": "User identifier (anonymous_<session> when unknown)"},
        {"name": "session_id", "type": "VARCHAR", "description": "Session identifier, may be NULL"},
        {"name": "event_name", "type": "VARCHAR", "description": "Name of the event (e.g. page_view, button_click)"},
        {"name": "properties", "type": "VARCHAR (JSON object)", "description": "Event properties; read with json_extract_string(properties, '$.key')"},
        {"name": "timestamp", "type": "TIMESTAMP (UTC)", "description": "When the event occurred"},
        {"name": "platform", "type": "VARCHAR", "description": "One of web, android, ios"},
        {"name": "received_at", "type": "TIMESTAMP (UTC)", "description": "When the server accepted the event"},
        {"name": "partition_key", "type": "VARCHAR", "description": "Month of the event timestamp as YYYYMM"},
    ],
    "dialect": "DuckDB",
}

SAMPLE_QUERIES = [
    "SELECT COUNT(*) AS total_events FROM events WHERE tenant_id = $tenant_id AND timestamp >= $start AND timestamp < $end",
    "SELECT CAST(timestamp AS DATE) AS date, COUNT(DISTINCT user_id) AS daily_active_users FROM events "
    "WHERE tenant_id = $tenant_id AND timestamp >= $start AND timestamp < $end GROUP BY date ORDER BY date LIMIT 100",
    "SELECT event_name, COUNT(*) AS event_count FROM events WHERE tenant_id = $tenant_id "
    "AND timestamp >= $start AND timestamp < $end GROUP BY event_name ORDER BY event_count DESC LIMIT 20",
    "SELECT json_extract_string(properties, '$.page') AS page, COUNT(*) AS page_views FROM events "
    "WHERE tenant_id = $tenant_id AND event_name = 'page_view' AND timestamp >= $start AND timestamp < $end "
    "GROUP BY page ORDER BY page_views DESC LIMIT 20",
]

CANONICAL_SUGGESTIONS = [
    "How many unique users visited this week?",
    "What are the top 10 events in the last 30 days?",
    "Show daily active users for the last 30 days",
    "Which pages get the most views?",
    "How many sessions happened each day this week?",
]

PROMPT_TEMPLATE = """Convert the following natural language question into a single DuckDB SQL query.

RULES:
1. Every reference to the events table MUST be filtered with: tenant_id = $tenant_id
   Never compare tenant_id to anything else and never combine that filter with OR.
2. For the requested date range use: timestamp >= $start AND timestamp < $end
3. $tenant_id, $start and $end are the only parameters available. Do not write literal ids or dates for them.
4. Use only the documented columns of the events table. Read properties with json_extract_string(properties, '$.key').
5. Read-only: exactly one SELECT statement (WITH ... SELECT is fine). No other statements.
6. Always add ORDER BY and LIMIT clauses.
7. Return only the SQL query, no explanations.

DATABASE SCHEMA:
{schema}

COMMON EVENT NAMES FOR THIS PROJECT:
{event_names}

SAMPLE QUERIES:
{samples}

QUESTION: "{question}"

CONTEXT:
- Date range: {date_range} ($start = {start}, $end = {end})
- Additional filters: {filters}

SQL QUERY:"""

EXPLAIN_TEMPLATE = """Explain in plain English, in at most five sentences, what the following DuckDB SQL query
computes over a product analytics events table. Do not rewrite the query.

{query}"""


def build_prompt(question: str, event_names: Sequence[str], context: AIQueryContext, date_range: DateRange) -> str:
    return PROMPT_TEMPLATE.format(
        schema=json.dumps(EVENTS_SCHEMA, indent=2),
        event_names=", ".join(event_names),
        samples="\n".join(SAMPLE_QUERIES),
        question=question,
        date_range=date_range.preset,
        start=date_range.start.isoformat(),
        end=date_range.end.isoformat(),
        filters=json.dumps(context.filters, sort_keys=True, default=str),
    )


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    return value


class NLQueryService:
    def __init__(
            self,
            store: EventStore,
            generator: TextGenerator,
            history: QueryHistory,
            rate_limiter: Optional[RedisTokenBucket] = None,
            *,
            max_question_length: int = 500,
            result_cap: int = 1000,
            max_tokens: int = 1000,
            request_timeout: float = 45.0
    ):
        self.store = store
        self.generator = generator
        self.history = history
        self.rate_limiter = rate_limiter
        self.max_question_length = max_question_length
        self.result_cap = result_cap
        self.max_tokens = max_tokens
        self.request_timeout = request_timeout

    def check_question(self, question: Optional[str]) -> str:
        question = (question or "").strip()
        if not question:
            raise ClientInputError("Question must not be empty", field="question")
        if len(question) > self.max_question_length:
            raise ClientInputError(
                f"Question must be at most {self.max_question_length} characters",
                field="question"
            )
        return question

    async def _enforce_budget(self, tenant: Tenant) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.enforce(tenant.tenant_id)

    async def answer(
            self,
            question: Optional[str],
            tenant: Tenant,
            context: Optional[AIQueryContext] = None
    ) -> AIQueryResponse:
        # Bounds failures are the caller's mistake; they are neither recorded nor metered
        question = self.check_question(question)
        await self._enforce_budget(tenant)
        context = context or AIQueryContext()

        trace: Dict[str, Any] = {"query": None}
        started = time.perf_counter()
        self._state("received", tenant)

        try:
            response = await asyncio.wait_for(
                self._run_pipeline(question, tenant, context, trace, started),
                self.request_timeout
            )
        except asyncio.TimeoutError:
            error = GenerationError(f"Query pipeline timed out after {self.request_timeout}s", query=trace["query"])
            await self._record_failure(tenant, question, trace["query"], started, error)
            raise error
        except AnalyticsError as e:
            if e.query is None and trace["query"] is not None:
                e.query = trace["query"]
            await self._record_failure(tenant, question, trace["query"], started, e)
            raise

        await self._record(
            tenant=tenant,
            question=question,
            generated_query=response.query,
            execution_time_ms=response.execution_time_ms,
            result_count=len(response.data)
        )
        self._state("returned", tenant, execution_time_ms=response.execution_time_ms)
        return response

    async def _run_pipeline(
            self,
            question: str,
            tenant: Tenant,
            context: AIQueryContext,
            trace: Dict[str, Any],
            started: float
    ) -> AIQueryResponse:
        date_range = DateRange.resolve(context.date_range)
        event_names = await self.common_event_names(tenant)
        prompt = build_prompt(question, event_names, context, date_range)
        self._state("context_built", tenant, event_names=len(event_names))

        raw = await self.generator.complete(prompt, self.max_tokens)
        query = extract_query(raw)
        if query is None:
            raise GenerationError("Could not extract a query from the model response")
        trace["query"] = query
        self._state("query_generated", tenant)

        try:
            check = ensure_valid(query)
        except ValidationRejectedError as e:
            self._state("rejected", tenant, reasons=e.details)
            raise
        self._state("validated", tenant, warnings=len(check.warnings))

        params = self._bind(query, tenant, date_range)
        try:
            columns, rows = await self.store.run_capped(query, params, self.result_cap)
        except ExecutionError:
            self._state("execution_failed", tenant)
            raise
        self._state("executed", tenant, rows=len(rows))

        insights, visualization = self._shape(columns, rows)
        self._state("insights_attached", tenant, visualization=visualization)

        return AIQueryResponse(
            question=question,
            query=query,
            data=[{column: _jsonable(value) for column, value in zip(columns, row)} for row in rows],
            insights=insights,
            visualization=visualization,
            warnings=check.warnings,
            execution_time_ms=int((time.perf_counter() - started) * 1000),
            generated_at=utcnow()
        )

    @staticmethod
    def _bind(query: str, tenant: Tenant, date_range: DateRange) -> Dict[str, Any]:
        available = {"tenant_id": tenant.tenant_id, "start": date_range.start, "end": date_range.end}
        used = query_parameters(query)
        return {name: value for name, value in available.items() if name in used}

    def _shape(self, columns: List[str], rows: List[tuple]) -> Tuple[List[str], str]:
        try:
            frame = build_frame(columns, rows)
            return derive_insights(frame, self.result_cap), suggest_visualization(frame)
        except Exception as e:
            logger.warning("insights_failed", error=repr(e))
            return [], "table"

    async def common_event_names(self, tenant: Tenant) -> List[str]:
        """Top 10 event names of the last 7 days, grounding the prompt in real names"""
        try:
            names = await self.store.top_event_names(tenant.tenant_id, days=7, limit=10)
        except ExecutionError as e:
            logger.error("common_event_names_failed", tenant_id=tenant.tenant_id, error=e.message)
            return list(FALLBACK_EVENT_NAMES)
        return names or list(FALLBACK_EVENT_NAMES)

    async def _record_failure(
            self,
            tenant: Tenant,
            question: str,
            query: Optional[str],
            started: float,
            error: AnalyticsError
    ) -> None:
        await self._record(
            tenant=tenant,
            question=question,
            generated_query=query,
            execution_time_ms=int((time.perf_counter() - started) * 1000),
            result_count=0,
            error_kind=error.kind,
            error_message=error.message
        )

    async def _record(self, *, tenant: Tenant, **fields: Any) -> None:
        try:
            await self.history.record(tenant_id=tenant.tenant_id, **fields)
        except Exception as e:
            logger.error("nl_query_record_failed", tenant_id=tenant.tenant_id, error=repr(e))

    @staticmethod
    def _state(state: str, tenant: Tenant, **context: Any) -> None:
        logger.info("nl_query_state", state=state, tenant_id=tenant.tenant_id, **context)

    async def suggestions(self, tenant: Tenant, limit: int = 10) -> SuggestionsResponse:
        candidates = list(CANONICAL_SUGGESTIONS)

        for name in (await self.common_event_names(tenant))[:3]:
            candidates.append(f"How many {name} events happened each day in the last 30 days?")
            candidates.append(f"Which users triggered {name} most often?")

        candidates.extend(await self.history.recent_questions(tenant.tenant_id, limit=5))

        seen: List[str] = []
        for suggestion in candidates:
            if suggestion not in seen:
                seen.append(suggestion)
        return SuggestionsResponse(suggestions=seen[:limit], generated_at=utcnow())

    async def history_for(self, tenant: Tenant, limit: int = 20) -> QueryHistoryResponse:
        try:
            items = await self.history.list_recent(tenant.tenant_id, limit)
        except Exception as e:
            logger.error("query_history_read_failed", tenant_id=tenant.tenant_id, error=repr(e))
            raise ExecutionError("Failed to read query history")
        return QueryHistoryResponse(history=items, count=len(items))

    async def check(self, query: str, tenant: Tenant) -> QueryCheckResponse:
        """Run the safety gate, then plan the query against the store without reading rows"""
        check = validate_query(query)

        if check.is_valid:
            try:
                await self.store.dry_run(query, self._bind(query, tenant, DateRange.resolve("30d")))
            except ExecutionError as e:
                check.errors.append(f"Query does not compile: {e.message}")

        return QueryCheckResponse(
            query=query,
            is_valid=check.is_valid,
            errors=check.errors,
            warnings=check.warnings
        )

    async def explain(self, query: str, tenant: Tenant) -> ExplainResponse:
        query = (query or "").strip()
        if not query:
            raise ClientInputError("Query must not be empty", field="query")
        await self._enforce_budget(tenant)

        explanation = await self.generator.complete(EXPLAIN_TEMPLATE.format(query=query), self.max_tokens)
        return ExplainResponse(query=query, explanation=explanation.strip(), generated_at=utcnow())
