import asyncio
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from eventpulse.models.query_record import NLQueryRecord
from eventpulse.schemas.ai import QueryHistoryItem

logger = structlog.get_logger()


class QueryHistory:
    """Append-only audit trail of natural-language queries"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timeout: float = 5.0):
        self.session_factory = session_factory
        self.timeout = timeout

    async def record(
            self,
            *,
            tenant_id: str,
            question: str,
            generated_query: Optional[str],
            execution_time_ms: int,
            result_count: int,
            error_kind: Optional[str] = None,
            error_message: Optional[str] = None
    ) -> None:
        record = NLQueryRecord(
            tenant_id=tenant_id,
            question=question,
            generated_query=generated_query,
            execution_time_ms=execution_time_ms,
            result_count=result_count,
            error_kind=error_kind,
            error_message=error_message
        )

        async def write():
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()

        await asyncio.wait_for(write(), self.timeout)

    async def list_recent(self, tenant_id: str, limit: int = 20) -> List[QueryHistoryItem]:
        stmt = (
            select(NLQueryRecord)
            .where(NLQueryRecord.tenant_id == tenant_id)
            .order_by(NLQueryRecord.created_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            records = (await session.execute(stmt)).scalars().all()

        return [
            QueryHistoryItem(
                id=str(record.id),
                question=record.question,
                generated_query=record.generated_query,
                execution_time_ms=record.execution_time_ms,
                result_count=record.result_count,
                error_kind=record.error_kind,
                error_message=record.error_message,
                created_at=record.created_at
            )
            for record in records
        ]

    async def recent_questions(self, tenant_id: str, limit: int = 5) -> List[str]:
        """Distinct questions that produced results, newest first"""
        stmt = (
            select(NLQueryRecord.question)
            .where(
                NLQueryRecord.tenant_id == tenant_id,
                NLQueryRecord.error_kind.is_(None)
            )
            .order_by(NLQueryRecord.created_at.desc())
            .limit(limit * 4)
        )
        try:
            async with self.session_factory() as session:
                questions = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            logger.error("query_history_read_failed", error=str(e))
            return []

        seen: List[str] = []
        for question in questions:
            if question not in seen:
                seen.append(question)
            if len(seen) == limit:
                break
        return seen
