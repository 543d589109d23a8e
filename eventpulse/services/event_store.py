import asyncio
import json
import threading
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import duckdb
import structlog

from eventpulse.core.errors import ExecutionError
from eventpulse.core.timeutil import to_naive_utc, utcnow
from eventpulse.schemas.event import StoredEvent

logger = structlog.get_logger()

EVENT_COLUMNS = (
    "id", "tenant_id", "user_id", "session_id", "event_name", "properties",
    "timestamp", "platform", "ip", "user_agent", "received_at", "partition_key",
)

EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS events (
    id VARCHAR NOT NULL,
    tenant_id VARCHAR NOT NULL,
    user_id VARCHAR NOT NULL,
    session_id VARCHAR,
    event_name VARCHAR NOT NULL,
    properties VARCHAR NOT NULL,
    timestamp TIMESTAMP NOT NULL,
    platform VARCHAR NOT NULL,
    ip VARCHAR,
    user_agent VARCHAR,
    received_at TIMESTAMP NOT NULL,
    partition_key VARCHAR NOT NULL
)
"""

INSERT_SQL = f"""
INSERT INTO events ({", ".join(EVENT_COLUMNS)})
VALUES ({", ".join("?" for _ in EVENT_COLUMNS)})
"""


class EventStore:
    """
    Append-only event store on DuckDB.

    Each call gets its own cursor and runs in a worker thread under an explicit
    timeout; a timed-out statement is interrupted and surfaces as ExecutionError.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection, timeout: float = 10.0):
        self._conn = conn
        self.timeout = timeout
        # DuckDB allows concurrent readers; appends are serialized
        self._write_lock = threading.Lock()
        self._conn.execute(EVENTS_DDL)

    async def _run(self, fn: Callable, *args: Any, timeout: Optional[float] = None) -> Any:
        cursor = self._conn.cursor()

        def call():
            try:
                return fn(cursor, *args)
            finally:
                cursor.close()

        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout or self.timeout)
        except asyncio.TimeoutError:
            cursor.interrupt()
            logger.error("event_store_timeout", operation=fn.__name__)
            raise ExecutionError("Event store operation timed out")
        except duckdb.Error as e:
            logger.error("event_store_failed", operation=fn.__name__, error=str(e))
            raise ExecutionError(f"Event store operation failed: {e}")

    async def append(self, events: Sequence[StoredEvent]) -> int:
        """Write all events in one transaction; nothing is written on failure"""
        if not events:
            return 0

        rows = [_to_row(event) for event in events]
        await self._run(self._append, rows)
        logger.info("events_appended", count=len(rows), tenant_id=events[0].tenant_id)
        return len(rows)

    def _append(self, cursor: duckdb.DuckDBPyConnection, rows: List[tuple]) -> None:
        with self._write_lock:
            cursor.begin()
            try:
                cursor.executemany(INSERT_SQL, rows)
                cursor.commit()
            except Exception:
                cursor.rollback()
                raise

    async def query(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Run a parameterized read and return rows as dicts"""
        return await self._run(self._fetch_all, sql, params)

    @staticmethod
    def _fetch_all(cursor: duckdb.DuckDBPyConnection, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor.execute(sql, params)
        columns = [column[0] for column in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    async def run_capped(
            self,
            sql: str,
            params: Dict[str, Any],
            max_rows: int,
            timeout: Optional[float] = None
    ) -> Tuple[List[str], List[tuple]]:
        """Run a read and fetch at most max_rows rows, whatever LIMIT the SQL carries"""
        return await self._run(self._fetch_capped, sql, params, max_rows, timeout=timeout)

    @staticmethod
    def _fetch_capped(
            cursor: duckdb.DuckDBPyConnection,
            sql: str,
            params: Dict[str, Any],
            max_rows: int
    ) -> Tuple[List[str], List[tuple]]:
        cursor.execute(sql, params)
        columns = [column[0] for column in cursor.description]
        return columns, cursor.fetchmany(max_rows)

    async def dry_run(self, sql: str, params: Dict[str, Any]) -> List[str]:
        """Bind and plan a read without returning rows; returns the result columns"""
        return await self._run(self._describe, f"SELECT * FROM ({sql}) AS checked LIMIT 0", params)

    @staticmethod
    def _describe(cursor: duckdb.DuckDBPyConnection, sql: str, params: Dict[str, Any]) -> List[str]:
        cursor.execute(sql, params)
        return [column[0] for column in cursor.description]

    async def recent(self, tenant_id: str, limit: int) -> List[StoredEvent]:
        rows = await self.query(
            f"""
            SELECT {", ".join(EVENT_COLUMNS)}
            FROM events
            WHERE tenant_id = $tenant_id
            ORDER BY timestamp DESC
            LIMIT $limit
            """,
            {"tenant_id": tenant_id, "limit": limit}
        )
        return [_from_row(row) for row in rows]

    async def top_event_names(self, tenant_id: str, days: int = 7, limit: int = 10) -> List[str]:
        rows = await self.query(
            """
            SELECT event_name, COUNT(*) AS cnt
            FROM events
            WHERE tenant_id = $tenant_id
              AND timestamp >= $since
            GROUP BY event_name
            ORDER BY cnt DESC
            LIMIT $limit
            """,
            {"tenant_id": tenant_id, "since": utcnow() - timedelta(days=days), "limit": limit}
        )
        return [row["event_name"] for row in rows]

    def close(self):
        """Close DuckDB connection"""
        self._conn.close()


def _to_row(event: StoredEvent) -> tuple:
    return (
        event.id,
        event.tenant_id,
        event.user_id,
        event.session_id,
        event.event_name,
        json.dumps(event.properties),
        to_naive_utc(event.timestamp),
        event.platform,
        event.ip,
        event.user_agent,
        to_naive_utc(event.received_at),
        event.partition_key,
    )


def _from_row(row: Dict[str, Any]) -> StoredEvent:
    data = {key: row[key] for key in EVENT_COLUMNS if key != "partition_key"}
    data["properties"] = json.loads(row["properties"] or "{}")
    return StoredEvent(**data)
