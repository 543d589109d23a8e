import asyncio
import json
import time
from collections import defaultdict, deque
from itertools import islice
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from redis.asyncio import Redis
import structlog

from eventpulse.schemas.event import StoredEvent

logger = structlog.get_logger()


class RecentEventsCache:
    """
    Bounded, time-boxed list of each tenant's most recent events.

    Redis-backed when available (LPUSH + LTRIM + EXPIRE in one MULTI/EXEC),
    otherwise an in-process deque per tenant guarded by a per-tenant lock.
    Newest events sit at the head of the list.
    """

    def __init__(self, redis: Optional[Redis], max_len: int = 100, ttl: int = 3600, timeout: float = 1.0):
        self.redis = redis
        self.max_len = max_len
        self.ttl = ttl
        self.timeout = timeout
        self._lists: Dict[str, Deque[str]] = {}
        self._expires_at: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @staticmethod
    def key(tenant_id: str) -> str:
        return f"recent_events:{tenant_id}"

    async def push(self, tenant_id: str, events: Sequence[StoredEvent]) -> None:
        if not events:
            return
        payloads = [event.model_dump_json() for event in events]
        await asyncio.wait_for(self._push(tenant_id, payloads), self.timeout)

    async def _push(self, tenant_id: str, payloads: List[str]) -> None:
        key = self.key(tenant_id)

        if self.redis is not None:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lpush(key, *payloads)
                pipe.ltrim(key, 0, self.max_len - 1)
                pipe.expire(key, self.ttl)
                await pipe.execute()
            return

        async with self._locks[key]:
            items = self._live_list(key)
            if items is None:
                items = deque(maxlen=self.max_len)
                self._lists[key] = items
            items.extendleft(payloads)
            self._expires_at[key] = time.monotonic() + self.ttl

    async def get_range(self, tenant_id: str, count: int) -> List[StoredEvent]:
        return await asyncio.wait_for(self._get_range(tenant_id, count), self.timeout)

    async def _get_range(self, tenant_id: str, count: int) -> List[StoredEvent]:
        key = self.key(tenant_id)

        if self.redis is not None:
            raw = await self.redis.lrange(key, 0, count - 1)
        else:
            items = self._live_list(key)
            raw = list(islice(items, 0, count)) if items is not None else []

        return [StoredEvent.model_validate_json(item) for item in raw]

    def _live_list(self, key: str) -> Optional[Deque[str]]:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= time.monotonic():
            self._lists.pop(key, None)
            self._expires_at.pop(key, None)
        return self._lists.get(key)


class ResponseCache:
    """JSON response cache with a fixed TTL (Redis SETEX or an in-process dict)"""

    def __init__(self, redis: Optional[Redis], ttl: int = 300, timeout: float = 1.0):
        self.redis = redis
        self.ttl = ttl
        self.timeout = timeout
        self._entries: Dict[str, Tuple[float, str]] = {}

    @staticmethod
    def make_key(endpoint: str, tenant_id: str, *params: Any) -> str:
        parts = ["analytics", endpoint, tenant_id]
        parts.extend(str(param) for param in params)
        return ":".join(parts)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await asyncio.wait_for(self._get(key), self.timeout)
        return json.loads(raw) if raw is not None else None

    async def _get(self, key: str) -> Optional[str]:
        if self.redis is not None:
            return await self.redis.get(key)

        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            return None
        return raw

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        raw = json.dumps(value, default=str)
        await asyncio.wait_for(self._set(key, raw), self.timeout)

    async def _set(self, key: str, raw: str) -> None:
        if self.redis is not None:
            await self.redis.setex(key, self.ttl, raw)
            return
        self._entries[key] = (time.monotonic() + self.ttl, raw)
