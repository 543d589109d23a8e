"""Real-time fan-out of ingested events and metric updates.

Subscribers join topics (a tenant's project, one of its dashboards, or a
filter descriptor over its events). Publishing only enqueues onto each
subscriber's bounded outbound queue; a per-connection writer task drains the
queue in order, so publish order is preserved per connection and a slow
socket never stalls ingestion. Nothing is persisted or replayed.
"""

import asyncio
import json
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

logger = structlog.get_logger()

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]


def project_topic(tenant_id: str) -> str:
    return f"project:{tenant_id}"


def dashboard_topic(tenant_id: str, dashboard_id: str) -> str:
    return f"dashboard:{tenant_id}:{dashboard_id}"


def filter_topic(tenant_id: str, filters: Dict[str, Any]) -> str:
    return f"events:{tenant_id}:{json.dumps(filters, sort_keys=True, separators=(',', ':'))}"


def matches_filters(event: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    properties = event.get("properties") or {}
    for key, expected in filters.items():
        if key == "properties" and isinstance(expected, dict):
            if any(properties.get(k) != v for k, v in expected.items()):
                return False
        elif key.startswith("properties."):
            if properties.get(key[len("properties."):]) != expected:
                return False
        elif event.get(key) != expected:
            return False
    return True


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Subscriber:
    def __init__(self, connection_id: str, tenant_id: str, send: SendFn, queue_size: int):
        self.connection_id = connection_id
        self.tenant_id = tenant_id
        self.send = send
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.topics: Set[str] = set()
        self.task: Optional[asyncio.Task] = None
        self.dropped = 0

    def offer(self, message: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False


class RealtimeHub:
    def __init__(self, queue_size: int = 256, send_timeout: float = 2.0):
        self.queue_size = queue_size
        self.send_timeout = send_timeout
        self._subscribers: Dict[str, Subscriber] = {}
        self._topics: Dict[str, Set[str]] = defaultdict(set)
        self._filters: Dict[str, Dict[str, Any]] = {}

    def connect(self, connection_id: str, tenant_id: str, send: SendFn) -> Subscriber:
        """Register a live connection and start its writer; must run inside the event loop"""
        subscriber = Subscriber(connection_id, tenant_id, send, self.queue_size)
        self._subscribers[connection_id] = subscriber
        subscriber.task = asyncio.get_running_loop().create_task(self._writer(subscriber))
        logger.info("realtime_client_connected", connection_id=connection_id, tenant_id=tenant_id)
        return subscriber

    def disconnect(self, connection_id: str) -> None:
        """Drop a connection from every topic; queued messages are discarded"""
        subscriber = self._subscribers.pop(connection_id, None)
        if subscriber is None:
            return

        for topic in subscriber.topics:
            members = self._topics.get(topic)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._topics[topic]
                self._filters.pop(topic, None)

        if subscriber.task is not None and subscriber.task is not asyncio.current_task():
            subscriber.task.cancel()

        logger.info(
            "realtime_client_disconnected",
            connection_id=connection_id,
            dropped_messages=subscriber.dropped
        )

    def subscribe(self, connection_id: str, topic: str, filters: Optional[Dict[str, Any]] = None) -> bool:
        """Join a topic; returns False for unknown connections. Joining twice is a no-op"""
        subscriber = self._subscribers.get(connection_id)
        if subscriber is None:
            return False
        self._topics[topic].add(connection_id)
        subscriber.topics.add(topic)
        if filters is not None:
            self._filters[topic] = filters
        return True

    def unsubscribe(self, connection_id: str, topic: str) -> None:
        subscriber = self._subscribers.get(connection_id)
        if subscriber is not None:
            subscriber.topics.discard(topic)

        members = self._topics.get(topic)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._topics[topic]
            self._filters.pop(topic, None)

    def publish_event(self, tenant_id: str, event: Dict[str, Any]) -> int:
        message = {"type": "new_event", "event": event, "timestamp": now_iso()}
        recipients = set(self._topics.get(project_topic(tenant_id), ()))

        prefix = f"events:{tenant_id}:"
        for topic, filters in list(self._filters.items()):
            if topic.startswith(prefix) and matches_filters(event, filters):
                recipients.update(self._topics.get(topic, ()))

        return self._deliver(recipients, message)

    def publish_metric(self, tenant_id: str, metric: str, value: Any) -> int:
        message = {"type": "metric_update", "metric": metric, "value": value, "timestamp": now_iso()}
        return self._deliver(set(self._topics.get(project_topic(tenant_id), ())), message)

    def publish_dashboard_update(self, tenant_id: str, dashboard_id: str, data: Dict[str, Any]) -> int:
        message = {
            "type": "dashboard_update",
            "dashboard_id": dashboard_id,
            "data": data,
            "timestamp": now_iso()
        }
        return self._deliver(set(self._topics.get(dashboard_topic(tenant_id, dashboard_id), ())), message)

    def notify(self, connection_id: str, message: Dict[str, Any]) -> bool:
        """Queue a message for one connection, behind anything already queued for it"""
        subscriber = self._subscribers.get(connection_id)
        return subscriber is not None and subscriber.offer(message)

    def _deliver(self, connection_ids: Set[str], message: Dict[str, Any]) -> int:
        queued = 0
        for connection_id in connection_ids:
            subscriber = self._subscribers.get(connection_id)
            if subscriber is not None and subscriber.offer(message):
                queued += 1
        return queued

    async def _writer(self, subscriber: Subscriber) -> None:
        while True:
            message = await subscriber.queue.get()
            try:
                await asyncio.wait_for(subscriber.send(message), self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning("realtime_send_timeout", connection_id=subscriber.connection_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "realtime_send_failed",
                    connection_id=subscriber.connection_id,
                    error=str(e)
                )
                self.disconnect(subscriber.connection_id)
                return

    @property
    def connected_count(self) -> int:
        return len(self._subscribers)

    def topic_size(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))
