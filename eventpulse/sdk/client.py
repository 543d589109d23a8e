"""Client-side event buffer.

Events are queued locally and shipped to the ingestion gateway in batches:
when the queue reaches ``batch_size``, on a periodic timer, when the host
comes back online and once more at shutdown. Failed batches go back to the
front of the queue until each event has used up its retry allowance. The
queue (including batches still in flight) is mirrored to local storage so a
restart can pick up where the previous process left off.
"""

import itertools
import secrets
import threading
import time
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import structlog
from pydantic import BaseModel, Field, ValidationError

from eventpulse.schemas.event import EventCreate
from eventpulse.sdk.storage import FileQueueStorage, MemoryQueueStorage, QueueStorage
from eventpulse.sdk.transport import DeliveryRejectedError, HttpTransport, Transport

logger = structlog.get_logger()

LIBRARY_NAME = "eventpulse-python"
LIBRARY_VERSION = "1.0.0"


class ClientConfig(BaseModel):
    api_key: str = Field(..., min_length=1)
    api_url: str = "http://localhost:8000/api/v1"
    user_id: Optional[str] = None
    platform: str = "web"
    batch_size: int = Field(20, ge=1)
    flush_interval: float = Field(10.0, gt=0)
    retry_attempts: int = Field(3, ge=0)
    offline_enabled: bool = True
    request_timeout: float = Field(10.0, gt=0)
    storage_dir: Optional[str] = None
    debug: bool = False


class ClientState(str, Enum):
    ACTIVE = "active"
    DRAINING = "draining"
    DESTROYED = "destroyed"


@dataclass
class QueuedEvent:
    event_name: str
    properties: Dict[str, Any]
    timestamp: str
    user_id: str
    session_id: str
    platform: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    retry_count: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_name": self.event_name,
            "properties": self.properties,
            "timestamp": self.timestamp,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "platform": self.platform
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedEvent":
        return cls(
            event_name=data["event_name"],
            properties=dict(data.get("properties") or {}),
            timestamp=data["timestamp"],
            user_id=data["user_id"],
            session_id=data["session_id"],
            platform=data.get("platform", "web"),
            id=data.get("id") or str(uuid.uuid4()),
            retry_count=int(data.get("retry_count", 0))
        )


@dataclass(frozen=True)
class FlushResult:
    sent: int = 0
    requeued: int = 0
    dropped: int = 0
    error: Optional[str] = None


def _completed(result: FlushResult) -> "Future[FlushResult]":
    future: Future = Future()
    future.set_result(result)
    return future


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class AnalyticsClient:
    def __init__(
            self,
            config: ClientConfig,
            transport: Optional[Transport] = None,
            storage: Optional[QueueStorage] = None,
            executor: Optional[Executor] = None,
            online: bool = True
    ):
        self.config = config
        self.transport = transport or HttpTransport(
            config.api_url, config.api_key, timeout=config.request_timeout
        )
        self.storage = storage or MemoryQueueStorage()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="eventpulse-delivery")

        self._lock = threading.RLock()
        self._queue: List[QueuedEvent] = []
        self._in_flight: Dict[int, List[QueuedEvent]] = {}
        self._batch_ids = itertools.count(1)
        self._state = ClientState.ACTIVE
        self._online = online

        self._user_id = config.user_id
        self._session_id = new_session_id()
        self._context: Dict[str, Any] = {"library": LIBRARY_NAME, "library_version": LIBRARY_VERSION}
        self._current_url: Optional[str] = None
        self._current_path: Optional[str] = None

        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None

        self._restore()

    # -- state --------------------------------------------------------------

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def online(self) -> bool:
        return self._online

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def queue_size(self) -> int:
        with self._lock:
            return len(self._queue)

    def pending(self) -> List[QueuedEvent]:
        """Copy of the events waiting for the next flush"""
        with self._lock:
            return list(self._queue)

    # -- public API ---------------------------------------------------------

    def start(self) -> "AnalyticsClient":
        """Start the periodic flush timer and replay anything restored from storage"""
        with self._lock:
            if self._state is not ClientState.ACTIVE or self._timer is not None:
                return self
            self._timer = threading.Thread(target=self._run_timer, name="eventpulse-flush", daemon=True)
            self._timer.start()
            has_restored = bool(self._queue)

        if has_restored:
            self.flush()
        return self

    def track(self, event_name: str, properties: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Queue an event. Never raises; returns the event id or None if it was not queued."""
        try:
            with self._lock:
                if self._state is not ClientState.ACTIVE:
                    logger.debug("track_ignored", event_name=event_name, state=self._state.value)
                    return None

                event = QueuedEvent(
                    event_name=event_name,
                    properties={**self._context, **(properties or {})},
                    timestamp=datetime.now(timezone.utc).isoformat(),
                    user_id=self._user_id or f"anonymous_{self._session_id}",
                    session_id=self._session_id,
                    platform=self.config.platform
                )
                # The gateway rejects a batch as a whole, so an invalid event never joins one
                try:
                    EventCreate.model_validate(event.to_payload())
                except ValidationError as e:
                    logger.warning(
                        "event_rejected",
                        event_name=str(event_name)[:100],
                        errors=[".".join(str(p) for p in err["loc"]) + ": " + err["msg"] for err in e.errors()]
                    )
                    return None
                self._queue.append(event)
                should_flush = len(self._queue) >= self.config.batch_size
                self._persist()

            if self.config.debug:
                logger.debug("event_tracked", event_name=event_name, event_id=event.id)

            if should_flush:
                self.flush()
            return event.id
        except Exception as e:
            logger.error("track_failed", event_name=event_name, error=str(e))
            return None

    def identify(self, user_id: str, properties: Optional[Dict[str, Any]] = None) -> Optional[str]:
        with self._lock:
            previous = self._user_id
            self._user_id = user_id

        identify_properties = dict(properties or {})
        if previous is not None:
            identify_properties["previous_user_id"] = previous
        return self.track("user_identify", identify_properties)

    def page(self, name: Optional[str] = None, properties: Optional[Dict[str, Any]] = None) -> Optional[str]:
        page_properties: Dict[str, Any] = {"page": name or self._current_path or "/"}
        if self._current_url:
            page_properties["url"] = self._current_url
        page_properties.update(properties or {})
        return self.track("page_view", page_properties)

    def on_navigation(self, url: str) -> bool:
        """Record a page view when the host reports a location change"""
        with self._lock:
            if url == self._current_url:
                return False
            self._current_url = url
            self._current_path = urlsplit(url).path or "/"
        self.page()
        return True

    def set_online(self, online: bool) -> "Future[FlushResult]":
        with self._lock:
            came_online = online and not self._online
            self._online = online
        logger.info("connectivity_changed", online=online)

        if came_online:
            return self.flush()
        return _completed(FlushResult())

    def flush(self, synchronous: bool = False) -> "Future[FlushResult]":
        """
        Take the whole queue as one batch and deliver it.

        The asynchronous path runs on the delivery executor and requeues the
        batch on failure. ``synchronous=True`` is for teardown: the batch is
        written with the transport's fire-and-forget beacon and the outcome
        is never observed.
        """
        with self._lock:
            if self._state is ClientState.DESTROYED or not self._queue:
                return _completed(FlushResult())
            if not self._online and self.config.offline_enabled:
                return _completed(FlushResult())

            batch = self._queue
            self._queue = []
            batch_id = next(self._batch_ids)
            self._in_flight[batch_id] = batch

        if synchronous:
            return _completed(self._beacon(batch_id, batch))

        try:
            return self._executor.submit(self._deliver, batch_id, batch)
        except RuntimeError:
            # Executor already shut down
            return _completed(self._deliver(batch_id, batch))

    def reset(self) -> None:
        """Forget the user, start a new session and drop everything queued, persisted state included"""
        with self._lock:
            self._user_id = None
            self._session_id = new_session_id()
            self._queue = []
            self._in_flight.clear()
            try:
                self.storage.clear()
            except Exception as e:
                logger.warning("queue_clear_failed", error=str(e))
        logger.info("client_reset")

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the timer, beacon whatever is queued, then refuse further work"""
        with self._lock:
            if self._state is not ClientState.ACTIVE:
                return
            self._state = ClientState.DRAINING

        self._stop.set()
        if self._timer is not None and self._timer is not threading.current_thread():
            self._timer.join(timeout)

        self.flush(synchronous=True)

        with self._lock:
            self._state = ClientState.DESTROYED
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        logger.info("client_shutdown")

    def __enter__(self) -> "AnalyticsClient":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.shutdown()

    # -- delivery -----------------------------------------------------------

    def _deliver(self, batch_id: int, batch: List[QueuedEvent]) -> FlushResult:
        try:
            self.transport.send([event.to_payload() for event in batch])
        except DeliveryRejectedError as e:
            with self._lock:
                self._in_flight.pop(batch_id, None)
                self._persist()
            logger.warning("batch_rejected", size=len(batch), error=str(e))
            return FlushResult(dropped=len(batch), error=str(e))
        except Exception as e:
            return self._requeue(batch_id, batch, e)

        with self._lock:
            self._in_flight.pop(batch_id, None)
            self._persist()
        if self.config.debug:
            logger.debug("batch_sent", size=len(batch))
        return FlushResult(sent=len(batch))

    def _requeue(self, batch_id: int, batch: List[QueuedEvent], error: Exception) -> FlushResult:
        retriable = [
            replace(event, retry_count=event.retry_count + 1)
            for event in batch
            if event.retry_count < self.config.retry_attempts
        ]
        dropped = len(batch) - len(retriable)

        with self._lock:
            if self._in_flight.pop(batch_id, None) is None:
                # reset() discarded this batch while it was in flight
                return FlushResult(dropped=len(batch), error=str(error))
            self._queue[:0] = retriable
            self._persist()

        logger.warning(
            "batch_delivery_failed",
            size=len(batch),
            requeued=len(retriable),
            dropped=dropped,
            error=str(error)
        )
        return FlushResult(requeued=len(retriable), dropped=dropped, error=str(error))

    def _beacon(self, batch_id: int, batch: List[QueuedEvent]) -> FlushResult:
        try:
            self.transport.beacon([event.to_payload() for event in batch])
        except Exception as e:
            logger.warning("beacon_failed", size=len(batch), error=str(e))
        with self._lock:
            self._in_flight.pop(batch_id, None)
            self._persist()
        return FlushResult(sent=len(batch))

    def _run_timer(self) -> None:
        while not self._stop.wait(self.config.flush_interval):
            with self._lock:
                has_pending = bool(self._queue)
            if has_pending:
                self.flush()

    # -- persistence --------------------------------------------------------

    def _persist(self) -> None:
        """Mirror in-flight and queued events to storage; caller holds the lock"""
        if not self.config.offline_enabled:
            return
        snapshot = [asdict(event) for batch in self._in_flight.values() for event in batch]
        snapshot.extend(asdict(event) for event in self._queue)
        try:
            self.storage.save(snapshot)
        except Exception as e:
            logger.warning("queue_persist_failed", size=len(snapshot), error=str(e))

    def _restore(self) -> None:
        if not self.config.offline_enabled:
            return
        try:
            snapshot = self.storage.load()
        except Exception as e:
            logger.warning("queue_restore_failed", error=str(e))
            return

        restored = []
        for item in snapshot:
            try:
                restored.append(QueuedEvent.from_dict(item))
            except (KeyError, TypeError, ValueError):
                logger.warning("queued_event_discarded", item=str(item)[:200])
        self._queue = restored
        if restored:
            logger.info("queue_restored", size=len(restored))


def create_client(api_key: str, **options: Any) -> AnalyticsClient:
    """Build a started client; file-backed persistence when ``storage_dir`` is given"""
    config = ClientConfig(api_key=api_key, **options)
    storage = FileQueueStorage(config.storage_dir) if config.storage_dir else MemoryQueueStorage()
    return AnalyticsClient(config, storage=storage).start()
