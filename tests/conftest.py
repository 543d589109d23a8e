from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

import duckdb
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from eventpulse.core.config import Settings
from eventpulse.core.container import assemble
from eventpulse.core.errors import GenerationError
from eventpulse.core.timeutil import utcnow
from eventpulse.schemas.ai import QueryHistoryItem
from eventpulse.schemas.event import StoredEvent
from eventpulse.services.event_store import EventStore
from eventpulse.services.tenants import Tenant

TENANT_A = Tenant(tenant_id="tenant-a", name="Project A", permissions=("events:write",))
TENANT_B = Tenant(tenant_id="tenant-b", name="Project B")
KEY_A = "ak_test_tenant_a"
KEY_B = "ak_test_tenant_b"


class FakeTenantResolver:
    def __init__(self, tenants: Dict[str, Tenant]):
        self.tenants = tenants
        self.calls = 0

    async def resolve(self, credential: str) -> Optional[Tenant]:
        self.calls += 1
        return self.tenants.get(credential)


class FakeGenerator:
    """Returns queued responses in order; raises GenerationError when told to"""

    def __init__(self):
        self.responses: List[Any] = []
        self.prompts: List[str] = []

    def reply(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def complete(self, prompt: str, max_tokens: int) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise GenerationError("No response configured")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeHistory:
    def __init__(self):
        self.records: List[Dict[str, Any]] = []
        self.fail = False

    async def record(self, *, tenant_id: str, **fields: Any) -> None:
        if self.fail:
            raise RuntimeError("history store down")
        self.records.append({
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "created_at": datetime.now(timezone.utc),
            "error_kind": None,
            "error_message": None,
            **fields
        })

    async def list_recent(self, tenant_id: str, limit: int = 20) -> List[QueryHistoryItem]:
        own = [r for r in reversed(self.records) if r["tenant_id"] == tenant_id]
        return [
            QueryHistoryItem(**{k: v for k, v in r.items() if k != "tenant_id"})
            for r in own[:limit]
        ]

    async def recent_questions(self, tenant_id: str, limit: int = 5) -> List[str]:
        questions = []
        for r in reversed(self.records):
            if r["tenant_id"] == tenant_id and r["error_kind"] is None and r["question"] not in questions:
                questions.append(r["question"])
        return questions[:limit]


class InlineExecutor:
    """Runs submitted work immediately on the calling thread"""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs) -> Future:
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait: bool = True) -> None:
        pass


def make_event(tenant_id: str = TENANT_A.tenant_id, **overrides: Any) -> StoredEvent:
    now = utcnow()
    data = {
        "id": str(uuid.uuid4()),
        "tenant_id": tenant_id,
        "user_id": "user_1",
        "session_id": "session_1",
        "event_name": "page_view",
        "properties": {"page": "/home"},
        "timestamp": now,
        "received_at": now,
    }
    data.update(overrides)
    return StoredEvent(**data)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        redis_url="",
        event_rate_limit=1000,
        ai_rate_limit=10,
        rate_limit_period=60
    )


@pytest.fixture
def store():
    store = EventStore(duckdb.connect(":memory:"))
    yield store
    store.close()


@pytest.fixture
def tenants():
    return FakeTenantResolver({KEY_A: TENANT_A, KEY_B: TENANT_B})


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def history():
    return FakeHistory()


@pytest.fixture
def services(settings, store, tenants, generator, history):
    return assemble(settings, store=store, tenants=tenants, generator=generator, history=history)


@pytest.fixture
def app(services):
    from eventpulse.main import app

    app.state.services = services
    yield app
    app.state.services = None


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
