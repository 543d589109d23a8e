from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from eventpulse.core.errors import AuthenticationError
from eventpulse.models.base import Base
from eventpulse.models.tenant import ApiKey, Project
from eventpulse.services.history import QueryHistory
from eventpulse.services.tenants import SqlTenantResolver, generate_api_key, hash_api_key, require_tenant


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


async def create_key(session_factory, *, project_active=True, key_active=True, expires_at=None, permissions=None):
    api_key = generate_api_key()
    async with session_factory() as session:
        project = Project(name="Shop", is_active=project_active)
        session.add(project)
        await session.flush()
        session.add(ApiKey(
            project_id=project.id,
            key_hash=hash_api_key(api_key),
            is_active=key_active,
            expires_at=expires_at,
            permissions=permissions or []
        ))
        await session.commit()
        return api_key, str(project.id)


@pytest.mark.asyncio
async def test_active_key_resolves_to_its_project(session_factory):
    api_key, project_id = await create_key(session_factory, permissions=["events:write"])
    resolver = SqlTenantResolver(session_factory)

    tenant = await resolver.resolve(api_key)

    assert tenant.tenant_id == project_id
    assert tenant.name == "Shop"
    assert tenant.permissions == ("events:write",)

    async with session_factory() as session:
        stored = (await session.execute(select(ApiKey))).scalar_one()
    assert stored.last_used_at is not None
    assert stored.key_hash != api_key


@pytest.mark.asyncio
@pytest.mark.parametrize("options", [
    {"key_active": False},
    {"project_active": False},
    {"expires_at": datetime.now(timezone.utc) - timedelta(days=1)},
])
async def test_unusable_keys_do_not_resolve(session_factory, options):
    api_key, _ = await create_key(session_factory, **options)
    assert await SqlTenantResolver(session_factory).resolve(api_key) is None


@pytest.mark.asyncio
async def test_unknown_key_rejected(session_factory):
    await create_key(session_factory)
    resolver = SqlTenantResolver(session_factory)

    assert await resolver.resolve("ak_nope") is None
    with pytest.raises(AuthenticationError):
        await require_tenant(resolver, "ak_nope")
    with pytest.raises(AuthenticationError):
        await require_tenant(resolver, None)


@pytest.mark.asyncio
async def test_history_is_newest_first_and_tenant_scoped(session_factory):
    history = QueryHistory(session_factory)

    await history.record(tenant_id="t1", question="first", generated_query="SELECT 1", execution_time_ms=5, result_count=1)
    await history.record(
        tenant_id="t1",
        question="broken",
        generated_query=None,
        execution_time_ms=3,
        result_count=0,
        error_kind="generation_error",
        error_message="Text generation service failed"
    )
    await history.record(tenant_id="t2", question="other tenant", generated_query="SELECT 2", execution_time_ms=1, result_count=1)

    items = await history.list_recent("t1")

    assert [item.question for item in items] == ["broken", "first"]
    assert items[0].error_kind == "generation_error"
    assert items[1].generated_query == "SELECT 1"


@pytest.mark.asyncio
async def test_recent_questions_skip_failures_and_duplicates(session_factory):
    history = QueryHistory(session_factory)
    for question in ("daily users", "top pages", "daily users"):
        await history.record(tenant_id="t1", question=question, generated_query="SELECT 1", execution_time_ms=1, result_count=1)
    await history.record(
        tenant_id="t1", question="failed one", generated_query=None, execution_time_ms=1, result_count=0,
        error_kind="execution_error", error_message="boom"
    )

    assert await history.recent_questions("t1") == ["daily users", "top pages"]
