import asyncio
from datetime import timedelta

import pytest

from conftest import KEY_A, TENANT_A, TENANT_B, make_event
from eventpulse.core.errors import GenerationError
from eventpulse.core.timeutil import utcnow

AI_URL = "/api/v1/ai"
HEADERS = {"X-API-Key": KEY_A}

TOP_EVENTS_SQL = (
    "SELECT event_name, COUNT(*) AS event_count FROM events "
    "WHERE tenant_id = $tenant_id AND timestamp >= $start AND timestamp < $end "
    "GROUP BY event_name ORDER BY event_count DESC LIMIT 20"
)


async def seed(store):
    now = utcnow() - timedelta(hours=1)
    await store.append([
        make_event(event_name="page_view", user_id="u1", timestamp=now),
        make_event(event_name="page_view", user_id="u2", timestamp=now),
        make_event(event_name="page_view", user_id="u1", timestamp=now),
        make_event(event_name="button_click", user_id="u2", timestamp=now),
        make_event(tenant_id=TENANT_B.tenant_id, event_name="page_view", timestamp=now),
        make_event(tenant_id=TENANT_B.tenant_id, event_name="page_view", timestamp=now),
    ])


def spy_on_execution(store, monkeypatch):
    calls = []
    original = store.run_capped

    async def run_capped(sql, params, max_rows, timeout=None):
        calls.append((sql, params))
        return await original(sql, params, max_rows, timeout=timeout)

    monkeypatch.setattr(store, "run_capped", run_capped)
    return calls


@pytest.mark.asyncio
async def test_question_answered_with_tenant_scoped_results(client, store, generator, history):
    await seed(store)
    generator.reply(f"Here is the query:\n```sql\n{TOP_EVENTS_SQL};\n```")

    response = await client.post(
        f"{AI_URL}/query",
        json={"question": "What are the top events?", "context": {"date_range": "7d"}},
        headers=HEADERS
    )

    assert response.status_code == 200
    data = response.json()
    assert data["query"] == TOP_EVENTS_SQL
    assert data["data"] == [
        {"event_name": "page_view", "event_count": 3},
        {"event_name": "button_click", "event_count": 1},
    ]
    assert data["visualization"] == "bar"
    assert "'page_view' leads event_count with 3 (75.0% of the total)." in data["insights"]
    assert data["warnings"] == []

    prompt = generator.prompts[0]
    assert "What are the top events?" in prompt
    assert "page_view, button_click" in prompt
    assert TENANT_A.tenant_id not in prompt

    [record] = history.records
    assert record["tenant_id"] == TENANT_A.tenant_id
    assert record["result_count"] == 2
    assert record["error_kind"] is None


@pytest.mark.asyncio
async def test_results_capped_at_limit(client, store, generator):
    now = utcnow() - timedelta(hours=1)
    await store.append([make_event(user_id=f"u{i}", timestamp=now) for i in range(1500)])
    generator.reply("SELECT id FROM events WHERE tenant_id = $tenant_id LIMIT 5000")

    response = await client.post(f"{AI_URL}/query", json={"question": "List every event id"}, headers=HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert len(data["data"]) == 1000
    assert any("capped at 1,000 rows" in line for line in data["insights"])
    assert any("timestamp" in warning for warning in data["warnings"])


@pytest.mark.asyncio
async def test_rejected_query_is_never_executed(client, store, generator, history, monkeypatch):
    calls = spy_on_execution(store, monkeypatch)
    generator.reply("```sql\nSELECT * FROM events WHERE tenant_id = $tenant_id OR 1=1 LIMIT 10\n```")

    response = await client.post(f"{AI_URL}/query", json={"question": "Show all events"}, headers=HEADERS)

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["kind"] == "validation_rejected"
    assert error["query"] == "SELECT * FROM events WHERE tenant_id = $tenant_id OR 1=1 LIMIT 10"
    assert "Query must filter on tenant_id = $tenant_id" in error["details"]
    assert calls == []

    [record] = history.records
    assert record["error_kind"] == "validation_rejected"
    assert record["generated_query"] == error["query"]


@pytest.mark.asyncio
async def test_mutating_query_rejected(client, store, generator, monkeypatch):
    calls = spy_on_execution(store, monkeypatch)
    generator.reply("```sql\nDELETE FROM events WHERE tenant_id = $tenant_id\n```")

    response = await client.post(f"{AI_URL}/query", json={"question": "Clean up old events"}, headers=HEADERS)

    assert response.status_code == 422
    assert "Mutating operation detected: DELETE" in response.json()["error"]["details"]
    assert calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", [GenerationError("Text generation service failed"), "I cannot answer that."])
async def test_generation_failures(client, generator, history, reply):
    generator.reply(reply)

    response = await client.post(f"{AI_URL}/query", json={"question": "Anything?"}, headers=HEADERS)

    assert response.status_code == 502
    assert response.json()["error"]["kind"] == "generation_error"
    [record] = history.records
    assert record["error_kind"] == "generation_error"
    assert record["generated_query"] is None


@pytest.mark.asyncio
async def test_execution_failure_reports_query(client, generator, history):
    query = "SELECT no_such_column FROM events WHERE tenant_id = $tenant_id LIMIT 1"
    generator.reply(query)

    response = await client.post(f"{AI_URL}/query", json={"question": "Broken?"}, headers=HEADERS)

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["kind"] == "execution_error"
    assert error["query"] == query
    assert history.records[0]["error_kind"] == "execution_error"


@pytest.mark.asyncio
@pytest.mark.parametrize("question", ["", "   ", "x" * 501])
async def test_question_bounds(client, generator, history, question):
    response = await client.post(f"{AI_URL}/query", json={"question": question}, headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["error"]["field"] == "question"
    assert generator.prompts == []
    assert history.records == []


@pytest.mark.asyncio
async def test_ai_budget_is_per_tenant(client):
    # No replies queued: every request fails fast with generation_error but still spends budget
    statuses = [
        (await client.post(f"{AI_URL}/query", json={"question": f"q{i}"}, headers=HEADERS)).status_code
        for i in range(11)
    ]

    assert statuses == [502] * 10 + [429]


@pytest.mark.asyncio
async def test_pipeline_timeout_is_generation_error(client, services, history):
    class SlowGenerator:
        async def complete(self, prompt, max_tokens):
            await asyncio.sleep(5)
            return TOP_EVENTS_SQL

    services.nl_query.generator = SlowGenerator()
    services.nl_query.request_timeout = 0.05

    response = await client.post(f"{AI_URL}/query", json={"question": "Slow one"}, headers=HEADERS)

    assert response.status_code == 502
    assert "timed out" in response.json()["error"]["message"]
    assert history.records[0]["error_kind"] == "generation_error"


@pytest.mark.asyncio
async def test_history_failure_does_not_fail_request(client, store, generator, history):
    await seed(store)
    history.fail = True
    generator.reply(TOP_EVENTS_SQL)

    response = await client.post(f"{AI_URL}/query", json={"question": "Top events"}, headers=HEADERS)

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_history_and_suggestions(client, store, generator):
    await seed(store)
    generator.reply(TOP_EVENTS_SQL)
    await client.post(f"{AI_URL}/query", json={"question": "Which events are most common?"}, headers=HEADERS)

    history = (await client.get(f"{AI_URL}/history", headers=HEADERS)).json()
    assert history["count"] == 1
    assert history["history"][0]["question"] == "Which events are most common?"

    other = (await client.get(f"{AI_URL}/history", headers={"X-API-Key": "ak_test_tenant_b"})).json()
    assert other["count"] == 0

    suggestions = (await client.get(f"{AI_URL}/suggestions", headers=HEADERS)).json()["suggestions"]
    assert len(suggestions) == 10
    assert len(set(suggestions)) == len(suggestions)
    assert "How many page_view events happened each day in the last 30 days?" in suggestions


@pytest.mark.asyncio
async def test_validate_endpoint(client):
    ok = (await client.post(f"{AI_URL}/validate", json={"query": TOP_EVENTS_SQL}, headers=HEADERS)).json()
    assert ok["is_valid"] is True

    unscoped = (await client.post(
        f"{AI_URL}/validate", json={"query": "SELECT * FROM events LIMIT 1"}, headers=HEADERS
    )).json()
    assert unscoped["is_valid"] is False

    broken = (await client.post(
        f"{AI_URL}/validate",
        json={"query": "SELECT missing FROM events WHERE tenant_id = $tenant_id LIMIT 1"},
        headers=HEADERS
    )).json()
    assert broken["is_valid"] is False
    assert broken["errors"][0].startswith("Query does not compile")


@pytest.mark.asyncio
async def test_explain_endpoint(client, generator):
    generator.reply("  Counts events per name over the selected period.  ")

    response = await client.post(f"{AI_URL}/explain", json={"query": TOP_EVENTS_SQL}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["explanation"] == "Counts events per name over the selected period."


@pytest.mark.asyncio
async def test_ai_endpoints_require_api_key(client):
    response = await client.post(f"{AI_URL}/query", json={"question": "hi"})
    assert response.status_code == 401
