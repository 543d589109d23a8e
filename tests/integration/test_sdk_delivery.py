import asyncio

from fastapi.testclient import TestClient

from conftest import KEY_A, TENANT_A, InlineExecutor
from eventpulse.sdk.client import AnalyticsClient, ClientConfig
from eventpulse.sdk.storage import MemoryQueueStorage
from eventpulse.sdk.transport import HttpTransport


class CountingTransport(HttpTransport):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sends = []

    def send(self, events):
        self.sends.append(len(events))
        super().send(events)


def stored_events(store):
    return asyncio.run(store.query(
        "SELECT event_name, user_id, session_id, properties FROM events WHERE tenant_id = $tenant_id",
        {"tenant_id": TENANT_A.tenant_id}
    ))


def make_sdk(http, api_key=KEY_A, **config):
    transport = CountingTransport("http://testserver/api/v1", api_key, session=http)
    client = AnalyticsClient(
        ClientConfig(api_key=api_key, **config),
        transport=transport,
        storage=MemoryQueueStorage(),
        executor=InlineExecutor()
    )
    return client, transport


def test_sdk_batches_reach_the_store(app, store):
    with TestClient(app) as http:
        sdk, transport = make_sdk(http, batch_size=20)
        for i in range(25):
            sdk.track("page_view", {"index": i})
        result = sdk.flush().result()

    assert transport.sends == [20, 5]
    assert result.sent == 5
    assert sdk.pending() == []

    rows = stored_events(store)
    assert len(rows) == 25
    assert {row["session_id"] for row in rows} == {sdk.session_id}
    assert {row["user_id"] for row in rows} == {f"anonymous_{sdk.session_id}"}


def test_sdk_drops_batch_the_gateway_rejects(app, store):
    with TestClient(app) as http:
        sdk, transport = make_sdk(http, api_key="ak_revoked", batch_size=50)
        sdk.track("page_view")
        result = sdk.flush().result()

    assert transport.sends == [1]
    assert result.dropped == 1
    assert sdk.pending() == []
    assert stored_events(store) == []


def test_malformed_track_does_not_sink_its_batch(app, store):
    with TestClient(app) as http:
        sdk, transport = make_sdk(http, batch_size=20)
        for i in range(19):
            sdk.track("page_view", {"index": i})
        assert sdk.track("checkout", {"cart": {"items": 3}}) is None
        result = sdk.flush().result()

    assert transport.sends == [19]
    assert result.sent == 19
    assert result.dropped == 0
    assert len(stored_events(store)) == 19
