import pytest
from pydantic import ValidationError

from eventpulse.schemas.event import EventBatchCreate, EventCreate


def test_minimal_event_defaults():
    event = EventCreate(event_name="  page_view ")
    assert event.event_name == "page_view"
    assert event.properties == {}
    assert event.platform == "web"
    assert event.timestamp is None


def test_scalar_properties_accepted():
    event = EventCreate(event_name="purchase", properties={"sku": "A1", "qty": 2, "price": 9.5, "gift": False})
    assert event.properties["qty"] == 2
    assert event.properties["gift"] is False


@pytest.mark.parametrize("payload", [
    {"event_name": ""},
    {"event_name": "   "},
    {"event_name": "x" * 101},
    {"event_name": "a", "properties": {"nested": {"b": 1}}},
    {"event_name": "a", "properties": {"list": [1, 2]}},
    {"event_name": "a", "properties": {f"k{i}": i for i in range(51)}},
    {"event_name": "a", "properties": {"blob": "x" * (10 * 1024 + 1)}},
    {"event_name": "a", "platform": "desktop"},
    {"event_name": "a", "unexpected": True},
])
def test_invalid_events_rejected(payload):
    with pytest.raises(ValidationError):
        EventCreate(**payload)


def test_batch_bounds():
    with pytest.raises(ValidationError):
        EventBatchCreate(events=[])
    with pytest.raises(ValidationError):
        EventBatchCreate(events=[{"event_name": "e"}] * 101)
    assert len(EventBatchCreate(events=[{"event_name": "e"}] * 100).events) == 100


def test_batch_error_location_names_the_event():
    with pytest.raises(ValidationError) as exc_info:
        EventBatchCreate(events=[{"event_name": "ok"}, {"event_name": "ok"}, {"event_name": ""}])
    assert exc_info.value.errors()[0]["loc"][:3] == ("events", 2, "event_name")
