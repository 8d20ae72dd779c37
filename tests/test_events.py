"""Unit tests for reconciliation events."""

import asyncio
import json

import pytest

from events import (
    EventBus,
    EventReason,
    EventSubscription,
    EventType,
    ResourceEvent,
    log_events,
)
from managedresource import ManagedResource


@pytest.fixture
def record():
    return ManagedResource(id=3, name="sre-infra-admin", kind="RepositoryPermission")


def make_event(record, event_type=EventType.NORMAL, reason="CreatedExternalResource"):
    return ResourceEvent.from_record(event_type, record, reason, "created infra")


class TestResourceEvent:
    """Tests for ResourceEvent."""

    def test_event_type_values(self):
        assert EventType.NORMAL.value == "Normal"
        assert EventType.WARNING.value == "Warning"

    def test_from_record(self, record):
        event = make_event(record)
        assert event.resource_id == 3
        assert event.kind == "RepositoryPermission"
        assert event.name == "sre-infra-admin"
        assert event.reason == "CreatedExternalResource"
        assert event.message == "created infra"
        assert event.timestamp

    def test_to_json(self, record):
        data = json.loads(make_event(record, EventType.WARNING).to_json())
        assert data["event_type"] == "Warning"
        assert data["reason"] == "CreatedExternalResource"
        assert data["resource_id"] == 3


@pytest.mark.asyncio
class TestEventBus:
    """Tests for EventBus."""

    async def test_publish_to_subscriber(self, record):
        bus = EventBus()
        _, subscription = await bus.subscribe()

        event = make_event(record)
        await bus.publish(event)

        assert await subscription.__anext__() is event

    async def test_filter(self, record):
        bus = EventBus()
        _, subscription = await bus.subscribe(
            filter_fn=lambda e: e.event_type == EventType.WARNING
        )

        await bus.publish(make_event(record))
        warning = make_event(record, EventType.WARNING, EventReason.CANNOT_OBSERVE)
        await bus.publish(warning)

        assert await subscription.__anext__() is warning

    async def test_full_queue_drops_events(self, record):
        bus = EventBus(queue_size=1)
        _, subscription = await bus.subscribe()

        first = make_event(record)
        await bus.publish(first)
        await bus.publish(make_event(record))

        assert await subscription.__anext__() is first

    async def test_unsubscribe_ends_iteration(self, record):
        bus = EventBus()
        subscriber_id, subscription = await bus.subscribe()
        assert bus.subscriber_count() == 1

        await bus.unsubscribe(subscriber_id)

        assert bus.subscriber_count() == 0
        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()

    async def test_unsubscribe_full_queue(self, record):
        bus = EventBus(queue_size=1)
        subscriber_id, subscription = await bus.subscribe()
        await bus.publish(make_event(record))

        await bus.unsubscribe(subscriber_id)

        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()

    async def test_subscription_is_async_iterator(self):
        subscription = EventSubscription(asyncio.Queue())
        assert subscription.__aiter__() is subscription


@pytest.mark.asyncio
class TestLogEvents:
    """Tests for log_events."""

    async def test_logs_warnings(self, record, caplog):
        bus = EventBus()
        task = asyncio.create_task(log_events(bus))
        await asyncio.sleep(0)

        with caplog.at_level("INFO", logger="events"):
            await bus.publish(
                make_event(record, EventType.WARNING, EventReason.CANNOT_CONNECT)
            )
            await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert "CannotConnectToProvider" in caplog.text
        assert any(r.levelname == "WARNING" for r in caplog.records)
        assert bus.subscriber_count() == 0
