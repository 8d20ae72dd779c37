"""
Reconciliation Events - In-memory pub/sub for managed resource events.

Events follow the Kubernetes convention: a Normal or Warning type, a short
CamelCase reason and a human-readable message about one managed resource.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from managedresource import ManagedResource

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of reconciliation events."""

    NORMAL = "Normal"
    WARNING = "Warning"


class EventReason:
    """Reasons attached to events emitted by the reconciler."""

    CREATED_EXTERNAL_RESOURCE = "CreatedExternalResource"
    UPDATED_EXTERNAL_RESOURCE = "UpdatedExternalResource"
    DELETED_EXTERNAL_RESOURCE = "DeletedExternalResource"
    EXTERNAL_RESOURCE_MISSING = "ExternalResourceMissing"
    CANNOT_CONNECT = "CannotConnectToProvider"
    CANNOT_OBSERVE = "CannotObserveExternalResource"
    CANNOT_CREATE = "CannotCreateExternalResource"
    CANNOT_UPDATE = "CannotUpdateExternalResource"
    CANNOT_DELETE = "CannotDeleteExternalResource"


@dataclass
class ResourceEvent:
    """Event emitted while reconciling a managed resource."""

    event_type: EventType
    resource_id: int
    kind: str
    name: str
    reason: str
    message: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_record(
        cls,
        event_type: EventType,
        record: ManagedResource,
        reason: str,
        message: str = "",
    ) -> "ResourceEvent":
        """
        Create an event about a managed resource.

        Args:
            event_type: Normal or Warning.
            record: The managed resource the event is about.
            reason: Short CamelCase reason.
            message: Human-readable detail.

        Returns:
            A new ResourceEvent instance.
        """
        return cls(
            event_type=event_type,
            resource_id=record.id,
            kind=record.kind,
            name=record.name,
            reason=reason,
            message=message,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


class EventSubscription:
    """
    Async iterator over a subscriber's queue.

    A ``None`` sentinel stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[ResourceEvent]:
        return self

    async def __anext__(self) -> ResourceEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub bus for reconciliation events.

    Each subscriber gets its own bounded queue. Publishing never blocks: an
    event is dropped for a subscriber whose queue is full.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ResourceEvent) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.reason} event for subscriber {subscriber_id}"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate; only matching events are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Remove a subscriber and end its subscription."""
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is None:
            return

        try:
            queue.put_nowait(None)
        except asyncio.QueueFull:
            # Make room for the sentinel so the iterator still terminates
            queue.get_nowait()
            queue.put_nowait(None)
        logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        return len(self._subscribers)


async def log_events(bus: EventBus) -> None:
    """Log every event published on the bus until cancelled."""
    subscriber_id, subscription = await bus.subscribe()
    try:
        async for event in subscription:
            level = (
                logging.WARNING
                if event.event_type == EventType.WARNING
                else logging.INFO
            )
            logger.log(
                level,
                f"{event.event_type.value} {event.reason} "
                f"{event.kind}/{event.name}: {event.message}",
            )
    finally:
        await bus.unsubscribe(subscriber_id)
