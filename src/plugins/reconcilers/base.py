"""
Reconciler Plugin Base - Abstract interface for reconciler plugins.

A reconciler owns the reconciliation loop for one or more managed kinds. It
reads due records through the ReconcilerContext and reports status, history
and events back through it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from db import DatabaseManager, ResourceStatus
from events import EventBus, EventType, ResourceEvent
from managedresource import ManagedResource

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[int] = None


@dataclass
class BackoffPolicy:
    """Retry delay for failed reconciles: base * 2^retries, capped, ±jitter."""

    base_delay: int = 60
    max_delay: int = 3600
    jitter_factor: float = 0.1


class ReconcilerContext:
    """
    Context provided to reconcilers by the operator.

    Gives reconcilers access to the managed resource store, status
    reporting and the event bus.
    """

    def __init__(
        self,
        db: DatabaseManager,
        shutdown_event: asyncio.Event,
        event_bus: Optional[EventBus] = None,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self.db = db
        self.shutdown_event = shutdown_event
        self.event_bus = event_bus
        self.backoff = backoff or BackoffPolicy()

    async def get_resources_needing_reconciliation(
        self,
        kinds: List[str],
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """
        Get managed resources of the given kinds that are due.

        Args:
            kinds: Managed kind names to filter by.
            limit: Maximum number of resources to return.
        """
        return await self.db.get_resources_needing_reconciliation_by_kind(
            kinds=kinds,
            limit=limit,
        )

    async def save_conditions(self, record: ManagedResource) -> None:
        """Persist the record's conditions without rescheduling it."""
        await self.db.update_resource_conditions(
            record.id, record.conditions_as_dicts()
        )

    async def save_status(
        self,
        record: ManagedResource,
        status: ResourceStatus,
        message: str = "",
        requeue_after: int = 60,
    ) -> None:
        """
        Persist a successful reconcile: conditions, external name, observed
        generation, and when to look at the record next.
        """
        await self.db.update_resource_status(
            resource_id=record.id,
            status=status,
            message=message,
            conditions=record.conditions_as_dicts(),
            external_name=record.external_name,
            observed_generation=record.generation,
            requeue_after=requeue_after,
        )

    async def record_failure(self, record: ManagedResource, message: str) -> None:
        """Persist a failed reconcile and schedule a retry with backoff."""
        await self.db.record_failure(
            resource_id=record.id,
            message=message,
            conditions=record.conditions_as_dicts(),
            external_name=record.external_name,
            base_delay=self.backoff.base_delay,
            max_delay=self.backoff.max_delay,
            jitter_factor=self.backoff.jitter_factor,
        )

    async def record_reconciliation(
        self,
        resource_id: int,
        operation: str,
        result: ReconcileResult,
        duration_seconds: Optional[float] = None,
    ) -> None:
        """
        Record a reconciliation attempt in history.

        Args:
            resource_id: The resource ID.
            operation: What the cycle did (observe, create, update, delete).
            result: The ReconcileResult of the cycle.
            duration_seconds: How long the cycle took.
        """
        await self.db.record_reconciliation(
            resource_id=resource_id,
            operation=operation,
            success=result.success,
            error_message=result.message if not result.success else None,
            duration_seconds=duration_seconds,
        )

    async def emit_event(
        self,
        event_type: EventType,
        record: ManagedResource,
        reason: str,
        message: str = "",
    ) -> None:
        """Publish an event about a record, if an event bus is attached."""
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            ResourceEvent.from_record(event_type, record, reason, message)
        )

    async def remove_finalizer(self, resource_id: int, finalizer: str) -> None:
        await self.db.remove_finalizer(resource_id, finalizer)

    async def get_finalizers(self, resource_id: int) -> List[str]:
        return await self.db.get_finalizers(resource_id)

    async def hard_delete_resource(self, resource_id: int) -> bool:
        """
        Permanently delete a resource (only if soft-deleted and no finalizers).

        Returns:
            True if deleted, False otherwise.
        """
        return await self.db.hard_delete_resource(resource_id)


class ReconcilerPlugin(ABC):
    """
    Abstract base class for reconcilers.

    A reconciler runs its own continuous loop, reading due records from the
    store and reporting status back through the context.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler."""
        pass

    @property
    @abstractmethod
    def kinds(self) -> List[str]:
        """Managed kind names this reconciler handles."""
        pass

    @abstractmethod
    async def start(self, ctx: ReconcilerContext) -> None:
        """
        Run the reconciliation loop until ctx.shutdown_event is set.

        Args:
            ctx: ReconcilerContext providing access to records and status.
        """
        pass

    @abstractmethod
    async def reconcile(
        self, resource: Dict[str, Any], ctx: ReconcilerContext
    ) -> ReconcileResult:
        """
        Reconcile a single record, persisting the outcome through ctx.

        Args:
            resource: The parsed managed resource row.
            ctx: ReconcilerContext for status updates and events.

        Returns:
            ReconcileResult indicating success/failure.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Graceful shutdown. Clean up any resources."""
        pass
