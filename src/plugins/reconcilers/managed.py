"""
Managed Reconciler - drives one managed kind from the resource store.

Each cycle connects to the provider with freshly resolved credentials, then
either finalizes a deleted record or observes the external object and
creates or updates it as needed. Every outcome is persisted: conditions,
external name, history, events, and when to look at the record again.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Set

from db import ResourceStatus
from events import EventReason, EventType
from managedresource import (
    FINALIZER,
    DeletionPolicy,
    IdentityState,
    ManagedResource,
    creating,
    deleting,
    identity_state,
    reconcile_error,
    reconcile_success,
)
from plugins.managed.base import Connector, ManagedKind
from plugins.reconcilers.base import (
    ReconcilerContext,
    ReconcilerPlugin,
    ReconcileResult,
)
from providerconfig import DEFAULT_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

FAILURE_REASONS = {
    "connect": EventReason.CANNOT_CONNECT,
    "observe": EventReason.CANNOT_OBSERVE,
    "create": EventReason.CANNOT_CREATE,
    "update": EventReason.CANNOT_UPDATE,
    "delete": EventReason.CANNOT_DELETE,
}


@dataclass
class _Cycle:
    """Progress of one reconcile of one record."""

    record: ManagedResource
    operation: str = "connect"
    purged: bool = False


class ManagedReconciler(ReconcilerPlugin):
    """
    Reconciler for a single managed kind.

    Polls for due records of its kind and reconciles them concurrently, at
    most max_concurrent_reconciles at a time and never the same record twice
    at once.
    """

    def __init__(
        self,
        managed_kind: ManagedKind,
        poll_interval: int = 60,
        max_concurrent_reconciles: int = 5,
        reconcile_timeout: float = 120.0,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.managed_kind = managed_kind
        self.poll_interval = poll_interval
        self.max_concurrent_reconciles = max_concurrent_reconciles
        self.reconcile_timeout = reconcile_timeout
        self.request_timeout = request_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent_reconciles)
        self._in_flight: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def name(self) -> str:
        return f"managed-{self.managed_kind.kind.lower()}"

    @property
    def kinds(self) -> List[str]:
        return [self.managed_kind.kind]

    def in_flight(self) -> Set[int]:
        return set(self._in_flight)

    async def start(self, ctx: ReconcilerContext) -> None:
        """Poll for due records until shutdown."""
        self._running = True
        logger.info(
            f"Starting {self.name} (poll every {self.poll_interval}s, "
            f"{self.max_concurrent_reconciles} concurrent)"
        )

        while self._running and not ctx.shutdown_event.is_set():
            try:
                await self.poll(ctx)
            except Exception as e:
                logger.error(f"Error in {self.name} loop: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    ctx.shutdown_event.wait(), timeout=self.poll_interval
                )
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        """Stop polling and cancel reconciles still running."""
        self._running = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Stopped {self.name}")

    async def poll(self, ctx: ReconcilerContext) -> List[asyncio.Task]:
        """
        Start a reconcile for every due record not already in flight.

        Returns:
            The tasks started by this poll.
        """
        resources = await ctx.get_resources_needing_reconciliation(
            self.kinds, limit=self.max_concurrent_reconciles * 2
        )
        due = [r for r in resources if r["id"] not in self._in_flight]
        if not due:
            return []

        logger.info(
            f"Found {len(due)} {self.managed_kind.kind} resources needing "
            f"reconciliation"
        )

        started = []
        for resource in due:
            self._in_flight.add(resource["id"])
            task = asyncio.create_task(self._run(resource, ctx))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        return started

    async def _run(self, resource: Dict[str, Any], ctx: ReconcilerContext) -> None:
        try:
            async with self._semaphore:
                await self.reconcile(resource, ctx)
        except Exception as e:
            # Only persistence failures get here; the record stays due.
            logger.error(
                f"Could not record reconcile of {resource.get('name')}: {e}",
                exc_info=True,
            )
        finally:
            self._in_flight.discard(resource["id"])

    async def reconcile(
        self, resource: Dict[str, Any], ctx: ReconcilerContext
    ) -> ReconcileResult:
        """
        Reconcile one record, bounded by reconcile_timeout.

        Errors from the provider become a failed result with a retry
        scheduled. Cancellation propagates.
        """
        start_time = time.monotonic()

        try:
            cycle = _Cycle(record=ManagedResource.from_dict(resource))
        except (KeyError, TypeError, ValueError) as e:
            # Placeholder for a row that cannot be parsed
            cycle = _Cycle(
                record=ManagedResource(
                    id=resource["id"],
                    name=resource.get("name") or "",
                    kind=resource.get("kind") or self.managed_kind.kind,
                    external_name=resource.get("external_name"),
                )
            )
            result = await self._fail(
                cycle, ctx, f"cannot read stored resource: {e}"
            )
        else:
            try:
                result = await asyncio.wait_for(
                    self._sync(cycle, ctx), timeout=self.reconcile_timeout
                )
            except asyncio.TimeoutError:
                result = await self._fail(
                    cycle,
                    ctx,
                    f"cannot {cycle.operation}: timed out after "
                    f"{self.reconcile_timeout}s",
                )
            except Exception as e:
                result = await self._fail(cycle, ctx, str(e))

        if not cycle.purged:
            await ctx.record_reconciliation(
                cycle.record.id,
                cycle.operation,
                result,
                duration_seconds=time.monotonic() - start_time,
            )
        return result

    def _connector(self, ctx: ReconcilerContext) -> Connector:
        return self.managed_kind.connector(ctx.db, self.request_timeout)

    async def _sync(self, cycle: _Cycle, ctx: ReconcilerContext) -> ReconcileResult:
        record = cycle.record

        cycle.operation = "connect"
        external = await self._connector(ctx).connect(record)

        if record.deleted:
            return await self._finalize(cycle, external, ctx)

        cycle.operation = "observe"
        observation = await external.observe(record)
        state = identity_state(record, observation.resource_exists)

        if state is not IdentityState.BOUND:
            if state is IdentityState.ABSENT_REMOTELY:
                await ctx.emit_event(
                    EventType.WARNING,
                    record,
                    EventReason.EXTERNAL_RESOURCE_MISSING,
                    f"External resource {record.external_name} no longer "
                    f"exists and will be re-created",
                )

            cycle.operation = "create"
            record.set_conditions(creating())
            await ctx.save_conditions(record)
            await external.create(record)

            record.set_conditions(reconcile_success())
            await ctx.save_status(
                record,
                ResourceStatus.PENDING,
                message="Created external resource",
                requeue_after=0,
            )
            await ctx.emit_event(
                EventType.NORMAL,
                record,
                EventReason.CREATED_EXTERNAL_RESOURCE,
                f"Created external resource {record.external_name}",
            )
            logger.info(f"Created external resource for {record.name}")
            return ReconcileResult(
                success=True, message="Created external resource", requeue_after=0
            )

        message = "External resource is up to date"
        if not observation.resource_up_to_date:
            cycle.operation = "update"
            await external.update(record)
            message = "Updated external resource"
            await ctx.emit_event(
                EventType.NORMAL,
                record,
                EventReason.UPDATED_EXTERNAL_RESOURCE,
                message,
            )
            logger.info(f"Updated external resource for {record.name}")

        record.set_conditions(reconcile_success())
        await ctx.save_status(
            record,
            ResourceStatus.READY,
            message=message,
            requeue_after=self.poll_interval,
        )
        return ReconcileResult(
            success=True, message=message, requeue_after=self.poll_interval
        )

    async def _finalize(
        self, cycle: _Cycle, external: Any, ctx: ReconcilerContext
    ) -> ReconcileResult:
        """Delete the external object of a deleted record, then purge it."""
        record = cycle.record
        record.set_conditions(deleting())

        if record.deletion_policy == DeletionPolicy.ORPHAN:
            cycle.operation = "orphan"
            logger.info(
                f"Orphaning external resource of {record.name} "
                f"(deletion policy {record.deletion_policy.value})"
            )
        else:
            cycle.operation = "observe"
            observation = await external.observe(record)
            # observe marks an existing object available; it is going away
            record.set_conditions(deleting())
            cycle.operation = "delete"
            if observation.resource_exists:
                await ctx.save_conditions(record)
                await external.delete(record)
                await ctx.emit_event(
                    EventType.NORMAL,
                    record,
                    EventReason.DELETED_EXTERNAL_RESOURCE,
                    f"Deleted external resource {record.external_name}",
                )

        await ctx.remove_finalizer(record.id, FINALIZER)
        remaining = await ctx.get_finalizers(record.id)
        if remaining:
            logger.info(
                f"Finalizer removed for {record.name}, waiting on: {remaining}"
            )
            record.set_conditions(reconcile_success())
            await ctx.save_status(
                record,
                ResourceStatus.DELETING,
                message=f"Waiting on finalizers: {', '.join(remaining)}",
                requeue_after=self.poll_interval,
            )
            return ReconcileResult(
                success=True,
                message="Waiting on finalizers",
                requeue_after=self.poll_interval,
            )

        cycle.purged = await ctx.hard_delete_resource(record.id)
        logger.info(f"Finalized and deleted {record.kind} {record.name}")
        return ReconcileResult(success=True, message="Deleted")

    async def _fail(
        self, cycle: _Cycle, ctx: ReconcilerContext, message: str
    ) -> ReconcileResult:
        """Record a failed cycle: Synced=False, a Warning event, and a retry."""
        record = cycle.record
        logger.error(f"Failed to reconcile {record.kind} {record.name}: {message}")

        record.set_conditions(reconcile_error(message))
        await ctx.record_failure(record, message)
        await ctx.emit_event(
            EventType.WARNING,
            record,
            FAILURE_REASONS.get(cycle.operation, EventReason.CANNOT_DELETE),
            message,
        )
        return ReconcileResult(success=False, message=message)
