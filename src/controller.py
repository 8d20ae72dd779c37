"""
Operator Controller - runs one reconciler per managed kind.

Similar to a Kubernetes controller manager: every registered kind gets its
own polling loop, and all loops share the store, the event bus and the
shutdown signal.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from config import ControllerConfig
from db import DatabaseManager
from events import EventBus
from plugins.reconcilers.base import BackoffPolicy, ReconcilerContext
from plugins.reconcilers.managed import ManagedReconciler
from plugins.registry import PluginRegistry
from providerconfig import DEFAULT_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)


class Controller:
    """
    Starts and stops a ManagedReconciler for every kind in the registry.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: PluginRegistry,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.db = db_manager
        self.registry = registry
        self.config = config or ControllerConfig()
        self.request_timeout = request_timeout
        self.running = False
        self._event_bus = event_bus

        self._shutdown_event = asyncio.Event()
        self._reconcilers: Dict[str, ManagedReconciler] = {}
        self._reconciler_tasks: List[asyncio.Task] = []

    def build_reconcilers(self) -> Dict[str, ManagedReconciler]:
        """Create one reconciler per registered kind."""
        self._reconcilers = {
            kind: ManagedReconciler(
                self.registry.get_managed_kind(kind),
                poll_interval=self.config.poll_interval,
                max_concurrent_reconciles=self.config.max_concurrent_reconciles,
                reconcile_timeout=self.config.reconcile_timeout,
                request_timeout=self.request_timeout,
            )
            for kind in self.registry.list_managed_kinds()
        }
        return self._reconcilers

    def context(self) -> ReconcilerContext:
        return ReconcilerContext(
            db=self.db,
            shutdown_event=self._shutdown_event,
            event_bus=self._event_bus,
            backoff=BackoffPolicy(
                base_delay=self.config.backoff_base_delay,
                max_delay=self.config.backoff_max_delay,
                jitter_factor=self.config.backoff_jitter_factor,
            ),
        )

    async def start(self):
        """Start every reconciler loop and wait for them to finish."""
        logger.info("Starting Operator Controller")
        self.running = True
        self._shutdown_event.clear()

        ctx = self.context()
        for reconciler in self.build_reconcilers().values():
            task = asyncio.create_task(self._run_reconciler(reconciler, ctx))
            self._reconciler_tasks.append(task)
            logger.info(f"Started reconciler: {reconciler.name}")

        await asyncio.gather(*self._reconciler_tasks)

    async def stop(self):
        """Stop the controller and all reconcilers gracefully."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self._shutdown_event.set()

        for reconciler in self._reconcilers.values():
            try:
                await reconciler.stop()
            except Exception as e:
                logger.error(f"Error stopping reconciler '{reconciler.name}': {e}")

        # Cancel any remaining reconciler tasks
        for task in self._reconciler_tasks:
            if not task.done():
                task.cancel()
        self._reconciler_tasks.clear()

    async def _run_reconciler(
        self, reconciler: ManagedReconciler, ctx: ReconcilerContext
    ) -> None:
        """Run a reconciler loop, logging a crash instead of propagating it."""
        try:
            await reconciler.start(ctx)
        except Exception as e:
            logger.error(
                f"Reconciler '{reconciler.name}' crashed: {e}",
                exc_info=True,
            )
