"""
Main entry point for the permission operator.

Connects to the store, builds the kind registry and runs one reconciler per
managed kind until interrupted.
"""

import asyncio
import logging
import signal
from typing import List, Optional

import click

from config import Config, get_config
from controller import Controller
from db import DatabaseManager
from events import EventBus, log_events
from plugins.registry import PluginRegistry, build_registry

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


class Application:
    """Main application that wires the store, registry and controller."""

    def __init__(
        self,
        config: Optional[Config] = None,
        registry: Optional[PluginRegistry] = None,
    ):
        self.config = config or get_config()
        self.registry = registry
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self._tasks: List[asyncio.Task] = []
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing permission operator")

        if self.registry is None:
            self.registry = build_registry()

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        self.event_bus = EventBus()

        self.controller = Controller(
            db_manager=self.db,
            registry=self.registry,
            config=self.config.controller,
            event_bus=self.event_bus,
            request_timeout=self.config.upbound.request_timeout,
        )

        logger.info(
            f"Managing kinds: {', '.join(self.registry.list_managed_kinds())}"
        )

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        self._tasks = [
            asyncio.create_task(log_events(self.event_bus)),
            asyncio.create_task(self.controller.start()),
        ]

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping permission operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        for task in self._tasks:
            if not task.done():
                task.cancel()

        if self.db:
            await self.db.close()

        logger.info("Permission operator stopped")


async def serve(app: Application):
    """Run the application until SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()


@click.group()
def cli():
    """Permission operator - reconciles Upbound repository permissions."""
    pass


@cli.command()
@click.option(
    "--debug", "-d", is_flag=True, envvar="DEBUG", help="Run with debug logging."
)
@click.option(
    "--poll",
    type=int,
    envvar="POLL_INTERVAL",
    help="How often, in seconds, to check each resource for drift.",
)
@click.option(
    "--max-reconcile-rate",
    type=int,
    envvar="MAX_CONCURRENT_RECONCILES",
    help="The number of concurrent reconciles per kind.",
)
@click.option(
    "--reconcile-timeout",
    type=float,
    envvar="RECONCILE_TIMEOUT",
    help="Seconds a single reconcile may take before it is abandoned.",
)
def run(debug, poll, max_reconcile_rate, reconcile_timeout):
    """Run the operator until interrupted."""
    config = get_config()
    if debug:
        config.logging.debug = True
    if poll is not None:
        config.controller.poll_interval = poll
    if max_reconcile_rate is not None:
        config.controller.max_concurrent_reconciles = max_reconcile_rate
    if reconcile_timeout is not None:
        config.controller.reconcile_timeout = reconcile_timeout

    logging.basicConfig(level=config.logging.effective_level, format=LOG_FORMAT)

    try:
        asyncio.run(serve(Application(config)))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


def main():
    cli()


if __name__ == "__main__":
    main()
