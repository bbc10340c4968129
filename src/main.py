"""
Main entry point for the capa operator.

Wires the object store, session factory, codec and reconcilers into a
controller and runs it until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Optional

from codec import new_codec
from config import Config, get_config
from controller import Controller
from db import DatabaseManager
from events import EventRecorder
from reconciler import GuestClusterReconciler, MachineSetReconciler
from session import SessionFactory

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


class Application:
    """Main application that orchestrates the store and the controller."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing capa operator")

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

        ctrl_config = self.config.controller
        recorder = EventRecorder(ctrl_config.controller_name)

        machine_sets = MachineSetReconciler(
            self.db, codec=new_codec(), recorder=recorder
        )
        guest_clusters = GuestClusterReconciler(
            self.db,
            session_factory=SessionFactory(store=self.db),
            recorder=recorder,
            controller_name=ctrl_config.controller_name,
            endpoints=self.config.aws.endpoints,
        )

        self.controller = Controller(
            self.db,
            reconcilers={r.kind: r for r in (machine_sets, guest_clusters)},
            config=ctrl_config,
        )

        if ctrl_config.watch_namespace:
            logger.info(f"Watching namespace {ctrl_config.watch_namespace}")
        else:
            logger.info("Watching all namespaces")
        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        self.running = True
        if not self.controller:
            await self.initialize()

        logger.info("Starting capa operator")

        try:
            await self.controller.start()
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping capa operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.db:
            await self.db.close()

        logger.info("capa operator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config.log_level)
    app = Application(config)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
