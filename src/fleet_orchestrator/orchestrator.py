"""
Fleet Orchestrator

Main entrypoint for the worker fleet. Wires the scheduler, lifecycle manager,
health monitor and duplex channel around one FleetState and runs them on a
single asyncio event loop.

Usage:
    fleet-orchestrator
    python run_fleet.py

Environment Variables:
    FLEET_CONFIG_DIR             Directory holding defaults.yml / config.yml (default: config)
    FLEET_CONFIG_FILE            User config file name (default: config.yml)
    REDIS_URL                    Publish events to Redis Pub/Sub when set
    LOG_LEVEL                    Logging level (default: INFO)

A .env file in the working directory is loaded before configuration.
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .channel import DuplexChannel
from .config import FleetConfig
from .config_loader import load_fleet_config
from .credentials import CredentialStore
from .environment import EnvironmentManager, LocalEnvironmentManager
from .events import EventSink, MemoryEventSink, RedisEventSink
from .health_monitor import HealthMonitor
from .lifecycle import LifecycleManager
from .logging_utils import mask_connection_string, setup_logging
from .scheduler import Scheduler
from .state import FleetState

logger = logging.getLogger(__name__)


class FleetOrchestrator:
    """
    Main orchestrator that coordinates all components.

    Handles:
    - Startup sequence (config, event sink, channel, ticks)
    - Signal handling (SIGTERM, SIGINT)
    - Fleet operations (enqueue, stop, restart, commands)
    - Graceful shutdown bounded by ``shutdown_timeout``
    """

    def __init__(
        self,
        config: Optional[FleetConfig] = None,
        environment: Optional[EnvironmentManager] = None,
        credentials: Optional[CredentialStore] = None,
        events: Optional[EventSink] = None,
    ):
        self.config = config
        self.environment = environment
        self.credentials = credentials
        self.events = events
        self.state: Optional[FleetState] = None
        self.lifecycle: Optional[LifecycleManager] = None
        self.scheduler: Optional[Scheduler] = None
        self.health_monitor: Optional[HealthMonitor] = None
        self.channel: Optional[DuplexChannel] = None
        self.shutdown_event = asyncio.Event()
        self._redis_sink: Optional[RedisEventSink] = None

    async def _connect_events(self) -> EventSink:
        if self.config.redis_url:
            logger.info(f"Connecting event sink to {mask_connection_string(self.config.redis_url)}...")
            sink = RedisEventSink(self.config.redis_url, self.config.event_channel_prefix)
            try:
                await sink.connect()
                logger.info("✅ Redis event sink connected")
                self._redis_sink = sink
                return sink
            except Exception as e:
                logger.error(f"❌ Failed to connect event sink: {e}")
                logger.warning("⚠️  Falling back to in-process event sink")
        return MemoryEventSink()

    def build(self) -> None:
        """Create fleet state and components (no tasks started)."""
        if self.config is None:
            self.config = load_fleet_config()
        if self.events is None:
            self.events = MemoryEventSink()
        if self.credentials is None:
            self.credentials = CredentialStore(self.config.credentials_file)
        if self.environment is None:
            self.environment = LocalEnvironmentManager(
                self.config.environment_root,
                terminate_timeout=self.config.shutdown_timeout,
            )

        self.state = FleetState(self.config)
        self.state.clear_stop_flags()
        self.lifecycle = LifecycleManager(self.state, self.events, self.environment, self.credentials)
        self.scheduler = Scheduler(self.state, self.events, self.lifecycle)
        self.health_monitor = HealthMonitor(self.state, self.events, self.lifecycle, self.environment)
        self.channel = DuplexChannel(self.state, self.events)

    async def startup(self, install_signal_handlers: bool = True):
        """
        Startup sequence.

        1. Load configuration
        2. Connect the event sink
        3. Build fleet state and components
        4. Start the duplex channel
        5. Start the scheduler and health monitor
        6. Setup signal handlers
        """
        logger.info("🚀 Starting Fleet Orchestrator...")

        # 1. Load configuration
        if self.config is None:
            logger.info("Loading configuration...")
            self.config = load_fleet_config()
        logger.info(f"Max concurrent starts: {self.config.max_concurrent_starts}")
        logger.info(f"Worker quota: {self.config.bot_quota}")
        logger.info(f"Channel address: {self.config.channel_address}")
        logger.info(f"Auto-restart: {'enabled' if self.config.auto_restart_enabled else 'disabled'}")

        # 2. Connect the event sink
        if self.events is None:
            self.events = await self._connect_events()

        # 3. Build fleet state and components
        self.build()
        logger.info(f"Loaded {self.credentials.count()} credentials")

        # 4. Start the duplex channel
        await self.channel.start()

        # 5. Start the scheduler and health monitor
        await self.scheduler.start()
        await self.health_monitor.start()
        logger.info("✅ Scheduler and health monitor started")

        # 6. Setup signal handlers
        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(
                    sig, lambda s=sig: asyncio.create_task(self._signal_handler(s))
                )
            logger.info("✅ Signal handlers configured (SIGTERM, SIGINT)")

        logger.info("⏳ Fleet ready - waiting for start requests")

    async def _signal_handler(self, sig: signal.Signals):
        """Handle shutdown signals"""
        logger.info(f"Received signal: {sig.name}")
        self.shutdown_event.set()

    # -- fleet operations --------------------------------------------------

    def enqueue(self, worker_id: int) -> bool:
        return self.scheduler.enqueue(worker_id)

    async def stop(self, worker_id: int) -> bool:
        return await self.lifecycle.stop(worker_id)

    def restart(self, worker_id: int) -> bool:
        return self.scheduler.restart(worker_id)

    async def stop_all(self) -> bool:
        return await self.lifecycle.stop_all()

    def send_command(self, worker_id: int, command: str) -> bool:
        return self.channel.send_command(worker_id, command)

    def send_command_to_all(self, command: str) -> Dict[str, Any]:
        return self.channel.send_command_to_all(command)

    def set_auto_restart(self, enabled: bool) -> bool:
        return self.health_monitor.set_auto_restart(enabled)

    def status(self) -> Dict[str, Any]:
        """Snapshot of the whole fleet."""
        return {
            **self.state.status_payload(),
            "queue": self.state.queue_snapshot(),
            "quota": self.state.quota_snapshot(),
            "autoRestart": self.state.auto_restart_snapshot(),
            "health": self.health_monitor.get_health_status(),
        }

    # -- shutdown ----------------------------------------------------------

    async def shutdown(self):
        """
        Graceful shutdown sequence.

        1. Stop the scheduler and health monitor ticks
        2. Stop the duplex channel
        3. Stop all workers (bounded by shutdown_timeout)
        4. Close the event sink
        """
        logger.info("🛑 Initiating graceful shutdown...")

        # 1. Stop ticks
        if self.scheduler:
            await self.scheduler.stop()
        if self.health_monitor:
            await self.health_monitor.stop()

        # 2. Stop the duplex channel
        if self.channel:
            await self.channel.stop()

        # 3. Stop all workers
        if self.lifecycle:
            logger.info("Stopping all workers...")
            try:
                await asyncio.wait_for(
                    self.lifecycle.stop_all(), timeout=self.config.shutdown_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"⚠️  Stop-all did not finish within {self.config.shutdown_timeout}s, "
                    f"continuing shutdown"
                )
                self.state.global_stop = False
            await self.lifecycle.close()

        # 4. Close the event sink
        if self._redis_sink:
            logger.info("Closing Redis event sink...")
            await self._redis_sink.close()

        logger.info("✅ Fleet stopped")

    async def run(self):
        """Main run loop - wait for shutdown signal"""
        try:
            await self.startup()
            await self.shutdown_event.wait()

        except Exception as e:
            logger.exception(f"❌ Orchestrator error: {e}")
            raise
        finally:
            await self.shutdown()


async def run_orchestrator():
    """Run one orchestrator until it receives a shutdown signal"""
    orchestrator = FleetOrchestrator()
    await orchestrator.run()


def main():
    """Console entrypoint"""
    load_dotenv()
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    try:
        asyncio.run(run_orchestrator())
        sys.exit(0)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)

    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)
