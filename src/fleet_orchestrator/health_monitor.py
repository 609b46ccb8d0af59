"""
Health Monitor

Self-healing monitor that detects crashed or silently disconnected workers
and drives a throttled auto-restart through the lifecycle manager.
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Set

from .config_loader import save_config_section
from .environment import EnvironmentManager
from .events import AUTO_RESTART_STATE, STATUS_UPDATE, EventSink, log_event
from .lifecycle import LifecycleManager
from .models import STARTUP_PHASES, LifecycleState, TrackedProcess
from .state import FleetState

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Auto-restart loop for tracked worker processes.

    Every tick (while auto-restart is enabled) each tracked worker is checked.
    A worker is skipped if it is already restarting or being stopped, is inside
    a startup or injection phase, or was launched less than the grace period ago.
    Otherwise, first match wins:
    1. lifecycle state is Crashed
    2. active, has a heartbeat, channel disconnected and the heartbeat is stale
    3. the process has exited while the state is Crashed
    """

    def __init__(
        self,
        state: FleetState,
        events: EventSink,
        lifecycle: LifecycleManager,
        environment: EnvironmentManager,
    ):
        self.state = state
        self.events = events
        self.lifecycle = lifecycle
        self.environment = environment
        self.running = False
        self.monitor_task: Optional[asyncio.Task] = None
        self.start_time = time.time()
        self.restart_tasks: Dict[int, asyncio.Task] = {}
        self._terminations: Set[asyncio.Task] = set()

    @property
    def config(self):
        return self.state.config

    async def start(self):
        """Start the health monitoring loop"""
        if self.running:
            logger.warning("Health monitor already running")
            return

        self.running = True
        self.start_time = time.time()
        logger.info(
            f"Starting health monitor (check interval: {self.config.monitor_interval}s, "
            f"grace period: {self.config.restart_grace_period}s, "
            f"auto-restart: {'enabled' if self.state.auto_restart_enabled else 'disabled'})"
        )

        self.monitor_task = asyncio.create_task(self._monitor_loop())

    async def stop(self):
        """Stop the health monitoring loop and any scheduled restarts"""
        if not self.running:
            return

        logger.info("Stopping health monitor...")
        self.running = False

        tasks = [self.monitor_task, *self.restart_tasks.values(), *self._terminations]
        tasks = [t for t in tasks if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Health monitor stopped")

    async def _monitor_loop(self):
        """Main monitoring loop"""
        try:
            while self.running:
                if self.state.auto_restart_enabled:
                    await self._check_health()

                await asyncio.sleep(self.config.monitor_interval)

        except asyncio.CancelledError:
            logger.info("Health monitor loop cancelled")
            raise
        except Exception as e:
            logger.error(f"Health monitor loop error: {e}", exc_info=True)
            self.running = False
            raise

    async def _check_health(self):
        """Check every tracked worker and trigger restarts where needed"""
        if self.state.restarting:
            log_event(
                self.events,
                f"Worker start queue paused - auto-restart in progress for "
                f"{len(self.state.restarting)} worker(s)",
                log=logger,
            )

        for worker_id, tracked in list(self.state.processes.items()):
            try:
                reason = self.evaluate(worker_id, tracked)
                if reason:
                    self.handle_failure(worker_id, reason)
            except Exception as e:
                logger.error(f"Worker {worker_id}: health check raised exception: {e}", exc_info=True)

    def evaluate(self, worker_id: int, tracked: TrackedProcess) -> Optional[str]:
        """
        Decide whether a tracked worker needs an auto-restart.

        Returns:
            The trigger reason, or None
        """
        if worker_id in self.state.restarting or worker_id in self.state.stopping:
            return None

        worker = self.state.worker(worker_id)
        status = worker.lifecycle_state

        if status in STARTUP_PHASES:
            logger.debug(f"Skipping auto-restart check for worker {worker_id} - in startup phase: {status.value}")
            return None

        now = time.time()
        since_launch = now - tracked.launched_at
        if since_launch < self.config.restart_grace_period:
            logger.debug(
                f"Skipping auto-restart check for worker {worker_id} - "
                f"recently started ({int(since_launch)} seconds ago)"
            )
            return None

        if status is LifecycleState.CRASHED:
            return "crashed status"

        if (
            worker_id in self.state.active
            and worker.last_heartbeat_at is not None
            and not worker.pipe_state.is_connected
        ):
            heartbeat_age = now - worker.last_heartbeat_at
            if heartbeat_age > self.config.heartbeat_stale_after:
                return f"disconnected from channel for {int(heartbeat_age)} seconds"

        exit_status = tracked.handle.exit_status()
        if exit_status is not None:
            logger.warning(f"Worker {worker_id} process has exited with code {exit_status}")
            if status is LifecycleState.CRASHED:
                return f"process exited with code {exit_status}"
            logger.info(
                f"Worker {worker_id} process exited, but not handling as auto-restart "
                f"since status is {status.value}"
            )

        return None

    def handle_failure(self, worker_id: int, reason: str) -> bool:
        """
        Mark a worker crashed and schedule its restart after the cool-down.

        Returns:
            True if a restart was scheduled
        """
        if not self.state.auto_restart_enabled:
            return False

        if worker_id in self.state.restarting or worker_id in self.state.stopping:
            return False

        worker = self.state.worker(worker_id)
        if worker.lifecycle_state in STARTUP_PHASES:
            logger.info(
                f"Not triggering auto-restart for worker {worker_id} - in startup phase: "
                f"{worker.lifecycle_state.value}"
            )
            return False

        log_event(
            self.events,
            f"Auto-restart triggered for worker {worker_id} ({reason})",
            logging.WARNING,
            log=logger,
        )

        self.state.restarting.add(worker_id)
        worker.lifecycle_state = LifecycleState.CRASHED
        worker.restart_count += 1
        self.lifecycle.untrack_process(worker_id)

        termination = asyncio.get_running_loop().create_task(self._terminate(worker_id))
        self._terminations.add(termination)
        termination.add_done_callback(self._terminations.discard)

        self.events.publish(STATUS_UPDATE, self.state.status_payload(worker_id))
        self.publish_auto_restart_state()

        self.restart_tasks[worker_id] = asyncio.get_running_loop().create_task(
            self._restart_after_cooldown(worker_id)
        )
        return True

    async def _terminate(self, worker_id: int) -> None:
        try:
            if not await self.environment.terminate_all(worker_id):
                logger.warning(f"Worker {worker_id}: partial termination before restart")
        except Exception as e:
            logger.error(f"Worker {worker_id}: error terminating environment: {e}")

    async def _restart_after_cooldown(self, worker_id: int) -> None:
        try:
            await asyncio.sleep(self.config.restart_cooldown)

            if not self.state.auto_restart_enabled or worker_id not in self.state.restarting:
                logger.info(f"Auto-restart for worker {worker_id} cancelled")
                return

            log_event(self.events, f"Restarting worker {worker_id} after crash", log=logger)
            if await self.lifecycle.relaunch(worker_id):
                log_event(self.events, f"Auto-restart complete for worker {worker_id}", log=logger)
            else:
                log_event(
                    self.events, f"Auto-restart failed for worker {worker_id}", logging.ERROR, log=logger
                )

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error during restart for worker {worker_id}: {e}", exc_info=True)
            log_event(self.events, f"Auto-restart failed for worker {worker_id}: {e}", logging.ERROR, log=logger)

        finally:
            self.state.restarting.discard(worker_id)
            if self.restart_tasks.get(worker_id) is asyncio.current_task():
                del self.restart_tasks[worker_id]
            self.publish_auto_restart_state()

    def publish_auto_restart_state(self) -> None:
        self.events.publish(AUTO_RESTART_STATE, self.state.auto_restart_snapshot())

    def set_auto_restart(self, enabled: bool) -> bool:
        """
        Toggle auto-restart and persist the flag.

        Disabling clears the restarting set immediately; restarts already
        scheduled see the flag off when they fire and do nothing.

        Returns:
            True if the new value was persisted
        """
        self.state.auto_restart_enabled = enabled
        self.state.config.auto_restart_enabled = enabled
        log_event(
            self.events, f"Auto-restart {'enabled' if enabled else 'disabled'}", log=logger
        )

        if not enabled:
            for worker_id in sorted(self.state.restarting):
                logger.info(f"Cancelling restart for worker {worker_id}")
            self.state.restarting.clear()

        saved = save_config_section("fleet", {"auto_restart_enabled": enabled})
        if not saved:
            logger.warning("Auto-restart setting could not be persisted")

        self.publish_auto_restart_state()
        self.events.publish(STATUS_UPDATE, self.state.status_payload())
        return saved

    def get_health_status(self) -> dict:
        """
        Get current health status summary.

        Returns:
            Dictionary with health status information
        """
        state_counts: Dict[str, int] = {}
        for worker in self.state.workers.values():
            name = worker.lifecycle_state.value
            state_counts[name] = state_counts.get(name, 0) + 1

        return {
            "running": self.running,
            "uptime": time.time() - self.start_time if self.running else 0,
            "auto_restart_enabled": self.state.auto_restart_enabled,
            "tracked_processes": len(self.state.processes),
            "restarting": sorted(self.state.restarting),
            "restart_counts": {
                wid: w.restart_count for wid, w in self.state.workers.items() if w.restart_count
            },
            "state_counts": state_counts,
        }
