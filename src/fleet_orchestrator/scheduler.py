"""
Scheduler

Holds the pending-worker queue and admits queued workers into the lifecycle
one at a time, gated by the concurrency limit and the fleet quota.
"""

import asyncio
import logging
from typing import Optional, Set

from .errors import AdmissionRejected
from .events import ADMISSION_REJECTED, QUEUE_UPDATE, STATUS_UPDATE, EventSink, log_event
from .lifecycle import LifecycleManager
from .models import LifecycleState
from .state import FleetState

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Admission control for worker startups.

    A tick admits at most one worker. Auto-restarts in flight take priority:
    no new admission happens while any worker is restarting.
    """

    def __init__(self, state: FleetState, events: EventSink, lifecycle: LifecycleManager):
        self.state = state
        self.events = events
        self.lifecycle = lifecycle
        self.running = False
        self.schedule_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def config(self):
        return self.state.config

    async def start(self):
        """Start the admission loop"""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.running = True
        logger.info(
            f"Starting scheduler (interval: {self.config.scheduler_interval}s, "
            f"max concurrent starts: {self.config.max_concurrent_starts}, "
            f"quota: {self.config.bot_quota})"
        )
        self.schedule_task = asyncio.create_task(self._schedule_loop())

    async def stop(self):
        """Stop the admission loop and pending manual restarts"""
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.running = False

        tasks = [t for t in [self.schedule_task, *self._pending] if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Scheduler stopped")

    async def _schedule_loop(self):
        try:
            while self.running:
                try:
                    self.tick()
                except Exception as e:
                    logger.error(f"Error during admission tick: {e}", exc_info=True)
                await asyncio.sleep(self.config.scheduler_interval)
        except asyncio.CancelledError:
            logger.info("Scheduler loop cancelled")
            raise

    def check_admission(self, worker_id: int) -> None:
        """
        Raises:
            AdmissionRejected: the id is already tracked or the quota is full
        """
        if worker_id in self.state.active:
            raise AdmissionRejected(
                worker_id, AdmissionRejected.DUPLICATE, f"Worker {worker_id} is already active"
            )
        if self.state.is_tracked(worker_id):
            raise AdmissionRejected(
                worker_id,
                AdmissionRejected.DUPLICATE,
                f"Worker {worker_id} already queued or starting",
            )
        if worker_id in self.state.stopping or self.lifecycle.has_live_attempt(worker_id):
            raise AdmissionRejected(
                worker_id,
                AdmissionRejected.DUPLICATE,
                f"Worker {worker_id} is still being stopped",
            )
        if self.state.is_quota_exceeded():
            raise AdmissionRejected(
                worker_id,
                AdmissionRejected.QUOTA_EXCEEDED,
                f"Worker quota ({self.config.bot_quota}) exceeded, cannot queue worker {worker_id}",
            )

    def enqueue(self, worker_id: int) -> bool:
        """
        Queue a worker for startup.

        Returns:
            False (with no state change) if the worker was rejected
        """
        if not isinstance(worker_id, int) or isinstance(worker_id, bool) or worker_id <= 0:
            raise ValueError(f"Worker id must be a positive integer, got {worker_id!r}")

        try:
            self.check_admission(worker_id)
        except AdmissionRejected as e:
            logger.info(str(e))
            self.events.publish(
                ADMISSION_REJECTED,
                {"workerId": worker_id, "reason": e.reason, "message": str(e)},
            )
            return False

        worker = self.state.worker(worker_id)
        worker.reset()
        self.state.queue.append(worker_id)
        worker.lifecycle_state = LifecycleState.QUEUED

        log_event(self.events, f"Queued worker {worker_id} for startup", log=logger)
        self.events.publish(QUEUE_UPDATE, self.state.queue_snapshot())
        self.events.publish(STATUS_UPDATE, self.state.status_payload(worker_id))
        return True

    def tick(self) -> Optional[int]:
        """
        Admit at most one queued worker.

        Returns:
            The admitted worker id, or None
        """
        if not self.state.queue:
            return None

        if self.state.global_stop:
            logger.info("Queue processing temporarily paused due to global stop flag")
            return None

        if self.state.restarting:
            logger.debug(
                f"Auto-restart in progress for {len(self.state.restarting)} worker(s), pausing queue processing"
            )
            return None

        if len(self.state.starting) >= self.config.max_concurrent_starts:
            logger.debug(f"Already starting {len(self.state.starting)} workers, waiting...")
            return None

        if self.state.is_quota_exceeded():
            log_event(
                self.events,
                f"Worker quota ({self.config.bot_quota}) exceeded, cannot start more workers",
                logging.WARNING,
                log=logger,
            )
            return None

        next_id = None
        skipped = []
        for worker_id in self.state.queue:
            if self.state.worker(worker_id).stop_requested:
                skipped.append(worker_id)
            else:
                next_id = worker_id
                break

        for worker_id in skipped:
            self.state.queue.remove(worker_id)
            worker = self.state.worker(worker_id)
            worker.stop_requested = False
            worker.lifecycle_state = LifecycleState.STOPPED
            log_event(
                self.events,
                f"Dropping worker {worker_id} from queue due to active stop flag",
                log=logger,
            )
            self.events.publish(STATUS_UPDATE, self.state.status_payload(worker_id))

        if next_id is None:
            logger.info("No workers in queue eligible to start (all have stop flags)")
            self.events.publish(QUEUE_UPDATE, self.state.queue_snapshot())
            return None

        self.state.queue.remove(next_id)
        self.lifecycle.spawn(next_id)
        self.events.publish(QUEUE_UPDATE, self.state.queue_snapshot())
        return next_id

    def restart(self, worker_id: int) -> bool:
        """
        Manual restart: stop, wait, then re-enter the admission queue.

        Rejected unless the worker is active and not already restarting.
        """
        log_event(self.events, f"Manual restart requested for worker {worker_id}", log=logger)

        if worker_id not in self.state.active:
            log_event(
                self.events,
                f"Cannot restart worker {worker_id}, it's not active",
                logging.WARNING,
                log=logger,
            )
            return False

        if worker_id in self.state.restarting:
            log_event(
                self.events,
                f"Worker {worker_id} is already being restarted",
                logging.WARNING,
                log=logger,
            )
            return False

        task = asyncio.get_running_loop().create_task(self._stop_and_requeue(worker_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _stop_and_requeue(self, worker_id: int) -> None:
        try:
            await self.lifecycle.stop(worker_id)
            await asyncio.sleep(self.config.manual_restart_delay)
            self.enqueue(worker_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Manual restart of worker {worker_id} failed: {e}", exc_info=True)
