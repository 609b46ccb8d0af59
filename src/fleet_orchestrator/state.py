"""
Fleet State

Single owner of the shared mutable fleet state. The scheduler, lifecycle
manager, health monitor and duplex channel all receive the same FleetState
instance; external collaborators only ever see worker ids.

All mutation happens on the event loop thread and never spans an await,
so no locking is needed.
"""

from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

from .config import FleetConfig
from .events import heartbeat_payload
from .models import Telemetry, TrackedProcess, Worker


class FleetState:
    """
    Attributes:
        workers: Worker records by id, created on first touch, never deleted
        queue: Ids awaiting admission (FIFO)
        starting: Ids inside the startup sequence
        active: Ids that reached Active (or were re-added by auto-restart)
        restarting: Ids with an auto-restart in flight
        stopping: Ids with a stop in progress; not admissible until it returns
        connections: Channel connection per id
        outbound: Pending outbound frames per id, drained head-first
        processes: Launched processes tracked for health monitoring
        global_stop: Stop-all latch, observed by every lifecycle checkpoint
        auto_restart_enabled: Global auto-restart flag
    """

    def __init__(self, config: FleetConfig):
        self.config = config
        self.workers: Dict[int, Worker] = {}
        self.queue: List[int] = []
        self.starting: Set[int] = set()
        self.active: Set[int] = set()
        self.restarting: Set[int] = set()
        self.stopping: Set[int] = set()
        self.connections: Dict[int, Any] = {}
        self.outbound: Dict[int, Deque[str]] = {}
        self.processes: Dict[int, TrackedProcess] = {}
        self.global_stop = False
        self.auto_restart_enabled = config.auto_restart_enabled

    def worker(self, worker_id: int) -> Worker:
        """Get the worker record, creating it on first use."""
        worker = self.workers.get(worker_id)
        if worker is None:
            worker = Worker(
                id=worker_id,
                telemetry=Telemetry(extra_limit=self.config.telemetry_extra_limit),
            )
            self.workers[worker_id] = worker
        return worker

    def get_worker(self, worker_id: int) -> Optional[Worker]:
        return self.workers.get(worker_id)

    def is_stop_requested(self, worker_id: int) -> bool:
        if self.global_stop:
            return True
        worker = self.workers.get(worker_id)
        return bool(worker and worker.stop_requested)

    def is_tracked(self, worker_id: int) -> bool:
        """Queued, starting or active."""
        return (
            worker_id in self.starting
            or worker_id in self.active
            or worker_id in self.queue
        )

    def total_active(self) -> int:
        return len(self.active) + len(self.starting)

    def is_quota_exceeded(self) -> bool:
        return self.total_active() >= self.config.bot_quota

    def outbound_queue(self, worker_id: int) -> Deque[str]:
        return self.outbound.setdefault(worker_id, deque())

    def status_snapshot(self, worker_id: int) -> Dict[str, Any]:
        worker = self.worker(worker_id)
        return {
            "status": worker.lifecycle_state.value,
            "pipeStatus": worker.pipe_state.value,
            "lastHeartbeat": heartbeat_payload(worker.last_heartbeat_at),
            "active": worker_id in self.active,
            "starting": worker_id in self.starting,
            "isRestarting": worker_id in self.restarting,
        }

    def status_payload(self, *worker_ids: int) -> Dict[str, Any]:
        ids = worker_ids or tuple(sorted(self.workers))
        return {
            "autoRestartEnabled": self.auto_restart_enabled,
            "workerStatuses": {wid: self.status_snapshot(wid) for wid in ids},
        }

    def queue_snapshot(self) -> Dict[str, List[int]]:
        return {
            "currentlyStarting": sorted(self.starting),
            "inQueue": list(self.queue),
        }

    def quota_snapshot(self) -> Dict[str, int]:
        return {"current": self.total_active(), "total": self.config.bot_quota}

    def auto_restart_snapshot(self) -> Dict[str, Any]:
        return {
            "enabled": self.auto_restart_enabled,
            "restartingWorkers": sorted(self.restarting),
        }

    def clear_stop_flags(self) -> None:
        """Release the global latch and every per-worker stop flag."""
        self.global_stop = False
        for worker in self.workers.values():
            worker.stop_requested = False
