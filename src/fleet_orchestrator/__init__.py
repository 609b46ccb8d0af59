"""
Fleet Orchestrator Package

Orchestration core for a fleet of numbered workers: long-lived external
processes brought up through a staged startup sequence, supervised over a
duplex channel, and restarted automatically when they crash.

Components:
- config / config_loader: Fleet settings and layered YAML loading
- state: Shared fleet state passed to every component
- scheduler: Admission queue with concurrency gate and quota
- lifecycle: Staged startup, stop and relaunch of one worker
- health_monitor: Crash detection and auto-restart
- channel / protocol: Framed duplex message channel
- environment / credentials / events: External collaborators
"""

from .channel import DuplexChannel
from .config import FleetConfig
from .credentials import CredentialStore
from .environment import EnvironmentManager, LocalEnvironmentManager
from .errors import (
    AdmissionRejected,
    FleetError,
    ProtocolViolation,
    StageAborted,
    StageFailure,
)
from .events import EventSink, FanoutEventSink, MemoryEventSink, RedisEventSink
from .health_monitor import HealthMonitor
from .lifecycle import LifecycleManager
from .models import LifecycleState, PipeState, Worker
from .orchestrator import FleetOrchestrator
from .scheduler import Scheduler
from .state import FleetState

__all__ = [
    "FleetConfig",
    "FleetState",
    "FleetOrchestrator",
    "Scheduler",
    "LifecycleManager",
    "HealthMonitor",
    "DuplexChannel",
    "CredentialStore",
    "EnvironmentManager",
    "LocalEnvironmentManager",
    "EventSink",
    "MemoryEventSink",
    "RedisEventSink",
    "FanoutEventSink",
    "LifecycleState",
    "PipeState",
    "Worker",
    "FleetError",
    "AdmissionRejected",
    "StageAborted",
    "StageFailure",
    "ProtocolViolation",
]
