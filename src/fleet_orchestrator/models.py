"""
Data structures for fleet workers.

A Worker record is created the first time an id is enqueued or connects,
and is reset in place on stop/restart rather than deleted.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol


class LifecycleState(Enum):
    """Worker lifecycle states, in startup order"""

    NOT_STARTED = "Not Started"
    QUEUED = "Queued"
    INITIALIZING = "Initializing"
    SETTING_UP_ENVIRONMENT = "Setting up Environment"
    LOADING_BYPASS_AGENT = "Loading Bypass Agent"
    LOADED_BYPASS_AGENT = "Bypass Agent Loaded"
    PRE_LAUNCH_DELAY = "Waiting to Launch"
    LAUNCHING = "Launching"
    AWAITING_PROCESS_READY = "Awaiting Process"
    PRE_INJECT_DELAY = "Waiting to Inject Preload"
    INJECTING_PRELOAD = "Injecting Preload"
    PRE_PAYLOAD_DELAY = "Waiting to Inject Payload"
    INJECTING_PAYLOAD = "Injecting Payload"
    ACTIVE = "Active"

    # Channel-driven
    CONNECTED = "Connected"
    RUNNING = "Running"

    # Terminal
    STOPPED = "Stopped"
    CRASHED = "Crashed"
    ENVIRONMENT_ERROR = "Environment Error"
    BYPASS_AGENT_ERROR = "Bypass Agent Error"
    LAUNCH_ERROR = "Launch Error"
    INJECTION_ERROR = "Injection Error"


# Auto-restart must never race these; INJECTION_ERROR is included so a
# failed injection is left for the operator rather than restarted in a loop.
STARTUP_PHASES = frozenset(
    {
        LifecycleState.INITIALIZING,
        LifecycleState.SETTING_UP_ENVIRONMENT,
        LifecycleState.LOADING_BYPASS_AGENT,
        LifecycleState.LOADED_BYPASS_AGENT,
        LifecycleState.PRE_LAUNCH_DELAY,
        LifecycleState.LAUNCHING,
        LifecycleState.AWAITING_PROCESS_READY,
        LifecycleState.PRE_INJECT_DELAY,
        LifecycleState.INJECTING_PRELOAD,
        LifecycleState.PRE_PAYLOAD_DELAY,
        LifecycleState.INJECTING_PAYLOAD,
        LifecycleState.INJECTION_ERROR,
    }
)

# States the channel treats as "was healthy" when a stream errors out
LIVE_STATES = frozenset(
    {LifecycleState.CONNECTED, LifecycleState.RUNNING, LifecycleState.ACTIVE}
)


class PipeState(Enum):
    """Duplex channel state of a worker"""

    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    DISCONNECTED_ERROR = "Disconnected (Error)"
    DISCONNECTED_CLOSED = "Disconnected (Closed)"

    @property
    def is_connected(self) -> bool:
        return self is PipeState.CONNECTED


class TelemetryField(Enum):
    """Telemetry fields with a known meaning; the wire name is the value"""

    HEALTH = "health"
    PLAYER_CLASS = "playerClass"
    MAP = "map"
    SERVER_INFO = "serverInfo"
    STATUS = "status"


# Inbound message type -> known telemetry field
MESSAGE_FIELDS: Dict[str, TelemetryField] = {
    "Health": TelemetryField.HEALTH,
    "PlayerClass": TelemetryField.PLAYER_CLASS,
    "Map": TelemetryField.MAP,
    "ServerInfo": TelemetryField.SERVER_INFO,
    "Status": TelemetryField.STATUS,
}


class Telemetry:
    """
    Latest telemetry reported by a worker.

    Known fields live in a typed map; anything else goes to a residual map
    keyed by the lower-cased message type, capped at ``extra_limit`` entries
    (oldest key evicted first).
    """

    def __init__(self, extra_limit: int = 32):
        self.extra_limit = extra_limit
        self.known: Dict[TelemetryField, Any] = {}
        self.extra: "OrderedDict[str, str]" = OrderedDict()

    def set_known(self, name: TelemetryField, value: Any) -> None:
        self.known[name] = value

    def set_extra(self, key: str, value: str) -> None:
        if self.extra_limit == 0:
            return
        if key in self.extra:
            self.extra.move_to_end(key)
        self.extra[key] = value
        while len(self.extra) > self.extra_limit:
            self.extra.popitem(last=False)

    def clear(self) -> None:
        self.known.clear()
        self.extra.clear()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {f.value: v for f, v in self.known.items()}
        data.update(self.extra)
        return data


@dataclass
class Credential:
    """One identity record from the credential pool"""

    identity: str
    secret: str

    def __repr__(self) -> str:
        return f"Credential(identity={self.identity!r}, secret='••••••••')"


@dataclass
class CommandResult:
    """Outcome of a one-shot command run inside an environment"""

    exit_ok: bool
    stdout: str = ""
    stderr: str = ""


class ProcessHandle(Protocol):
    """Minimal view of an external process used by the health monitor"""

    @property
    def pid(self) -> Optional[int]: ...

    def is_alive(self) -> bool: ...

    def exit_status(self) -> Optional[int]: ...


@dataclass
class TrackedProcess:
    """A launched process registered for health monitoring"""

    handle: ProcessHandle
    program: str
    args: List[str] = field(default_factory=list)
    launched_at: float = field(default_factory=time.time)


@dataclass
class Worker:
    """
    A fleet-managed unit identified by a stable integer id.

    Attributes:
        id: Positive integer, stable fleet-wide key
        lifecycle_state: Current lifecycle state
        pipe_state: Duplex channel state
        assigned_credential: Credential used for the last start, reused on auto-restart
        environment_handle: Name of the isolated environment (owned by the manager)
        last_heartbeat_at: Timestamp of the last inbound frame
        telemetry: Latest reported telemetry
        stop_requested: Stop latch observed at every lifecycle checkpoint
        restart_count: Number of auto-restarts performed
    """

    id: int
    lifecycle_state: LifecycleState = LifecycleState.NOT_STARTED
    pipe_state: PipeState = PipeState.DISCONNECTED
    assigned_credential: Optional[Credential] = None
    environment_handle: Optional[str] = None
    last_heartbeat_at: Optional[float] = None
    telemetry: Telemetry = field(default_factory=Telemetry)
    stop_requested: bool = False
    restart_count: int = 0

    def reset(self) -> None:
        """Reset runtime fields in place; credential and environment are kept."""
        self.stop_requested = False
        self.telemetry.clear()
