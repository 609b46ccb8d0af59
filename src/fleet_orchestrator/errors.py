"""
Error classes for fleet orchestration.

These error types classify failures at the worker boundary:
- AdmissionRejected: the start request was refused, nothing changed
- StageAborted: a stop request was observed between stages
- StageFailure subclasses: a startup stage failed, the worker lands in
  the matching error state and keeps its credential and environment
- ProtocolViolation: a bad frame on one channel connection

The lifecycle runner catches these at the worker boundary so a failure
never propagates to another worker or to the tick loops.
"""

from typing import Optional

from .models import LifecycleState


class FleetError(Exception):
    """Base exception for the fleet orchestrator."""
    pass


class AdmissionRejected(FleetError):
    """
    A worker could not be admitted.

    Reasons:
    - duplicate: already queued, starting or active
    - quota_exceeded: active + starting already at the configured quota
    """

    DUPLICATE = "duplicate"
    QUOTA_EXCEEDED = "quota_exceeded"

    def __init__(self, worker_id: int, reason: str, message: Optional[str] = None):
        self.worker_id = worker_id
        self.reason = reason
        super().__init__(message or f"Worker {worker_id} rejected: {reason}")


class StageAborted(FleetError):
    """Stop flag observed at a checkpoint; the worker goes to Stopped."""

    def __init__(self, worker_id: int, stage: LifecycleState):
        self.worker_id = worker_id
        self.stage = stage
        super().__init__(
            f"Worker {worker_id} startup aborted due to stop flag during {stage.value}"
        )


class StageFailure(FleetError):
    """A startup stage failed; terminal for the current attempt."""

    state = LifecycleState.CRASHED


class EnvironmentSetupError(StageFailure):
    """The isolated environment could not be created or reused."""

    state = LifecycleState.ENVIRONMENT_ERROR


class BypassAgentError(StageFailure):
    """The bypass agent could not be loaded."""

    state = LifecycleState.BYPASS_AGENT_ERROR


class LaunchError(StageFailure):
    """The target executable could not be launched."""

    state = LifecycleState.LAUNCH_ERROR


class InjectionError(StageFailure):
    """An injection command failed or never reported success."""

    state = LifecycleState.INJECTION_ERROR


class ProtocolViolation(FleetError):
    """Malformed frame or a frame whose id does not match the connection."""
    pass
