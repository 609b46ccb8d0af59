"""Test doubles for the environment manager, processes and channel connections."""

import asyncio
from typing import Dict, List, Optional, Sequence

from fleet_orchestrator.config import FleetConfig
from fleet_orchestrator.models import CommandResult

SUCCESS_OUTPUT = "Successfully injected module"


def make_config(**overrides) -> FleetConfig:
    """FleetConfig with millisecond delays so lifecycle tests run fast."""
    values = dict(
        max_concurrent_starts=2,
        bot_quota=10,
        scheduler_interval=0.01,
        poll_interval=0.01,
        environment_settle_delay=0,
        bypass_agent_enabled=True,
        bypass_agent_executable="/opt/fleet/agent",
        bypass_agent_settle_delay=0,
        launch_delay=0,
        target_executable="/opt/fleet/target.bin",
        target_args="-windowed -novid",
        process_ready_delay=0,
        preload_delay_enabled=False,
        preload_delay=0,
        payload_delay=0,
        injector_executable="/opt/fleet/injector",
        preload_module="/opt/fleet/preload.so",
        payload_module="/opt/fleet/payload.so",
        injection_success_marker=SUCCESS_OUTPUT,
        injection_recheck_delay=0,
        injection_reappear_timeout=0.05,
        auto_restart_enabled=True,
        monitor_interval=0.01,
        restart_grace_period=0,
        heartbeat_stale_after=20,
        restart_cooldown=0,
        restart_bypass_settle=0,
        manual_restart_delay=0,
        channel_address="127.0.0.1:0",
        reconnect_notice_after=0.05,
        listener_backoff_base=0.01,
        listener_backoff_factor=1.5,
        listener_max_attempts=3,
        shutdown_timeout=1.0,
        redis_url=None,
    )
    values.update(overrides)
    return FleetConfig(**values)


class FakeProcessHandle:
    """ProcessHandle whose exit is controlled by the test."""

    _next_pid = 1000

    def __init__(self, program: str = "target.bin"):
        FakeProcessHandle._next_pid += 1
        self.pid = FakeProcessHandle._next_pid
        self.program = program
        self.returncode: Optional[int] = None

    def is_alive(self) -> bool:
        return self.returncode is None

    def exit_status(self) -> Optional[int]:
        return self.returncode

    def exit(self, code: int = 1) -> None:
        self.returncode = code


class FakeEnvironmentManager:
    """
    In-memory EnvironmentManager.

    ``command_results`` maps an executable path to the CommandResult (or list
    of results, consumed in order) that run_command returns for it.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_ensure = False
        self.fail_launch = False
        self.terminate_result = True
        self.running_answers: List[bool] = []
        self.command_results: Dict[str, object] = {}
        self.handles: Dict[int, List[FakeProcessHandle]] = {}
        self.launch_gate: Optional[asyncio.Event] = None

    async def ensure(self, worker_id: int) -> Optional[str]:
        self.calls.append(("ensure", worker_id))
        if self.fail_ensure:
            return None
        return f"worker{worker_id}"

    async def launch(self, worker_id: int, executable: str, args: Sequence[str]) -> Optional[FakeProcessHandle]:
        self.calls.append(("launch", worker_id, executable, list(args)))
        if self.launch_gate is not None:
            await self.launch_gate.wait()
        if self.fail_launch:
            return None
        handle = FakeProcessHandle(executable)
        self.handles.setdefault(worker_id, []).append(handle)
        return handle

    async def run_command(self, worker_id: int, executable: str, args: Sequence[str]) -> CommandResult:
        self.calls.append(("run_command", worker_id, executable, list(args)))
        result = self.command_results.get(executable)
        if isinstance(result, list):
            result = result.pop(0) if result else None
        if result is None:
            return CommandResult(exit_ok=True, stdout=SUCCESS_OUTPUT)
        return result

    async def is_running(self, worker_id: int, executable_name: str) -> bool:
        self.calls.append(("is_running", worker_id, executable_name))
        if self.running_answers:
            return self.running_answers.pop(0)
        return False

    async def terminate_all(self, worker_id: int) -> bool:
        self.calls.append(("terminate_all", worker_id))
        for handle in self.handles.get(worker_id, []):
            if handle.is_alive():
                handle.exit(-15)
        return self.terminate_result

    def calls_of(self, kind: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == kind]


class FakeConnection:
    """
    Channel connection with a controllable write buffer.

    While ``accepting`` is False, ``write`` refuses frames without consuming
    them and ``wait_writable`` blocks until ``accept()`` is called.
    """

    def __init__(self, accepting: bool = True):
        self.written: List[str] = []
        self.accepting = accepting
        self.closed = False
        self._writable_event = asyncio.Event()
        if accepting:
            self._writable_event.set()

    @property
    def writable(self) -> bool:
        return not self.closed

    def write(self, data: bytes) -> bool:
        if self.closed or not self.accepting:
            return False
        self.written.append(data.decode("utf-8"))
        return True

    async def wait_writable(self) -> None:
        await self._writable_event.wait()

    def block(self) -> None:
        self.accepting = False
        self._writable_event.clear()

    def accept(self) -> None:
        self.accepting = True
        self._writable_event.set()

    def close(self) -> None:
        self.closed = True


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    """Poll a condition from the test body."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def statuses_of(events, worker_id: int) -> List[str]:
    """Lifecycle status values published for one worker, in order."""
    return [
        payload["workerStatuses"][worker_id]["status"]
        for name, payload in events.events
        if name == "statusUpdate" and worker_id in payload["workerStatuses"]
    ]
