"""Tests for FleetOrchestrator wiring, startup and shutdown."""

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fakes import FakeEnvironmentManager, make_config, wait_for
from fleet_orchestrator import orchestrator as orchestrator_module
from fleet_orchestrator.credentials import CredentialStore
from fleet_orchestrator.events import MemoryEventSink
from fleet_orchestrator.models import Credential, LifecycleState
from fleet_orchestrator.orchestrator import FleetOrchestrator


def make_orchestrator(**config_overrides):
    return FleetOrchestrator(
        config=make_config(**config_overrides),
        environment=FakeEnvironmentManager(),
        credentials=CredentialStore(credentials=[Credential("alpha", "alpha-secret")]),
        events=MemoryEventSink(),
    )


@pytest.mark.unit
class TestFleetOrchestrator:
    """Test the orchestrator end to end with in-memory collaborators."""

    def test_build_wires_one_state(self):
        orch = make_orchestrator()
        orch.build()

        assert orch.scheduler.state is orch.state
        assert orch.lifecycle.state is orch.state
        assert orch.health_monitor.state is orch.state
        assert orch.channel.state is orch.state
        assert orch.state.global_stop is False

    @pytest.mark.asyncio
    async def test_startup_enqueue_and_shutdown(self):
        orch = make_orchestrator()
        await orch.startup(install_signal_handlers=False)
        try:
            assert orch.channel.running is True
            assert orch.scheduler.running is True
            assert orch.health_monitor.running is True

            assert orch.enqueue(1) is True
            assert orch.enqueue(1) is False
            assert await wait_for(lambda: orch.state.worker(1).lifecycle_state is LifecycleState.ACTIVE)

            status = orch.status()
            assert status["workerStatuses"][1]["status"] == "Active"
            assert status["quota"] == {"current": 1, "total": 10}
            assert status["queue"] == {"currentlyStarting": [], "inQueue": []}
            assert status["autoRestart"]["enabled"] is True
            assert status["health"]["tracked_processes"] == 1

            assert orch.send_command(1, "jump") is False
            assert orch.send_command_to_all("jump") == {"successCount": 0, "results": []}
        finally:
            await orch.shutdown()

        assert orch.state.worker(1).lifecycle_state is LifecycleState.STOPPED
        assert orch.state.active == set()
        assert orch.channel.running is False
        assert orch.scheduler.running is False
        assert orch.health_monitor.running is False

    @pytest.mark.asyncio
    async def test_manual_restart_and_stop(self):
        orch = make_orchestrator()
        await orch.startup(install_signal_handlers=False)
        try:
            orch.enqueue(1)
            assert await wait_for(lambda: 1 in orch.state.active)

            assert orch.restart(1) is True
            assert await wait_for(lambda: len(orch.environment.calls_of("launch")) == 2)
            assert await wait_for(lambda: orch.state.worker(1).lifecycle_state is LifecycleState.ACTIVE)

            assert await orch.stop(1) is True
            assert orch.state.worker(1).lifecycle_state is LifecycleState.STOPPED
        finally:
            await orch.shutdown()

    @pytest.mark.asyncio
    async def test_set_auto_restart(self):
        orch = make_orchestrator()
        orch.build()

        with patch("fleet_orchestrator.health_monitor.save_config_section", return_value=True):
            assert orch.set_auto_restart(False) is True

        assert orch.state.auto_restart_enabled is False

    @pytest.mark.asyncio
    async def test_shutdown_bounded_when_stop_all_hangs(self):
        orch = make_orchestrator(shutdown_timeout=0.1)
        await orch.startup(install_signal_handlers=False)

        async def hang():
            orch.state.global_stop = True
            await asyncio.sleep(10)

        orch.lifecycle.stop_all = AsyncMock(side_effect=hang)
        await asyncio.wait_for(orch.shutdown(), timeout=2)

        assert orch.state.global_stop is False

    @pytest.mark.asyncio
    async def test_signal_sets_shutdown_event(self):
        orch = make_orchestrator()
        await orch._signal_handler(signal.SIGTERM)
        assert orch.shutdown_event.is_set()

    @pytest.mark.asyncio
    async def test_run_waits_for_shutdown_event(self):
        orch = make_orchestrator()
        orch.startup = AsyncMock()
        orch.shutdown = AsyncMock()
        orch.shutdown_event.set()

        await orch.run()

        orch.startup.assert_awaited_once()
        orch.shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_shuts_down_after_startup_error(self):
        orch = make_orchestrator()
        orch.startup = AsyncMock(side_effect=RuntimeError("boom"))
        orch.shutdown = AsyncMock()

        with pytest.raises(RuntimeError):
            await orch.run()

        orch.shutdown.assert_awaited_once()


@pytest.mark.unit
class TestEventSinkSelection:

    @pytest.mark.asyncio
    async def test_memory_sink_without_redis_url(self):
        orch = FleetOrchestrator(config=make_config())
        assert isinstance(await orch._connect_events(), MemoryEventSink)

    @pytest.mark.asyncio
    async def test_redis_sink_when_reachable(self):
        orch = FleetOrchestrator(config=make_config(redis_url="redis://localhost:6379/0"))
        sink = MagicMock()
        sink.connect = AsyncMock()

        with patch.object(orchestrator_module, "RedisEventSink", return_value=sink):
            assert await orch._connect_events() is sink

        assert orch._redis_sink is sink

    @pytest.mark.asyncio
    async def test_falls_back_to_memory_when_redis_down(self):
        orch = FleetOrchestrator(config=make_config(redis_url="redis://localhost:6379/0"))
        sink = MagicMock()
        sink.connect = AsyncMock(side_effect=ConnectionError("refused"))

        with patch.object(orchestrator_module, "RedisEventSink", return_value=sink):
            result = await orch._connect_events()

        assert isinstance(result, MemoryEventSink)
        assert orch._redis_sink is None


@pytest.mark.unit
class TestMain:

    def test_main_exit_codes(self):
        with patch.object(orchestrator_module, "load_dotenv"), patch.object(
            orchestrator_module, "setup_logging"
        ), patch.object(orchestrator_module, "run_orchestrator", AsyncMock()):
            with pytest.raises(SystemExit) as exc_info:
                orchestrator_module.main()
        assert exc_info.value.code == 0

        with patch.object(orchestrator_module, "load_dotenv"), patch.object(
            orchestrator_module, "setup_logging"
        ), patch.object(
            orchestrator_module, "run_orchestrator", AsyncMock(side_effect=RuntimeError("boom"))
        ):
            with pytest.raises(SystemExit) as exc_info:
                orchestrator_module.main()
        assert exc_info.value.code == 1
