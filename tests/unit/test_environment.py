"""Tests for the directory-per-worker environment manager (real subprocesses)."""

import asyncio
import os
import sys

import pytest

from fleet_orchestrator.environment import LocalEnvironmentManager, environment_name

PYTHON_NAME = os.path.basename(os.path.realpath(sys.executable))

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process handling")


@pytest.fixture
def manager(tmp_path):
    return LocalEnvironmentManager(tmp_path / "environments", terminate_timeout=2.0)


@pytest.mark.unit
class TestEnsure:

    @pytest.mark.asyncio
    async def test_creates_then_reuses(self, manager):
        assert await manager.ensure(1) == "worker1"
        assert (manager.root / "worker1").is_dir()

        assert await manager.ensure(1) == "worker1"
        assert manager.environments[1] == manager.root / "worker1"

    @pytest.mark.asyncio
    async def test_failure_returns_none(self, tmp_path):
        root = tmp_path / "not-a-dir"
        root.write_text("")
        manager = LocalEnvironmentManager(root)

        assert await manager.ensure(1) is None

    def test_environment_name(self):
        assert environment_name(12) == "worker12"


@pytest.mark.unit
class TestRunCommand:

    @pytest.mark.asyncio
    async def test_captures_output_inside_environment(self, manager):
        await manager.ensure(2)

        result = await manager.run_command(
            2,
            sys.executable,
            ["-c", "import os; print(os.environ['FLEET_WORKER_ID']); print(os.getcwd())"],
        )

        assert result.exit_ok is True
        worker_id, cwd = result.stdout.split()
        assert worker_id == "2"
        assert os.path.realpath(cwd) == os.path.realpath(manager.root / "worker2")

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, manager):
        await manager.ensure(1)
        result = await manager.run_command(
            1, sys.executable, ["-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"]
        )

        assert result.exit_ok is False
        assert result.stderr == "bad"

    @pytest.mark.asyncio
    async def test_missing_executable(self, manager):
        await manager.ensure(1)
        result = await manager.run_command(1, "/nonexistent/injector", [])

        assert result.exit_ok is False
        assert result.stderr


@pytest.mark.unit
class TestLaunchAndTerminate:

    @pytest.mark.asyncio
    async def test_launch_is_running_terminate(self, manager):
        await manager.ensure(1)
        handle = await manager.launch(1, sys.executable, ["-c", "import time; time.sleep(30)"])

        assert handle is not None
        assert handle.is_alive()
        assert handle.exit_status() is None
        assert await manager.is_running(1, PYTHON_NAME) is True
        assert await manager.is_running(1, "definitely-not-running") is False

        assert await manager.terminate_all(1) is True

        await asyncio.wait_for(handle.process.wait(), timeout=5)
        assert not handle.is_alive()
        assert manager.handles[1] == []
        assert await manager.is_running(1, PYTHON_NAME) is False

    @pytest.mark.asyncio
    async def test_environments_are_isolated(self, manager):
        await manager.ensure(1)
        await manager.ensure(2)
        handle = await manager.launch(1, sys.executable, ["-c", "import time; time.sleep(30)"])

        try:
            assert await manager.is_running(2, PYTHON_NAME) is False
            assert await manager.terminate_all(2) is True
            assert handle.is_alive()
        finally:
            await manager.terminate_all(1)
            await asyncio.wait_for(handle.process.wait(), timeout=5)

    @pytest.mark.asyncio
    async def test_launch_missing_executable(self, manager):
        await manager.ensure(1)
        assert await manager.launch(1, "/nonexistent/target.bin", []) is None

    @pytest.mark.asyncio
    async def test_terminate_empty_environment(self, manager):
        await manager.ensure(3)
        assert await manager.terminate_all(3) is True
