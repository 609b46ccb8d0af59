"""
Isolation Environment Manager

Creates or reuses a named run environment per worker, launches executables
inside it, runs one-shot commands and terminates everything running in it.
The orchestration core depends only on the EnvironmentManager protocol;
LocalEnvironmentManager is the directory-per-worker implementation.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Union

import psutil

from .models import CommandResult, ProcessHandle

logger = logging.getLogger(__name__)


class EnvironmentManager(Protocol):
    """Operations the orchestration core consumes, all scoped by worker id."""

    async def ensure(self, worker_id: int) -> Optional[str]: ...

    async def launch(self, worker_id: int, executable: str, args: Sequence[str]) -> Optional[ProcessHandle]: ...

    async def run_command(self, worker_id: int, executable: str, args: Sequence[str]) -> CommandResult: ...

    async def is_running(self, worker_id: int, executable_name: str) -> bool: ...

    async def terminate_all(self, worker_id: int) -> bool: ...


def environment_name(worker_id: int) -> str:
    return f"worker{worker_id}"


class SubprocessHandle:
    """ProcessHandle over an asyncio subprocess."""

    def __init__(self, process: asyncio.subprocess.Process, program: str):
        self.process = process
        self.program = program

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process.returncode is None

    def exit_status(self) -> Optional[int]:
        return self.process.returncode


class LocalEnvironmentManager:
    """
    Directory-per-worker environments on the local host.

    Every process launched for a worker runs with the environment directory as
    its working directory and ``FLEET_WORKER_ID`` / ``FLEET_ENVIRONMENT`` set,
    which is how processes that belong to an environment are found again for
    liveness checks and termination.
    """

    def __init__(
        self,
        root: Union[str, Path],
        terminate_timeout: float = 5.0,
        terminate_attempts: int = 3,
    ):
        self.root = Path(root)
        self.terminate_timeout = terminate_timeout
        self.terminate_attempts = terminate_attempts
        self.environments: Dict[int, Path] = {}
        self.handles: Dict[int, List[SubprocessHandle]] = {}

    async def ensure(self, worker_id: int) -> Optional[str]:
        """
        Create the environment directory, or reuse it when it already exists.

        Returns:
            Environment name, or None if it could not be created
        """
        name = environment_name(worker_id)
        path = self.root / name
        try:
            if path.is_dir():
                logger.info(f"Using existing environment {name}")
            else:
                path.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created environment {name} at {path}")
        except OSError as e:
            logger.error(f"Failed to create environment {name}: {e}")
            return None

        self.environments[worker_id] = path
        return name

    def _child_env(self, worker_id: int) -> Dict[str, str]:
        env = dict(os.environ)
        env["FLEET_WORKER_ID"] = str(worker_id)
        env["FLEET_ENVIRONMENT"] = environment_name(worker_id)
        return env

    def _cwd(self, worker_id: int) -> Path:
        return self.environments.get(worker_id, self.root / environment_name(worker_id))

    async def launch(self, worker_id: int, executable: str, args: Sequence[str]) -> Optional[SubprocessHandle]:
        """
        Launch an executable inside the worker's environment.

        Returns:
            Handle for the launched process, or None if it could not start
        """
        name = environment_name(worker_id)
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                cwd=str(self._cwd(worker_id)),
                env=self._child_env(worker_id),
                stdout=None,
                stderr=None,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Error launching {os.path.basename(executable)} in {name}: {e}")
            return None

        handle = SubprocessHandle(process, executable)
        self.handles.setdefault(worker_id, []).append(handle)
        logger.info(f"Launched {os.path.basename(executable)} in {name} (PID {handle.pid})")
        return handle

    async def run_command(self, worker_id: int, executable: str, args: Sequence[str]) -> CommandResult:
        """Run a one-shot command in the environment and capture its output."""
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                cwd=str(self._cwd(worker_id)),
                env=self._child_env(worker_id),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            return CommandResult(exit_ok=False, stdout="", stderr=str(e))

        stdout, stderr = await process.communicate()
        return CommandResult(
            exit_ok=process.returncode == 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def _environment_processes(self, worker_id: int) -> List[psutil.Process]:
        """Tracked processes, their descendants, and anything running from the environment directory."""
        found: Dict[int, psutil.Process] = {}

        for handle in self.handles.get(worker_id, []):
            if not handle.is_alive() or handle.pid is None:
                continue
            try:
                proc = psutil.Process(handle.pid)
                found[proc.pid] = proc
                for child in proc.children(recursive=True):
                    found[child.pid] = child
            except psutil.NoSuchProcess:
                continue

        env_dir = os.path.realpath(self._cwd(worker_id))
        for proc in psutil.process_iter(["pid", "cwd"]):
            cwd = proc.info.get("cwd")
            if not cwd:
                continue
            cwd = os.path.realpath(cwd)
            if cwd == env_dir or cwd.startswith(env_dir + os.sep):
                found.setdefault(proc.pid, proc)

        found.pop(os.getpid(), None)
        return list(found.values())

    async def is_running(self, worker_id: int, executable_name: str) -> bool:
        """Whether a process with this executable name is alive in the environment."""
        wanted = os.path.basename(executable_name)

        def _check() -> bool:
            for proc in self._environment_processes(worker_id):
                try:
                    if proc.name() == wanted or os.path.basename(proc.exe()) == wanted:
                        return True
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
            return False

        return await asyncio.to_thread(_check)

    def _terminate_tree(self, worker_id: int) -> bool:
        name = environment_name(worker_id)
        for attempt in range(1, self.terminate_attempts + 1):
            procs = self._environment_processes(worker_id)
            if not procs:
                logger.info(f"All processes terminated in environment {name}")
                return True

            logger.info(
                f"Terminating {len(procs)} processes in {name} "
                f"(attempt {attempt}/{self.terminate_attempts})"
            )
            for proc in procs:
                try:
                    proc.terminate()
                except psutil.NoSuchProcess:
                    pass

            _, alive = psutil.wait_procs(procs, timeout=self.terminate_timeout)
            for proc in alive:
                logger.warning(f"{name}: PID {proc.pid} ignored SIGTERM, force killing")
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
            psutil.wait_procs(alive, timeout=self.terminate_timeout)

        remaining = self._environment_processes(worker_id)
        if remaining:
            logger.warning(f"{len(remaining)} processes still running in {name} after termination")
            return False
        return True

    async def terminate_all(self, worker_id: int) -> bool:
        """
        Forcibly terminate every process in the worker's environment.

        Returns:
            True if nothing is left running, False on partial termination
        """
        try:
            result = await asyncio.to_thread(self._terminate_tree, worker_id)
        except Exception as e:
            logger.error(f"Error terminating environment {environment_name(worker_id)}: {e}")
            result = False

        self.handles[worker_id] = [h for h in self.handles.get(worker_id, []) if h.is_alive()]
        return result
