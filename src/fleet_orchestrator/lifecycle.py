"""
Worker Lifecycle

Drives one worker from admission to Active through an ordered sequence of
stages. Every stage boundary is a checkpoint: a stop request (per worker or
the global stop-all latch) observed there aborts the attempt to Stopped.
Stage delays are cancellable waits polled at ``poll_interval``.
"""

import asyncio
import logging
import os
import shlex
from typing import Dict, List, Optional

from .credentials import CredentialStore
from .environment import EnvironmentManager
from .errors import (
    BypassAgentError,
    EnvironmentSetupError,
    InjectionError,
    LaunchError,
    StageAborted,
    StageFailure,
)
from .events import (
    LOG_MESSAGE,
    QUEUE_UPDATE,
    QUOTA_UPDATE,
    STATUS_UPDATE,
    EventSink,
    log_event,
)
from .logging_utils import mask_args
from .models import LIVE_STATES, Credential, LifecycleState, TrackedProcess, Worker
from .state import FleetState
from .waits import WaitOutcome, cancellable_wait, poll_until

logger = logging.getLogger(__name__)


class LifecycleManager:
    """
    Start, stop and relaunch workers.

    Each attempt (initial start or auto-restart relaunch) runs in its own task
    and is recorded per id, so ``stop`` can wait for an in-flight attempt to
    observe the stop flag before reporting the worker as Stopped.
    """

    def __init__(
        self,
        state: FleetState,
        events: EventSink,
        environment: EnvironmentManager,
        credentials: CredentialStore,
    ):
        self.state = state
        self.events = events
        self.environment = environment
        self.credentials = credentials
        self._attempts: Dict[int, asyncio.Task] = {}
        self._watchers: Dict[int, asyncio.Task] = {}

    @property
    def config(self):
        return self.state.config

    # -- helpers ---------------------------------------------------------------

    def publish_status(self, worker_id: int) -> None:
        self.events.publish(STATUS_UPDATE, self.state.status_payload(worker_id))
        logger.debug(
            f"Updated worker {worker_id} status: {self.state.worker(worker_id).lifecycle_state.value}"
        )

    def publish_quota(self) -> None:
        self.events.publish(QUOTA_UPDATE, self.state.quota_snapshot())

    def _set_state(self, worker: Worker, new_state: LifecycleState) -> None:
        worker.lifecycle_state = new_state
        self.publish_status(worker.id)

    def checkpoint(self, worker: Worker, stage: LifecycleState) -> None:
        """Raise StageAborted if a stop was requested for this worker."""
        if self.state.is_stop_requested(worker.id):
            raise StageAborted(worker.id, stage)

    def _enter(self, worker: Worker, stage: LifecycleState) -> None:
        self.checkpoint(worker, stage)
        self._set_state(worker, stage)

    async def _delay(self, worker: Worker, stage: LifecycleState, duration: float) -> None:
        self._enter(worker, stage)
        if duration <= 0:
            return

        logger.info(f"Worker {worker.id}: waiting {duration:g}s ({stage.value})")
        outcome = await cancellable_wait(
            duration,
            lambda: self.state.is_stop_requested(worker.id),
            self.config.poll_interval,
        )
        if outcome is WaitOutcome.CANCELLED:
            raise StageAborted(worker.id, stage)

    def _track_attempt(self, worker_id: int) -> Optional[asyncio.Task]:
        task = asyncio.current_task()
        if task is not None:
            self._attempts[worker_id] = task
        return task

    def _release_attempt(self, worker_id: int, task: Optional[asyncio.Task]) -> None:
        if task is not None and self._attempts.get(worker_id) is task:
            del self._attempts[worker_id]

    def has_live_attempt(self, worker_id: int) -> bool:
        task = self._attempts.get(worker_id)
        return task is not None and not task.done()

    async def _await_attempt(self, worker_id: int) -> bool:
        """Wait (bounded) for an in-flight attempt to finish; True if none is left."""
        task = self._attempts.get(worker_id)
        if task is None or task.done() or task is asyncio.current_task():
            return True
        done, _ = await asyncio.wait({task}, timeout=self.config.shutdown_timeout)
        if not done:
            logger.warning(f"Worker {worker_id}: startup attempt did not settle after stop")
        return bool(done)

    # -- stages ----------------------------------------------------------------

    async def _setup_environment(self, worker: Worker) -> None:
        self._enter(worker, LifecycleState.SETTING_UP_ENVIRONMENT)
        try:
            name = await self.environment.ensure(worker.id)
        except Exception as e:
            raise EnvironmentSetupError(f"Failed to create environment for worker {worker.id}: {e}") from e
        if not name:
            raise EnvironmentSetupError(f"Failed to create environment for worker {worker.id}")
        worker.environment_handle = name

        outcome = await cancellable_wait(
            self.config.environment_settle_delay,
            lambda: self.state.is_stop_requested(worker.id),
            self.config.poll_interval,
        )
        if outcome is WaitOutcome.CANCELLED:
            raise StageAborted(worker.id, LifecycleState.SETTING_UP_ENVIRONMENT)

    async def _load_bypass_agent(self, worker: Worker, credential: Credential, settle_delay: float) -> None:
        self._enter(worker, LifecycleState.LOADING_BYPASS_AGENT)

        executable = self.config.bypass_agent_executable
        args = [credential.identity, credential.secret]
        logger.info(
            f"Worker {worker.id}: loading bypass agent "
            f"{os.path.basename(executable)} {' '.join(mask_args(args, [credential.secret]))}"
        )
        try:
            result = await self.environment.run_command(worker.id, executable, args)
        except Exception as e:
            raise BypassAgentError(f"Failed to load bypass agent: {e}") from e

        if not result.exit_ok:
            logger.error(f"Worker {worker.id}: bypass agent stderr: {result.stderr.strip()}")
            raise BypassAgentError("Failed to load bypass agent")

        logger.info(f"Worker {worker.id}: bypass agent loaded, waiting for initialization to complete")
        await self._delay(worker, LifecycleState.LOADED_BYPASS_AGENT, settle_delay)

    async def _launch(self, worker: Worker) -> None:
        self._enter(worker, LifecycleState.LAUNCHING)

        executable = self.config.target_executable
        if not executable:
            raise LaunchError("No target executable configured")

        args = shlex.split(self.config.target_args)
        try:
            handle = await self.environment.launch(worker.id, executable, args)
        except Exception as e:
            raise LaunchError(f"Failed to launch target: {e}") from e
        if handle is None:
            raise LaunchError("Failed to launch target")

        self.track_process(worker.id, TrackedProcess(handle=handle, program=executable, args=args))

    async def _inject(self, worker: Worker, stage: LifecycleState, module: str, fatal: bool) -> bool:
        """
        Run the injector for one module and verify its output.

        A non-fatal (preload) failure is logged and tolerated. A fatal
        (payload) failure is re-checked against the target's liveness first.
        """
        self._enter(worker, stage)

        injector = self.config.injector_executable
        if not injector or not module:
            message = f"Worker {worker.id}: injector or module not configured for {stage.value}"
            if fatal:
                raise InjectionError(message)
            logger.warning(f"{message}, skipping")
            return False

        target_name = os.path.basename(self.config.target_executable)
        args = ["--process-name", target_name, "--inject", module]
        logger.info(f"Worker {worker.id}: injecting {os.path.basename(module)}")

        try:
            result = await self.environment.run_command(worker.id, injector, args)
        except Exception as e:
            if not fatal:
                logger.warning(f"Worker {worker.id}: injection error ({e}), continuing")
                return False
            raise InjectionError(f"Injection failed: {e}") from e

        logger.debug(f"Worker {worker.id}: injector output: {result.stdout.strip()}")
        if result.exit_ok and self.config.injection_success_marker in result.stdout:
            logger.info(f"Worker {worker.id}: {os.path.basename(module)} successfully injected")
            return True

        if result.stderr:
            logger.error(f"Worker {worker.id}: injector stderr: {result.stderr.strip()}")

        if not fatal:
            logger.warning(f"Worker {worker.id}: {stage.value} might have failed, continuing")
            return False

        if await self._recheck_target(worker):
            return True
        raise InjectionError("Injection did not report success")

    async def _recheck_target(self, worker: Worker) -> bool:
        """
        Decide whether a failed injection is actually a target restart.

        If the target is still running the injection really failed. If it
        exited, wait for it to reappear; a reappearance counts as success.
        """
        target_name = os.path.basename(self.config.target_executable)

        outcome = await cancellable_wait(
            self.config.injection_recheck_delay,
            lambda: self.state.is_stop_requested(worker.id),
            self.config.poll_interval,
        )
        if outcome is WaitOutcome.CANCELLED:
            raise StageAborted(worker.id, LifecycleState.INJECTING_PAYLOAD)

        try:
            if await self.environment.is_running(worker.id, target_name):
                logger.warning(f"Worker {worker.id}: target still running after injection error")
                return False

            log_event(
                self.events,
                f"Worker {worker.id}: target exited during injection - waiting for it to restart",
                log=logger,
            )
            reappeared = await poll_until(
                lambda: self.environment.is_running(worker.id, target_name),
                timeout=self.config.injection_reappear_timeout,
                interval=self.config.poll_interval,
                is_cancelled=lambda: self.state.is_stop_requested(worker.id),
            )
        except Exception as e:
            logger.error(f"Worker {worker.id}: error checking whether target is running: {e}")
            return False

        if self.state.is_stop_requested(worker.id):
            raise StageAborted(worker.id, LifecycleState.INJECTING_PAYLOAD)

        if reappeared:
            logger.info(f"Worker {worker.id}: target restarted after injection - assuming success")
            return True

        logger.error(f"Worker {worker.id}: target did not restart after injection")
        return False

    async def _inject_stages(self, worker: Worker) -> None:
        await self._delay(worker, LifecycleState.AWAITING_PROCESS_READY, self.config.process_ready_delay)

        if self.config.preload_delay_enabled:
            await self._delay(worker, LifecycleState.PRE_INJECT_DELAY, self.config.preload_delay)
        await self._inject(worker, LifecycleState.INJECTING_PRELOAD, self.config.preload_module, fatal=False)

        await self._delay(worker, LifecycleState.PRE_PAYLOAD_DELAY, self.config.payload_delay)
        await self._inject(worker, LifecycleState.INJECTING_PAYLOAD, self.config.payload_module, fatal=True)

        self.checkpoint(worker, LifecycleState.INJECTING_PAYLOAD)

    def _mark_active(self, worker: Worker) -> None:
        self.state.starting.discard(worker.id)
        self.state.active.add(worker.id)
        worker.stop_requested = False
        self._set_state(worker, LifecycleState.ACTIVE)
        self.publish_quota()

    # -- process tracking ------------------------------------------------------

    def track_process(self, worker_id: int, tracked: TrackedProcess) -> None:
        """Register a launched process for health monitoring and watch for its exit."""
        self.untrack_process(worker_id)
        self.state.processes[worker_id] = tracked
        logger.info(f"Worker {worker_id}: tracking {os.path.basename(tracked.program)} (PID {tracked.handle.pid})")
        self._watchers[worker_id] = asyncio.get_running_loop().create_task(
            self._watch_process(worker_id, tracked)
        )

    def untrack_process(self, worker_id: int) -> Optional[TrackedProcess]:
        watcher = self._watchers.pop(worker_id, None)
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
        return self.state.processes.pop(worker_id, None)

    async def _watch_process(self, worker_id: int, tracked: TrackedProcess) -> None:
        while tracked.handle.is_alive():
            await asyncio.sleep(self.config.poll_interval)

        if self.state.processes.get(worker_id) is not tracked:
            return

        worker = self.state.worker(worker_id)
        code = tracked.handle.exit_status()
        if worker.lifecycle_state in LIVE_STATES:
            log_event(
                self.events,
                f"Worker {worker_id} process exited with code {code}",
                logging.WARNING,
                log=logger,
            )
            self._set_state(worker, LifecycleState.CRASHED)
        else:
            logger.info(
                f"Worker {worker_id} process exited with code {code} while {worker.lifecycle_state.value}"
            )

    # -- operations ------------------------------------------------------------

    def spawn(self, worker_id: int) -> asyncio.Task:
        """Move an admitted id into the starting set and run its startup attempt."""
        self.state.starting.add(worker_id)
        task = asyncio.get_running_loop().create_task(self.start(worker_id))
        self._attempts[worker_id] = task
        return task

    async def start(self, worker_id: int) -> bool:
        """
        Run the full startup sequence for one worker.

        Returns:
            True if the worker reached Active
        """
        attempt = self._track_attempt(worker_id)
        worker = self.state.worker(worker_id)
        log_event(self.events, f"Starting worker {worker_id}", log=logger)

        self.state.starting.add(worker_id)
        self._set_state(worker, LifecycleState.INITIALIZING)

        try:
            credential = self.credentials.for_worker(worker_id)
            if credential is None:
                log_event(
                    self.events,
                    f"ERROR: No credential available for worker {worker_id}. Check the credentials file.",
                    logging.ERROR,
                    log=logger,
                )
                self.state.starting.discard(worker_id)
                self._set_state(worker, LifecycleState.CRASHED)
                return False

            worker.assigned_credential = credential
            log_event(
                self.events, f"Using identity {credential.identity} for worker {worker_id}", log=logger
            )

            self.checkpoint(worker, LifecycleState.INITIALIZING)
            await self._setup_environment(worker)

            if self.config.bypass_agent_configured:
                await self._load_bypass_agent(worker, credential, self.config.bypass_agent_settle_delay)
            else:
                logger.info(f"Worker {worker_id}: bypass agent not configured, skipping")

            await self._delay(worker, LifecycleState.PRE_LAUNCH_DELAY, self.config.launch_delay)
            await self._launch(worker)
            await self._inject_stages(worker)

            self._mark_active(worker)
            log_event(self.events, f"Worker {worker_id} started successfully", log=logger)
            return True

        except StageAborted as e:
            self.state.starting.discard(worker_id)
            self._set_state(worker, LifecycleState.STOPPED)
            log_event(self.events, f"Worker {worker_id} startup aborted due to stop request", log=logger)
            logger.debug(str(e))
            return False

        except StageFailure as e:
            self.state.starting.discard(worker_id)
            self._set_state(worker, e.state)
            log_event(
                self.events, f"Error starting worker {worker_id}: {e}", logging.ERROR, log=logger
            )
            return False

        except Exception as e:
            self.state.starting.discard(worker_id)
            self._set_state(worker, LifecycleState.CRASHED)
            logger.error(f"Unexpected error starting worker {worker_id}: {e}", exc_info=True)
            self.events.publish(LOG_MESSAGE, f"Error starting worker {worker_id}: {e}")
            return False

        finally:
            if worker.lifecycle_state is not LifecycleState.ACTIVE:
                worker.stop_requested = False
            self._release_attempt(worker_id, attempt)

    async def relaunch(self, worker_id: int) -> bool:
        """
        Replay the environment, bypass, launch and injection stages after a crash.

        Runs outside the admission queue. The credential stored by the first
        start is reused; without one the bypass agent stage is skipped.

        Returns:
            True if the worker is Active again
        """
        attempt = self._track_attempt(worker_id)
        worker = self.state.worker(worker_id)
        credential = worker.assigned_credential

        self._set_state(worker, LifecycleState.INITIALIZING)
        self.state.active.add(worker_id)

        try:
            await self._setup_environment(worker)

            if credential is not None and self.config.bypass_agent_configured:
                await self._load_bypass_agent(worker, credential, self.config.restart_bypass_settle)
            else:
                logger.info(f"Worker {worker_id}: no stored credential, skipping bypass agent")

            await self._launch(worker)
            await self._inject_stages(worker)

            self._set_state(worker, LifecycleState.ACTIVE)
            self.publish_quota()
            return True

        except StageAborted:
            self.state.active.discard(worker_id)
            self._set_state(worker, LifecycleState.STOPPED)
            log_event(self.events, f"Worker {worker_id} restart aborted due to stop request", log=logger)
            return False

        except StageFailure as e:
            self.state.active.discard(worker_id)
            self._set_state(worker, e.state)
            log_event(
                self.events, f"Failed to restart worker {worker_id}: {e}", logging.ERROR, log=logger
            )
            return False

        except Exception as e:
            self.state.active.discard(worker_id)
            self._set_state(worker, LifecycleState.CRASHED)
            logger.error(f"Unexpected error restarting worker {worker_id}: {e}", exc_info=True)
            self.events.publish(LOG_MESSAGE, f"Failed to restart worker {worker_id}: {e}")
            return False

        finally:
            self._release_attempt(worker_id, attempt)

    async def _terminate(self, worker_id: int) -> bool:
        try:
            return await self.environment.terminate_all(worker_id)
        except Exception as e:
            logger.error(f"Error terminating environment for worker {worker_id}: {e}")
            return False

    async def stop(self, worker_id: int) -> bool:
        """
        Stop a queued, starting or active worker.

        The worker always ends Stopped; the return value only reports whether
        termination of its environment fully succeeded.
        """
        worker = self.state.worker(worker_id)
        log_event(self.events, f"Stopping worker {worker_id}", log=logger)
        worker.stop_requested = True

        if worker_id in self.state.queue:
            self.state.queue.remove(worker_id)
            worker.stop_requested = False
            self._set_state(worker, LifecycleState.STOPPED)
            self.events.publish(QUEUE_UPDATE, self.state.queue_snapshot())
            logger.info(f"Removed worker {worker_id} from queue")
            return True

        if worker_id in self.state.starting:
            phase = "during startup"
        elif worker_id in self.state.active:
            phase = "while active"
            self.state.restarting.discard(worker_id)
            self.untrack_process(worker_id)
        else:
            logger.warning(f"Cannot stop worker {worker_id} - not queued, starting, or active")
            if not self.has_live_attempt(worker_id):
                worker.stop_requested = False
            return False

        # The id keeps its slot (and its concurrency gate) until the attempt settles
        self.state.stopping.add(worker_id)
        try:
            result = await self._terminate(worker_id)
            settled = await self._await_attempt(worker_id)
            result = await self._terminate_late_launch(worker_id, result)
        finally:
            self.state.starting.discard(worker_id)
            self.state.active.discard(worker_id)
            self.state.stopping.discard(worker_id)

        self._set_state(worker, LifecycleState.STOPPED)
        self.publish_quota()
        self._log_stopped(worker_id, phase, result)
        if settled:
            worker.stop_requested = False
        return result

    async def _terminate_late_launch(self, worker_id: int, result: bool) -> bool:
        """Terminate again if the attempt launched a process after the first termination."""
        tracked = self.untrack_process(worker_id)
        if tracked is not None and tracked.handle.is_alive():
            logger.info(f"Worker {worker_id}: process launched during stop, terminating again")
            return await self._terminate(worker_id)
        return result

    def _log_stopped(self, worker_id: int, phase: str, fully_terminated: bool) -> None:
        if fully_terminated:
            log_event(self.events, f"Stopped worker {worker_id} {phase}", log=logger)
        else:
            log_event(
                self.events,
                f"Stopped worker {worker_id} {phase} (partial termination)",
                logging.WARNING,
                log=logger,
            )

    async def stop_all(self) -> bool:
        """
        Stop every queued, starting and active worker.

        Latches the global stop for the duration so no checkpoint can pass,
        and always converges; partial terminations are reported, not raised.
        """
        queued: List[int] = list(self.state.queue)
        running = sorted(self.state.active | self.state.starting)

        self.state.queue.clear()
        self.state.global_stop = True
        try:
            log_event(
                self.events, f"Stopping all {len(queued) + len(running)} workers...", log=logger
            )

            for worker_id in queued:
                self._set_state(self.state.worker(worker_id), LifecycleState.STOPPED)
            self.events.publish(QUEUE_UPDATE, self.state.queue_snapshot())

            for worker_id in running:
                self.state.worker(worker_id).stop_requested = True

            if not running:
                log_event(self.events, "No active workers to stop", log=logger)
                return True

            logger.info(f"Waiting for {len(running)} workers to stop...")
            results = await asyncio.gather(
                *(self.stop(worker_id) for worker_id in running), return_exceptions=True
            )
            for worker_id, result in zip(running, results):
                if isinstance(result, Exception):
                    logger.error(f"Error stopping worker {worker_id}: {result}")

            success_count = sum(1 for result in results if result is True) + len(queued)
            partial_count = len(results) - sum(1 for result in results if result is True)
            log_event(
                self.events,
                f"All workers stopped: {success_count} successful, {partial_count} partial",
                log=logger,
            )
            return True
        finally:
            self.state.global_stop = False

    async def close(self) -> None:
        """Cancel process watchers and any attempt still running."""
        pending = list(self._watchers.values()) + list(self._attempts.values())
        for task in pending:
            if not task.done():
                task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._watchers.clear()
        self._attempts.clear()
