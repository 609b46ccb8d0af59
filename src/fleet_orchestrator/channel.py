"""
Duplex Message Channel

Accepts inbound connections from workers over a unix socket (or TCP),
reassembles newline-delimited frames, binds each connection to the worker id
declared in its first frame, relays worker telemetry to the event sink and
delivers outbound frames through a per-worker queue with backpressure.

Recovery is not triggered here: a disconnect only updates pipe state. The
health monitor decides whether a disconnected worker needs a restart.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .config import FleetConfig
from .errors import ProtocolViolation
from .events import (
    STATUS_UPDATE,
    WORKER_UPDATE,
    EventSink,
    heartbeat_payload,
    log_event,
)
from .logging_utils import mask_dict
from .models import LIVE_STATES, MESSAGE_FIELDS, LifecycleState, PipeState, TelemetryField
from .protocol import (
    COMMAND,
    COMMAND_RESPONSE,
    LOCAL_BOT,
    Frame,
    FrameBuffer,
    format_frame,
    parse_frame,
)
from .state import FleetState

logger = logging.getLogger(__name__)

READ_SIZE = 4096


class ChannelConnection(Protocol):
    """Transport for one worker connection."""

    @property
    def writable(self) -> bool: ...

    def write(self, data: bytes) -> bool:
        """Write data, or return False without writing if the transport cannot accept more now."""
        ...

    async def wait_writable(self) -> None: ...

    def close(self) -> None: ...


class StreamConnection:
    """ChannelConnection over an asyncio stream pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    @property
    def writable(self) -> bool:
        return not self.writer.transport.is_closing()

    def write(self, data: bytes) -> bool:
        transport = self.writer.transport
        if transport.is_closing():
            return False
        _, high = transport.get_write_buffer_limits()
        if transport.get_write_buffer_size() > high:
            return False
        self.writer.write(data)
        return True

    async def wait_writable(self) -> None:
        await self.writer.drain()

    def close(self) -> None:
        self.writer.transport.abort()

    def __repr__(self) -> str:
        return f"StreamConnection(peer={self.writer.get_extra_info('peername')!r})"


@dataclass
class ChannelSession:
    """Per-connection read state; the bound worker id is fixed by the first frame."""

    connection: Any
    buffer: FrameBuffer = field(default_factory=FrameBuffer)
    worker_id: Optional[int] = None


def _parse_health(value: str) -> int:
    digits = ""
    for char in value.strip():
        if char.isdigit() or (char == "-" and not digits):
            digits += char
        else:
            break
    try:
        return int(digits)
    except ValueError:
        return 0


def parse_address(address: str) -> Tuple[Optional[str], Optional[int], Optional[str]]:
    """
    Split a channel address into (host, port, unix_path).

    ``host:port`` listens on TCP, anything else is a unix socket path.
    """
    host, sep, port = address.rpartition(":")
    if sep and port.isdigit() and "/" not in address:
        return host or "127.0.0.1", int(port), None
    return None, None, address


class DuplexChannel:
    """
    Channel server and connection registry operations.

    The registry itself (``state.connections``) and the outbound queues
    (``state.outbound``) live in FleetState.
    """

    def __init__(self, state: FleetState, events: EventSink):
        self.state = state
        self.events = events
        self._server: Optional[asyncio.AbstractServer] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._resume_tasks: Dict[int, asyncio.Task] = {}
        self._disconnect_timers: Dict[int, asyncio.TimerHandle] = {}
        self._client_tasks: set = set()
        self.reconnect_attempts = 0
        self.running = False

    @property
    def config(self) -> FleetConfig:
        return self.state.config

    # -- listener ------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start listening. Failures schedule a backoff restart instead of raising.

        Returns:
            True if the listener is up
        """
        self.running = True
        address = self.config.channel_address
        host, port, path = parse_address(address)

        try:
            if path is not None:
                if os.path.exists(path):
                    os.unlink(path)
                self._server = await asyncio.start_unix_server(self._handle_client, path=path)
            else:
                self._server = await asyncio.start_server(self._handle_client, host, port)
        except OSError as e:
            self._on_server_error(e)
            return False

        log_event(self.events, f"Channel server listening on {address}", log=logger)
        self.reconnect_attempts = 0
        self._serve_task = asyncio.create_task(self._serve(self._server))
        return True

    async def _serve(self, server: asyncio.AbstractServer) -> None:
        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._on_server_error(e)

    def _on_server_error(self, error: BaseException) -> None:
        log_event(self.events, f"Channel server error: {error}", logging.ERROR, log=logger)
        self._close_server()

        if not self.running:
            return

        if self.reconnect_attempts < self.config.listener_max_attempts:
            delay = self.config.listener_backoff_base * (
                self.config.listener_backoff_factor ** self.reconnect_attempts
            )
            self.reconnect_attempts += 1
            log_event(
                self.events,
                f"Restarting channel server in {delay:.1f}s "
                f"(attempt {self.reconnect_attempts}/{self.config.listener_max_attempts})",
                log=logger,
            )
            self._restart_task = asyncio.get_running_loop().create_task(self._restart_after(delay))
        else:
            log_event(
                self.events,
                "Maximum channel server restart attempts reached. Please restart the orchestrator.",
                logging.ERROR,
                log=logger,
            )

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.running:
            await self.start()

    def _close_server(self) -> None:
        if self._server is not None:
            try:
                self._server.close()
            except Exception as e:
                logger.error(f"Error closing channel server: {e}")
            self._server = None

    async def stop(self) -> None:
        """Stop listening and drop every connection."""
        self.running = False
        server = self._server
        self._close_server()

        if self._restart_task and not self._restart_task.done():
            self._restart_task.cancel()

        for handle in self._disconnect_timers.values():
            handle.cancel()
        self._disconnect_timers.clear()

        for task in self._resume_tasks.values():
            task.cancel()
        self._resume_tasks.clear()

        for connection in list(self.state.connections.values()):
            self._close_connection(connection)

        clients = [t for t in self._client_tasks if not t.done()]
        for task in clients:
            task.cancel()
        if clients:
            await asyncio.gather(*clients, return_exceptions=True)

        for task in (self._restart_task, self._serve_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if server is not None:
            await server.wait_closed()

        logger.info("Channel server stopped")

    # -- inbound -------------------------------------------------------------

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._client_tasks.add(task)
            task.add_done_callback(self._client_tasks.discard)

        session = ChannelSession(connection=StreamConnection(reader, writer))
        log_event(self.events, "Channel connection established", log=logger)

        had_error = False
        try:
            while True:
                data = await reader.read(READ_SIZE)
                if not data:
                    self.handle_end(session)
                    break
                self.feed(session, data)
        except asyncio.CancelledError:
            pass
        except (ConnectionError, OSError) as e:
            had_error = True
            self.handle_error(session, e)
        finally:
            self.handle_close(session, had_error)
            writer.close()

    def feed(self, session: ChannelSession, data: bytes) -> None:
        """Process raw bytes read from a connection."""
        try:
            lines = session.buffer.feed(data)
        except Exception as e:
            log_event(self.events, f"Error processing channel data: {e}", logging.ERROR, log=logger)
            return

        for line in lines:
            try:
                self.process_line(session, line)
            except ProtocolViolation as e:
                log_event(self.events, f"Warning: {e}", logging.WARNING, log=logger)
            except Exception as e:
                logger.error(f"Error processing channel message {line!r}: {e}", exc_info=True)

    def process_line(self, session: ChannelSession, line: str) -> None:
        logger.debug(f"Received data from channel: {line}")
        frame = parse_frame(line)

        if session.worker_id is None:
            session.worker_id = frame.worker_id
            self.register(frame.worker_id, session.connection)

        if frame.worker_id != session.worker_id:
            raise ProtocolViolation(
                f"Received message for worker {frame.worker_id} on stream for worker {session.worker_id}"
            )

        self.handle_message(frame)

    def register(self, worker_id: int, connection: Any) -> None:
        """Bind a connection to a worker id; the newest registration wins."""
        existing = self.state.connections.get(worker_id)
        if existing is not None and existing is not connection:
            log_event(
                self.events,
                f"Worker {worker_id} already connected with a different stream. Closing old connection.",
                logging.WARNING,
                log=logger,
            )
            self._cancel_resume(worker_id)
            self._close_connection(existing)

        timer = self._disconnect_timers.pop(worker_id, None)
        if timer is not None:
            timer.cancel()

        worker = self.state.worker(worker_id)
        self.state.connections[worker_id] = connection
        worker.pipe_state = PipeState.CONNECTED
        worker.last_heartbeat_at = self._now()

        managed = (
            worker_id in self.state.starting
            or worker_id in self.state.active
            or worker_id in self.state.restarting
        )
        if not managed:
            worker.lifecycle_state = LifecycleState.CONNECTED

        log_event(self.events, f"Worker {worker_id} registered and connected", log=logger)
        self.events.publish(STATUS_UPDATE, self.state.status_payload(worker_id))

        pending = len(self.state.outbound_queue(worker_id))
        if pending:
            logger.info(f"Worker {worker_id}: delivering {pending} deferred frames")
            self.process_queue(worker_id)

    def handle_message(self, frame: Frame) -> None:
        worker_id = frame.worker_id
        worker = self.state.worker(worker_id)
        worker.last_heartbeat_at = self._now()
        heartbeat = heartbeat_payload(worker.last_heartbeat_at)

        logger.debug(
            f"Worker {worker_id} message: Type='{frame.message_type}', Value='{frame.value}'"
        )

        known = MESSAGE_FIELDS.get(frame.message_type)
        if known is not None:
            value: Any = frame.value
            if known is TelemetryField.HEALTH:
                value = _parse_health(frame.value)
            worker.telemetry.set_known(known, value)
            self.events.publish(
                WORKER_UPDATE,
                {"workerId": worker_id, known.value: value, "lastHeartbeat": heartbeat},
            )
        elif frame.message_type == COMMAND_RESPONSE:
            log_event(
                self.events, f"Command response from worker {worker_id}: {frame.value}", log=logger
            )
        elif frame.message_type == LOCAL_BOT:
            self.relay_local_bot(worker_id, frame.value)
        else:
            key = frame.message_type.lower()
            worker.telemetry.set_extra(key, frame.value)
            # free-form types may carry secrets; only the local record keeps the raw value
            self.events.publish(
                WORKER_UPDATE,
                mask_dict({"workerId": worker_id, key: frame.value, "lastHeartbeat": heartbeat}),
            )

        self.events.publish(STATUS_UPDATE, self.state.status_payload(worker_id))

    def relay_local_bot(self, source_id: int, value: str) -> Tuple[int, int]:
        """
        Relay a LocalBot broadcast to every other connected worker.

        Returns:
            (success_count, fail_count)
        """
        if not value:
            log_event(
                self.events,
                f"Invalid LocalBot message value from worker {source_id}",
                logging.ERROR,
                log=logger,
            )
            return 0, 0

        targets = [
            (wid, conn) for wid, conn in self.state.connections.items() if wid != source_id
        ]
        if not targets:
            logger.info(f"No other workers connected to forward message from worker {source_id}")
            return 0, 0

        frame = format_frame(source_id, LOCAL_BOT, value)
        success_count = 0
        fail_count = 0
        for target_id, connection in targets:
            try:
                if connection is not None and connection.writable:
                    self.queue_frame(target_id, frame)
                    success_count += 1
                else:
                    fail_count += 1
                    logger.warning(f"Invalid stream for worker {target_id}")
            except Exception as e:
                fail_count += 1
                logger.error(f"Error forwarding to worker {target_id}: {e}")

        log_event(
            self.events,
            f"Worker {source_id} broadcasted its ID: {value} "
            f"(Success: {success_count}, Failed: {fail_count})",
            log=logger,
        )
        return success_count, fail_count

    # -- outbound ------------------------------------------------------------

    def send_command(self, worker_id: int, command: str) -> bool:
        """
        Queue a Command frame for one worker.

        Returns:
            True if the frame was written immediately, False if the worker is
            not connected or the frame is waiting for buffer space
        """
        connection = self.state.connections.get(worker_id)
        if connection is None or not connection.writable:
            logger.error(f"Cannot send command - worker {worker_id} not connected")
            return False

        try:
            result = self.queue_frame(worker_id, format_frame(worker_id, COMMAND, command))
        except Exception as e:
            logger.error(f"Error sending command to worker {worker_id}: {e}")
            return False

        log_event(self.events, f"Sent command to worker {worker_id}: {command}", log=logger)
        return result

    def send_command_to_all(self, command: str) -> Dict[str, Any]:
        """Queue a Command frame for every connected worker."""
        log_event(self.events, f"Sending command to all workers: {command}", log=logger)

        results: List[Dict[str, Any]] = []
        success_count = 0
        for worker_id, connection in list(self.state.connections.items()):
            if connection is None or not connection.writable:
                continue
            try:
                if self.queue_frame(worker_id, format_frame(worker_id, COMMAND, command)):
                    success_count += 1
                    results.append({"workerId": worker_id, "success": True})
                else:
                    results.append(
                        {
                            "workerId": worker_id,
                            "success": False,
                            "error": "Message queued, waiting for buffer space",
                        }
                    )
                    logger.warning(f"Command queued for worker {worker_id}: {command}")
            except Exception as e:
                results.append({"workerId": worker_id, "success": False, "error": str(e)})
                logger.error(f"Error sending command to worker {worker_id}: {e}")

        log_event(self.events, f"Command sent to {success_count} workers: {command}", log=logger)
        return {"successCount": success_count, "results": results}

    def queue_frame(self, worker_id: int, frame: str) -> bool:
        self.state.outbound_queue(worker_id).append(frame)
        return self.process_queue(worker_id)

    def process_queue(self, worker_id: int) -> bool:
        """
        Drain the worker's outbound queue head-first.

        Stops at the first frame the transport refuses, leaving it at the head
        and arming a one-shot resume for when the transport is writable again.

        Returns:
            True if the queue is now empty
        """
        queue = self.state.outbound_queue(worker_id)
        if not queue:
            return True

        connection = self.state.connections.get(worker_id)
        if connection is None or not connection.writable:
            logger.error(f"Cannot process message queue - worker {worker_id} not connected")
            return False

        while queue:
            if connection.write(queue[0].encode("utf-8")):
                queue.popleft()
            else:
                self._arm_resume(worker_id, connection)
                return False
        return True

    def _arm_resume(self, worker_id: int, connection: Any) -> None:
        if worker_id in self._resume_tasks:
            return
        task = asyncio.get_running_loop().create_task(self._resume_when_writable(worker_id, connection))
        self._resume_tasks[worker_id] = task

    async def _resume_when_writable(self, worker_id: int, connection: Any) -> None:
        try:
            await connection.wait_writable()
        except (ConnectionError, OSError) as e:
            logger.warning(f"Worker {worker_id}: transport failed while waiting to resume: {e}")
            return
        finally:
            if self._resume_tasks.get(worker_id) is asyncio.current_task():
                del self._resume_tasks[worker_id]

        if self.state.connections.get(worker_id) is connection:
            self.process_queue(worker_id)

    def _cancel_resume(self, worker_id: int) -> None:
        task = self._resume_tasks.pop(worker_id, None)
        if task is not None and not task.done():
            task.cancel()

    # -- disconnects ---------------------------------------------------------

    def handle_end(self, session: ChannelSession) -> None:
        worker_id = session.worker_id
        label = worker_id if worker_id is not None else "unknown"
        log_event(self.events, f"Channel connection ended gracefully by worker {label}", log=logger)

        if worker_id is None:
            return

        if not self.handle_disconnect(worker_id, session.connection, PipeState.DISCONNECTED):
            return

        previous = self._disconnect_timers.pop(worker_id, None)
        if previous is not None:
            previous.cancel()
        self._disconnect_timers[worker_id] = asyncio.get_running_loop().call_later(
            self.config.reconnect_notice_after, self._reconnect_notice, worker_id
        )

    def _reconnect_notice(self, worker_id: int) -> None:
        self._disconnect_timers.pop(worker_id, None)
        if worker_id not in self.state.connections:
            log_event(
                self.events,
                f"Worker {worker_id} did not reconnect within timeout period",
                log=logger,
            )

    def handle_error(self, session: ChannelSession, error: BaseException) -> None:
        worker_id = session.worker_id
        label = worker_id if worker_id is not None else "unknown"
        log_event(
            self.events, f"Channel stream error for worker {label}: {error}", logging.ERROR, log=logger
        )

        if worker_id is not None:
            worker = self.state.worker(worker_id)
            if self.state.connections.get(worker_id) is session.connection:
                if worker.lifecycle_state in LIVE_STATES:
                    worker.lifecycle_state = LifecycleState.CRASHED
                self.handle_disconnect(worker_id, session.connection, PipeState.DISCONNECTED_ERROR)

        self._close_connection(session.connection)

    def handle_close(self, session: ChannelSession, had_error: bool) -> None:
        worker_id = session.worker_id
        label = worker_id if worker_id is not None else "unknown"
        logger.info(f"Channel stream closed for worker {label}. Had error: {had_error}")

        if worker_id is not None and not had_error:
            self.handle_disconnect(worker_id, session.connection, PipeState.DISCONNECTED_CLOSED)

    def handle_disconnect(self, worker_id: int, connection: Any, pipe_state: PipeState) -> bool:
        """
        Clear the registry entry if it still refers to this connection.

        Closures of stale connections (already replaced) are ignored.

        Returns:
            True if the registry entry was cleared
        """
        if self.state.connections.get(worker_id) is not connection:
            return False

        del self.state.connections[worker_id]
        self._cancel_resume(worker_id)
        worker = self.state.worker(worker_id)
        worker.pipe_state = pipe_state

        self.events.publish(STATUS_UPDATE, self.state.status_payload(worker_id))
        logger.info(f"Worker {worker_id} disconnected: {pipe_state.value}")
        return True

    def _close_connection(self, connection: Any) -> None:
        try:
            connection.close()
        except Exception as e:
            logger.error(f"Error destroying stream: {e}")

    @staticmethod
    def _now() -> float:
        return time.time()
