"""
Event sinks.

The orchestration core only needs ``publish(event_name, payload)``. Publishing
is fire-and-forget: a sink must never block the caller and must never raise
into it.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

import redis.asyncio as redis

from .logging_utils import mask_connection_string

logger = logging.getLogger(__name__)

# Event names
STATUS_UPDATE = "statusUpdate"
LOG_MESSAGE = "logMessage"
QUEUE_UPDATE = "queueUpdate"
QUOTA_UPDATE = "quotaUpdate"
AUTO_RESTART_STATE = "autoRestartState"
WORKER_UPDATE = "workerUpdate"
ADMISSION_REJECTED = "admissionRejected"


class EventSink(Protocol):
    """Receives status/log/telemetry events for fan-out to observers."""

    def publish(self, event_name: str, payload: Any) -> None: ...


EventCallback = Callable[[str, Any], None]


class MemoryEventSink:
    """
    In-process sink that records events and fans them out to subscribers.

    A failing subscriber is logged and skipped; the rest still receive the event.
    """

    def __init__(self, history_limit: int = 1000):
        self.history_limit = history_limit
        self.events: List[Tuple[str, Any]] = []
        self._subscribers: List[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event_name: str, payload: Any) -> None:
        self.events.append((event_name, payload))
        if len(self.events) > self.history_limit:
            del self.events[: len(self.events) - self.history_limit]

        for callback in list(self._subscribers):
            try:
                callback(event_name, payload)
            except Exception as e:
                logger.error(f"Event subscriber failed for {event_name}: {e}", exc_info=True)

    def of_type(self, event_name: str) -> List[Any]:
        """Payloads of every recorded event with the given name."""
        return [payload for name, payload in self.events if name == event_name]

    def clear(self) -> None:
        self.events.clear()


class RedisEventSink:
    """
    Publish events to Redis Pub/Sub for client consumption.

    Each event goes to channel ``<prefix>:<event_name>`` as JSON. Publishes are
    scheduled as tasks on the running loop so ``publish`` returns immediately;
    publish failures are logged, never raised.
    """

    def __init__(self, redis_url: str, channel_prefix: str = "fleet"):
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self.redis_client: Optional[redis.Redis] = None
        self._pending: Set[asyncio.Task] = set()

    async def connect(self) -> None:
        self.redis_client = redis.from_url(
            self.redis_url, encoding="utf-8", decode_responses=True
        )
        await self.redis_client.ping()
        logger.info(f"Event sink connected to {mask_connection_string(self.redis_url)}")

    def publish(self, event_name: str, payload: Any) -> None:
        if self.redis_client is None:
            logger.debug(f"Event sink not connected, dropping {event_name}")
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, dropping {event_name}")
            return

        task = loop.create_task(self._publish(event_name, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, event_name: str, payload: Any) -> None:
        channel = f"{self.channel_prefix}:{event_name}"
        message = {"event": event_name, "payload": payload, "timestamp": time.time()}
        try:
            await self.redis_client.publish(channel, json.dumps(message, default=str))
        except Exception as e:
            logger.error(f"Error publishing {event_name} to {channel}: {e}")

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None


class FanoutEventSink:
    """Publish every event to several sinks."""

    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def publish(self, event_name: str, payload: Any) -> None:
        for sink in self.sinks:
            try:
                sink.publish(event_name, payload)
            except Exception as e:
                logger.error(f"Sink {type(sink).__name__} failed for {event_name}: {e}")


def log_event(sink: EventSink, message: str, level: int = logging.INFO, log: Optional[logging.Logger] = None) -> None:
    """Log a progress line and surface it to observers as a logMessage event."""
    (log or logger).log(level, message)
    sink.publish(LOG_MESSAGE, message)


def heartbeat_payload(last_heartbeat_at: Optional[float]) -> Optional[Dict[str, Any]]:
    if last_heartbeat_at is None:
        return None
    return {
        "timestamp": last_heartbeat_at,
        "secondsAgo": max(0, int(time.time() - last_heartbeat_at)),
    }
