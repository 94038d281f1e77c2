"""Content event publishing.

Content changes (forum posts and comments, kata/ohyo edits, likes and
favorites) are wrapped in an ``EventEnvelope`` and handed to a publisher:
Redis Streams for downstream consumers, the built-in WebSocket endpoint for
connected clients, or nothing at all.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal, cast

import orjson
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential, wait_fixed

from .metrics import CONTENT_EVENTS

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import redis.asyncio as redis

    from ..api.server import ApiServer
    from .config import EventsConfig

type ObjectType = Literal[
    "forum_post", "forum_comment", "kata", "ohyo", "kata_comment", "ohyo_comment", "like", "favorite"
]
type EventType = Literal["created", "updated", "deleted", "toggled"]

log = logging.getLogger("publisher")


def _now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


@dataclass
class EventEnvelope:
    schema: str
    type: str
    object_type: str
    object_id: int | str
    actor_id: str | None
    time: int
    source: str
    payload: dict[str, Any]

    def to_json_bytes(self) -> bytes:
        return orjson.dumps(asdict(self), default=str)


class Publisher:
    async def publish(self, envelope: EventEnvelope) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        """Release underlying resources. No-op by default."""
        return


class NoopPublisher(Publisher):
    async def publish(self, envelope: EventEnvelope) -> None:
        return


class RecordingPublisher(Publisher):
    """Keeps envelopes in memory; handy for tests and local debugging."""

    def __init__(self) -> None:
        self.events: list[EventEnvelope] = []

    async def publish(self, envelope: EventEnvelope) -> None:
        self.events.append(envelope)


class WebSocketPublisher(Publisher):
    """Broadcasts envelopes to the clients connected to the API server.

    Messages go through a bounded queue drained by a background task; when
    the queue is full the oldest message is dropped. Messages that find no
    subscriber are kept at the head of the queue and retried later.
    """

    def __init__(self, *, server: ApiServer | None, events_config: EventsConfig) -> None:
        if server is None:
            raise ValueError("WebSocketPublisher requires an existing ApiServer instance")

        self.timeout_ms = events_config.timeout_ms
        self.max_retries = events_config.max_retries
        self.retry_backoff_ms = events_config.retry_backoff_ms
        self.queue_capacity = events_config.max_len

        self._server = server

        self._queue: deque[str] = deque()
        self._queue_lock = asyncio.Lock()
        self._message_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._worker_task: asyncio.Task[None] | None = None

    def _ensure_worker(self) -> None:
        if self._worker_task is not None and not self._worker_task.done():
            return
        self._worker_task = asyncio.get_running_loop().create_task(self._worker_loop())

    async def _enqueue(self, message: str) -> None:
        if self._stop_event.is_set():
            log.warning("WebSocketPublisher is closed; dropping message")
            return

        dropped = False
        async with self._queue_lock:
            if len(self._queue) >= self.queue_capacity:
                self._queue.popleft()
                dropped = True
            self._queue.append(message)
            self._message_event.set()

        if dropped:
            log.warning("WebSocketPublisher queue full; dropped oldest message")

    async def _next_message(self) -> str | None:
        while True:
            async with self._queue_lock:
                if self._queue:
                    return self._queue.popleft()
                if self._stop_event.is_set():
                    return None
                self._message_event.clear()
            await self._message_event.wait()

    async def _requeue_front(self, message: str) -> None:
        if self._stop_event.is_set():
            return
        async with self._queue_lock:
            if len(self._queue) >= self.queue_capacity:
                log.warning("WebSocketPublisher queue full; dropping message on requeue")
                return
            self._queue.appendleft(message)
            self._message_event.set()

    async def _send_with_retry(self, message: str) -> bool:
        base_wait = max(self.retry_backoff_ms, 10) / 1000.0
        max_wait = max(self.timeout_ms / 1000.0, base_wait)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=wait_exponential(multiplier=base_wait, min=base_wait, max=max_wait),
                retry=retry_if_exception_type(Exception),
                reraise=True,
            ):
                with attempt:
                    return await self._server.broadcast_text(message)
        except Exception as e:
            log.exception("Failed to broadcast message after %d attempts: %s", self.max_retries, e)
        return False

    async def _worker_loop(self) -> None:
        log.debug("WebSocketPublisher worker started")
        try:
            while True:
                message = await self._next_message()
                if message is None:
                    break
                if await self._send_with_retry(message):
                    continue
                if self._stop_event.is_set():
                    break
                await self._requeue_front(message)
                await asyncio.sleep(max(self.retry_backoff_ms, 10) / 1000.0)
        finally:
            log.debug("WebSocketPublisher worker stopped")

    async def publish(self, envelope: EventEnvelope) -> None:
        self._ensure_worker()
        await self._enqueue(envelope.to_json_bytes().decode("utf-8"))

    async def close(self) -> None:
        self._stop_event.set()
        self._message_event.set()
        if self._worker_task is not None:
            try:
                await asyncio.wait_for(self._worker_task, timeout=max(self.timeout_ms, 100) / 1000.0)
            except TimeoutError:
                self._worker_task.cancel()
                log.warning("WebSocketPublisher worker did not stop in time; cancelled")
            finally:
                self._worker_task = None


class RedisStreamsPublisher(Publisher):
    """Appends envelopes to ``{prefix}:{object_type}`` Redis streams."""

    def __init__(self, redis_client: redis.Redis, *, events_config: EventsConfig) -> None:
        self.redis = redis_client
        self.stream_prefix = events_config.stream_prefix
        self.maxlen = events_config.max_len
        self.max_retries = events_config.max_retries
        self.retry_backoff_ms = events_config.retry_backoff_ms

    async def _retry(self, func: Callable[[], Awaitable[Any]], *, fail_log_msg: str) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=wait_fixed(max(self.retry_backoff_ms, 0) / 1000.0),
                retry=retry_if_exception_type(Exception),
                reraise=True,
            ):
                with attempt:
                    return await func()
        except Exception as e:
            log.exception("%s after %d attempts: %s", fail_log_msg, self.max_retries, e)
            raise

    async def publish(self, envelope: EventEnvelope) -> None:
        stream = f"{self.stream_prefix}:{envelope.object_type}"
        entry = {"data": envelope.to_json_bytes()}

        await self._retry(
            lambda: self.redis.xadd(stream, cast("Any", entry), maxlen=self.maxlen),
            fail_log_msg=f"Failed to publish to stream={stream}",
        )


def build_envelope(
    object_type: ObjectType,
    event_type: EventType,
    object_id: int | str,
    payload: dict[str, Any],
    *,
    actor_id: str | None = None,
) -> EventEnvelope:
    return EventEnvelope(
        schema=f"karatapp.{object_type}.v1",
        type=event_type,
        object_type=object_type,
        object_id=object_id,
        actor_id=actor_id,
        time=_now_ms(),
        source="karatapp",
        payload=payload,
    )


async def emit(
    publisher: Publisher | None,
    object_type: ObjectType,
    event_type: EventType,
    object_id: int | str,
    payload: dict[str, Any],
    *,
    actor_id: str | None = None,
) -> None:
    """Build and publish an envelope.

    Publishing failures are logged; the content change they describe has
    already been committed.
    """
    if publisher is None:
        return
    envelope = build_envelope(object_type, event_type, object_id, payload, actor_id=actor_id)
    try:
        await publisher.publish(envelope)
    except Exception as e:
        log.error("Failed to publish %s.%s event for %s: %s", object_type, event_type, object_id, e)
        return
    CONTENT_EVENTS.labels(object_type=object_type, event=event_type).inc()
