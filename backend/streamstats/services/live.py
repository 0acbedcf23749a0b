"""
Live view notifications.

Accepted View events are published to `tenant:{tenant_id}` and
`tenant:{tenant_id}:video:{video_id}`. Publishing is fire-and-forget: it is
called from request or worker threads, never awaited, never blocks on Redis,
and never raises.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncGenerator, Iterable, Protocol

from fastapi import Request
from fastapi.responses import StreamingResponse

from streamstats.core.config import settings
from streamstats.services.redis_client import RedisConnector, key_prefix, redis_connector

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 30.0
SUBSCRIBER_QUEUE_SIZE = 100


def tenant_topic(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def video_topic(tenant_id: str, video_id: str) -> str:
    return f"tenant:{tenant_id}:video:{video_id}"


def topics_for(tenant_id: str, video_id: str) -> list[str]:
    return [tenant_topic(tenant_id), video_topic(tenant_id, video_id)]


class LivePublisher(Protocol):
    def publish(self, topic: str, payload: dict[str, Any]) -> None: ...


class LiveBroadcaster:
    """In-process topic fan-out to SSE subscribers."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = {}
        self._lock = threading.Lock()

    def subscriber_count(self, topic: str | None = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._subscribers.get(topic, []))
            return sum(len(items) for items in self._subscribers.values())

    async def subscribe(self, topic: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        loop = asyncio.get_running_loop()
        with self._lock:
            self._subscribers.setdefault(topic, []).append((loop, queue))
        logger.info("New live subscriber on %s, total: %s", topic, self.subscriber_count())
        return queue

    async def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        with self._lock:
            remaining = [item for item in self._subscribers.get(topic, []) if item[1] is not queue]
            if remaining:
                self._subscribers[topic] = remaining
            else:
                self._subscribers.pop(topic, None)
        logger.info("Live subscriber left %s, total: %s", topic, self.subscriber_count())

    @staticmethod
    def _offer(queue: asyncio.Queue, message: str) -> None:
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            # Slow client; drop rather than grow without bound.
            logger.debug("Live subscriber queue full; dropping message")

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        message = f"data: {json.dumps(payload, default=str)}\n\n"
        with self._lock:
            targets = list(self._subscribers.get(topic, []))
        for loop, queue in targets:
            try:
                loop.call_soon_threadsafe(self._offer, queue, message)
            except RuntimeError:
                # Subscriber's loop is closed; it will never unsubscribe itself.
                with self._lock:
                    items = self._subscribers.get(topic, [])
                    self._subscribers[topic] = [item for item in items if item[1] is not queue]


class RedisLivePublisher:
    """
    Publishes JSON payloads on `{prefix}{LIVE_REDIS_CHANNEL_PREFIX}:{topic}`.

    `publish` only enqueues; a single background thread talks to Redis, so a
    slow or unreachable server never holds up the caller. At most
    `max_pending` messages wait in the queue; extra ones are dropped.
    """

    def __init__(self, connector: RedisConnector | None = None, *, max_pending: int = 1000) -> None:
        self._connector = connector or redis_connector
        self._max_pending = max(1, int(max_pending))
        self._pending = 0
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None

    @staticmethod
    def channel_for(topic: str) -> str:
        channel_prefix = str(getattr(settings, "LIVE_REDIS_CHANNEL_PREFIX", "live") or "live")
        return f"{key_prefix()}{channel_prefix}:{topic}"

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="live-redis")
        return self._executor

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        message = json.dumps(payload, default=str)
        with self._lock:
            if self._pending >= self._max_pending:
                logger.warning("Live Redis queue full (%s pending); dropping message for %s", self._pending, topic)
                return
            self._pending += 1
            try:
                self._get_executor().submit(self._send, topic, message)
            except RuntimeError:
                self._pending -= 1
                logger.debug("Live Redis publisher is shut down; dropping message for %s", topic)

    def _send(self, topic: str, message: str) -> None:
        try:
            r = self._connector.get()
            if r is None:
                logger.debug("Live publish to %s skipped (Redis unavailable)", topic)
                return
            r.publish(self.channel_for(topic), message)
        except Exception as e:
            logger.warning("Live publish to %s via Redis failed: %s", topic, e)
        finally:
            with self._lock:
                self._pending -= 1

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)


class FanoutPublisher:
    """Publishes to every target; failures are logged and swallowed."""

    def __init__(self, publishers: Iterable[LivePublisher]) -> None:
        self.publishers = list(publishers)

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        for publisher in self.publishers:
            try:
                publisher.publish(topic, payload)
            except Exception as e:
                logger.warning("Live publish to %s via %s failed: %s", topic, type(publisher).__name__, e)


broadcaster = LiveBroadcaster()
redis_live_publisher = RedisLivePublisher()
live_publisher: LivePublisher = FanoutPublisher([broadcaster, redis_live_publisher])


async def event_generator(request: Request, topic: str, queue: asyncio.Queue) -> AsyncGenerator[str, None]:
    """Generate SSE messages for one connected client."""
    try:
        yield f"data: {json.dumps({'type': 'connected', 'topic': topic})}\n\n"

        while True:
            if await request.is_disconnected():
                break
            try:
                message = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                yield message
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
    except asyncio.CancelledError:
        pass
    finally:
        await broadcaster.unsubscribe(topic, queue)


async def stream_topic(request: Request, topic: str) -> StreamingResponse:
    queue = await broadcaster.subscribe(topic)
    return StreamingResponse(
        event_generator(request, topic, queue),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
