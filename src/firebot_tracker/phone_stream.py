"""Phone GPS push stream: in-process relay, SSE transport and the source adapter."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from typing import AsyncIterator, Callable

import httpx

from .models import PhoneFix, SourceKind, SourceSink, parse_phone_message

logger = logging.getLogger(__name__)

MessageStream = Callable[[], AsyncIterator[str]]


class PhoneFixHub:
    """Fans out fixes posted by the companion phone to every stream subscriber."""

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[str]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, fix: PhoneFix) -> int:
        message = json.dumps({"type": "fix", "fix": fix.model_dump()}, separators=(",", ":"))
        for queue in list(self._subscribers):
            if queue.full():
                # Slow subscriber: drop its oldest message.
                queue.get_nowait()
            queue.put_nowait(message)
        return len(self._subscribers)

    async def subscribe(self) -> AsyncIterator[str]:
        queue: asyncio.Queue[str] = asyncio.Queue(self._queue_size)
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)


async def sse_messages(client: httpx.AsyncClient, url: str) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each server-sent event from ``url``."""
    headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
    async with client.stream("GET", url, headers=headers, timeout=None) as response:
        response.raise_for_status()
        data_lines: list[str] = []
        async for line in response.aiter_lines():
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip(" "))
            elif not line.strip():
                if data_lines:
                    yield "\n".join(data_lines)
                data_lines = []


class PhoneStreamSource:
    """Best-effort subscriber to the phone fix stream.

    Malformed messages are dropped without a trace beyond a debug log. When the
    transport ends or fails, the subscription is re-opened with exponential
    backoff; the source never disables itself.
    """

    kind = SourceKind.PHONE

    def __init__(
        self,
        subscribe: MessageStream,
        sink: SourceSink,
        *,
        reconnect_initial_sec: float = 1.0,
        reconnect_max_sec: float = 30.0,
    ) -> None:
        self._subscribe = subscribe
        self._sink = sink
        self._reconnect_initial_sec = reconnect_initial_sec
        self._reconnect_max_sec = reconnect_max_sec
        self._task: asyncio.Task | None = None
        self._closed = True
        self.reconnects = 0

    @property
    def active(self) -> bool:
        return not self._closed

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(self._run(), name="phone-stream")

    def stop(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        delay = self._reconnect_initial_sec
        while not self._closed:
            try:
                async with aclosing(self._subscribe()) as messages:
                    async for message in messages:
                        if self._closed:
                            return
                        if self._deliver(message):
                            delay = self._reconnect_initial_sec
                logger.info("Phone GPS stream ended; reconnecting in %.1fs", delay)
            except Exception as exc:
                logger.info("Phone GPS stream failed: %s; reconnecting in %.1fs", exc, delay)
            if self._closed:
                return
            self.reconnects += 1
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, self._reconnect_max_sec)

    def _deliver(self, message: str) -> bool:
        event = parse_phone_message(message)
        if event is None:
            logger.debug("Dropping malformed phone GPS message: %.120r", message)
            return False
        position = event.fix.to_position()
        self._sink.on_source_fix(self.kind, position.fix, position.metadata)
        return True
