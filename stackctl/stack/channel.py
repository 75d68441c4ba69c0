"""Ordered single-producer, multi-consumer event stream.

Each consumer gets its own bounded queue; a slow consumer applies
backpressure to the producer instead of losing events. The producer closes
the channel after the terminal event, which ends every consumer's iteration.
Consumers attaching after events were published do not see them.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from stackctl.stack.events import LifecycleEvent

_END = object()


class Subscription:
    """One consumer's view of an EventChannel. Iterate with ``async for``."""

    def __init__(self, channel: EventChannel, maxsize: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._detached = False

    def __aiter__(self) -> AsyncIterator[LifecycleEvent]:
        return self

    async def __anext__(self) -> LifecycleEvent:
        if self._detached:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._detached = True
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    async def _deliver(self, item: object) -> None:
        if not self._detached:
            await self._queue.put(item)

    def unsubscribe(self) -> None:
        """Stop receiving. Drains the queue so a blocked producer can proceed."""
        self._detached = True
        self._channel._remove(self)
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break


class EventChannel:
    def __init__(self, maxsize: int = 256) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self._maxsize = maxsize
        self._subscribers: list[Subscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self._maxsize)
        if self._closed:
            sub._detached = True
        else:
            self._subscribers.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    async def publish(self, event: LifecycleEvent) -> None:
        if self._closed:
            raise RuntimeError("publish on a closed EventChannel")
        for sub in list(self._subscribers):
            await sub._deliver(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for sub in list(self._subscribers):
            await sub._deliver(_END)
        self._subscribers.clear()
