"""Multi-subscriber event channels.

Every open :class:`Subscription` receives every item published after it was
created. Subscribers do not compete for items.
"""

from __future__ import annotations

import asyncio
from typing import Generic, List, Set, TypeVar

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    def __init__(self, channel: "Broadcast[T]", maxsize: int = 0):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self._ended = False

    def _push(self, item: object) -> None:
        if self._queue.full():
            # Slow bounded subscribers lose their oldest item, not the newest.
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    async def get(self) -> T:
        """Wait for the next item; raises ``StopAsyncIteration`` once closed."""

        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self.closed = True
            raise StopAsyncIteration
        return item

    def drain(self) -> List[T]:
        """Return every item queued so far without waiting."""

        items: List[T] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self.closed = True
                break
            items.append(item)
        return items

    def close(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._channel._discard(self)
        self._push(_CLOSED)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        return await self.get()


class Broadcast(Generic[T]):
    def __init__(self) -> None:
        self._subscribers: Set[Subscription[T]] = set()

    def subscribe(self, maxsize: int = 0) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self, maxsize=maxsize)
        self._subscribers.add(sub)
        return sub

    def publish(self, item: T) -> None:
        for sub in list(self._subscribers):
            sub._push(item)

    def close(self) -> None:
        for sub in list(self._subscribers):
            sub.close()

    def _discard(self, sub: Subscription[T]) -> None:
        self._subscribers.discard(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


__all__ = ["Broadcast", "Subscription"]
