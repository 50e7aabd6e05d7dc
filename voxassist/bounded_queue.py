from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Deque, Generic, Optional, TypeVar


T = TypeVar("T")


class QueueClosed(Exception):
    pass


EvictPredicate = Callable[[T], bool]


class BoundedDequeQueue(Generic[T]):
    """
    Bounded async queue with explicit overflow policies.

    - Producers never block: put_nowait() rejects when full (optionally evicting a
      matching victim first), push_drop_oldest() makes room by dropping the head.
    - Consumers await get(); close() wakes them with QueueClosed once drained.
    - Single consumer is assumed, multiple producers are safe on one loop.
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._maxsize = int(maxsize)
        self._q: Deque[T] = deque()
        self._closed = False
        self._ready = asyncio.Event()

    @property
    def maxsize(self) -> int:
        return self._maxsize

    def qsize(self) -> int:
        return len(self._q)

    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> list[T]:
        return list(self._q)

    def put_nowait(self, item: T, *, evict: Optional[EvictPredicate[T]] = None) -> bool:
        if self._closed:
            return False

        if len(self._q) >= self._maxsize and evict is not None:
            for existing in list(self._q):
                if evict(existing):
                    self._q.remove(existing)
                    break

        if len(self._q) >= self._maxsize:
            return False

        self._q.append(item)
        self._ready.set()
        return True

    def push_drop_oldest(self, item: T) -> list[T]:
        """
        Append item, dropping items from the head until it fits.

        Returns the dropped items (oldest first). Raises QueueClosed if closed.
        """
        if self._closed:
            raise QueueClosed()
        dropped: list[T] = []
        while len(self._q) >= self._maxsize:
            dropped.append(self._q.popleft())
        self._q.append(item)
        self._ready.set()
        return dropped

    def get_nowait(self) -> Optional[T]:
        if not self._q:
            return None
        item = self._q.popleft()
        if not self._q and not self._closed:
            self._ready.clear()
        return item

    async def get(self) -> T:
        while True:
            if self._q:
                item = self._q.popleft()
                if not self._q and not self._closed:
                    self._ready.clear()
                return item
            if self._closed:
                raise QueueClosed()
            self._ready.clear()
            await self._ready.wait()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    def clear(self) -> int:
        n = len(self._q)
        self._q.clear()
        if not self._closed:
            self._ready.clear()
        return n
