from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar


T = TypeVar("T")

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now_ms(self) -> int: ...

    async def sleep_ms(self, ms: int) -> None: ...

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T: ...


@dataclass(frozen=True, slots=True)
class RealClock(Clock):
    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        await asyncio.sleep(ms / 1000.0)

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"operation timed out after {timeout_ms}ms") from e


class FakeClock(Clock):
    """
    Deterministic clock for tests.

    - now_ms() only moves when advance() is called.
    - sleep_ms() parks the caller until advance() reaches its wake time.
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._now_ms = int(start_ms)
        self._sleepers: list[tuple[int, int, asyncio.Future[None]]] = []
        self._order = 0

    def now_ms(self) -> int:
        return self._now_ms

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return

        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._order += 1
        # (wake_at, insertion order) keeps equal deadlines FIFO.
        self._sleepers.append((self._now_ms + int(ms), self._order, fut))
        self._sleepers.sort(key=lambda x: (x[0], x[1]))
        await fut

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable

        main_task = asyncio.ensure_future(awaitable)
        timeout_task = asyncio.create_task(self.sleep_ms(timeout_ms))
        try:
            done, _ = await asyncio.wait(
                {main_task, timeout_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if main_task in done:
                timeout_task.cancel()
                await asyncio.gather(timeout_task, return_exceptions=True)
                return main_task.result()

            main_task.cancel()
            await asyncio.gather(main_task, return_exceptions=True)
            raise TimeoutError(f"operation timed out after {timeout_ms}ms")
        except asyncio.CancelledError:
            main_task.cancel()
            timeout_task.cancel()
            await asyncio.gather(main_task, timeout_task, return_exceptions=True)
            raise

    async def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("FakeClock.advance(ms): ms must be >= 0")

        # Let tasks scheduled in this tick register their sleepers first.
        await asyncio.sleep(0)

        target = self._now_ms + int(ms)
        # Wake sleepers one deadline at a time so callbacks that schedule new
        # sleeps inside the advanced window still fire in order.
        while True:
            live = [s for s in self._sleepers if not s[2].done()]
            self._sleepers = live
            if not live or live[0][0] > target:
                break
            wake_at = live[0][0]
            self._now_ms = max(self._now_ms, wake_at)
            ready = [s for s in live if s[0] <= self._now_ms]
            self._sleepers = [s for s in live if s[0] > self._now_ms]
            for _, _, fut in ready:
                if not fut.done():
                    fut.set_result(None)
            for _ in range(3):
                await asyncio.sleep(0)

        self._now_ms = target
        await asyncio.sleep(0)


class ScheduledTask:
    """
    Cancellable handle for a callback scheduled on a Scheduler.

    cancel() only prevents a callback that has not fired yet; a callback that is
    already running is left alone so it can finish its own teardown.
    """

    def __init__(self, *, name: str, due_ms: int) -> None:
        self.name = name
        self.due_ms = int(due_ms)
        self._task: Optional[asyncio.Task[None]] = None
        self._fired = False
        self._cancelled = False

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def pending(self) -> bool:
        return not self._fired and not self._cancelled

    def cancel(self) -> bool:
        if not self.pending():
            return False
        self._cancelled = True
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        return True


class Scheduler:
    """
    Timer capability over a Clock.

    Callbacks may be plain functions or coroutine functions. Failures are logged,
    never raised into the loop.
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._handles: set[ScheduledTask] = set()

    @property
    def clock(self) -> Clock:
        return self._clock

    def call_later(
        self,
        delay_ms: int,
        callback: Callable[[], Any],
        *,
        name: str = "",
    ) -> ScheduledTask:
        delay = max(0, int(delay_ms))
        handle = ScheduledTask(name=name, due_ms=self._clock.now_ms() + delay)
        handle._task = asyncio.create_task(self._run(handle, delay, callback))
        self._handles.add(handle)
        return handle

    def pending_count(self) -> int:
        return sum(1 for h in self._handles if h.pending())

    def cancel_all(self) -> int:
        n = 0
        for h in list(self._handles):
            if h.cancel():
                n += 1
        self._handles.clear()
        return n

    async def _run(self, handle: ScheduledTask, delay_ms: int, callback: Callable[[], Any]) -> None:
        try:
            await self._clock.sleep_ms(delay_ms)
            if handle.cancelled:
                return
            handle._fired = True
            res = callback()
            if asyncio.iscoroutine(res):
                await res
        except asyncio.CancelledError:
            if not handle.fired:
                return
            raise
        except Exception:
            logger.exception("scheduled callback failed: %s", handle.name or "<unnamed>")
        finally:
            self._handles.discard(handle)
