from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Optional, Protocol

from .log import log_event
from .metrics import PIPE


logger = logging.getLogger(__name__)


class PersistenceSink(Protocol):
    async def store_turn(self, call_id: str, record: dict[str, Any]) -> None: ...

    async def store_synthesis_metrics(self, call_id: str, record: dict[str, Any]) -> None: ...

    async def store_session_summary(self, call_id: str, record: dict[str, Any]) -> None: ...


class NullPersistence:
    async def store_turn(self, call_id: str, record: dict[str, Any]) -> None:
        return None

    async def store_synthesis_metrics(self, call_id: str, record: dict[str, Any]) -> None:
        return None

    async def store_session_summary(self, call_id: str, record: dict[str, Any]) -> None:
        return None


class InMemoryPersistence:
    """Keeps every stored record in order; used by tests and the offline demo."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    async def store_turn(self, call_id: str, record: dict[str, Any]) -> None:
        self.records.append(("turn", call_id, dict(record)))

    async def store_synthesis_metrics(self, call_id: str, record: dict[str, Any]) -> None:
        self.records.append(("synthesis", call_id, dict(record)))

    async def store_session_summary(self, call_id: str, record: dict[str, Any]) -> None:
        self.records.append(("summary", call_id, dict(record)))

    def of_kind(self, kind: str, call_id: Optional[str] = None) -> list[dict[str, Any]]:
        return [
            rec
            for k, cid, rec in self.records
            if k == kind and (call_id is None or cid == call_id)
        ]


class JsonlPersistence:
    """
    Append-only JSON lines file. One object per record:
    {"kind": "turn"|"synthesis"|"summary", "call_id": ..., "record": {...}}
    """

    def __init__(self, path: str) -> None:
        self._path = str(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> str:
        return self._path

    def _append(self, line: str) -> None:
        parent = os.path.dirname(self._path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def _write(self, kind: str, call_id: str, record: dict[str, Any]) -> None:
        line = json.dumps(
            {"kind": kind, "call_id": call_id, "record": record},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    async def store_turn(self, call_id: str, record: dict[str, Any]) -> None:
        await self._write("turn", call_id, record)

    async def store_synthesis_metrics(self, call_id: str, record: dict[str, Any]) -> None:
        await self._write("synthesis", call_id, record)

    async def store_session_summary(self, call_id: str, record: dict[str, Any]) -> None:
        await self._write("summary", call_id, record)


class FireAndForgetWriter:
    """
    Runs persistence writes as background tasks.

    Callers never await the write; failures are logged and counted, never raised.
    """

    def __init__(self, sink: Optional[PersistenceSink] = None, *, metrics: Any = None) -> None:
        self._sink: PersistenceSink = sink if sink is not None else NullPersistence()
        self._metrics = metrics
        self._tasks: set[asyncio.Task[None]] = set()

    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, op: str, call_id: str, write: Callable[[], Awaitable[None]]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log_event(logger, "persistence", "no_loop", level=logging.WARNING, op=op, call_id=call_id)
            return
        task = loop.create_task(self._run(op, call_id, write))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def store_turn(self, call_id: str, record: dict[str, Any]) -> None:
        self.submit("store_turn", call_id, lambda: self._sink.store_turn(call_id, record))

    def store_synthesis_metrics(self, call_id: str, record: dict[str, Any]) -> None:
        self.submit(
            "store_synthesis_metrics",
            call_id,
            lambda: self._sink.store_synthesis_metrics(call_id, record),
        )

    def store_session_summary(self, call_id: str, record: dict[str, Any]) -> None:
        self.submit(
            "store_session_summary",
            call_id,
            lambda: self._sink.store_session_summary(call_id, record),
        )

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, op: str, call_id: str, write: Callable[[], Awaitable[None]]) -> None:
        try:
            await write()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._metrics is not None:
                self._metrics.inc(PIPE["persistence_failures_total"], 1)
            log_event(
                logger,
                "persistence",
                "write_failed",
                level=logging.WARNING,
                exc_info=True,
                op=op,
                call_id=call_id,
                error=str(e),
            )
