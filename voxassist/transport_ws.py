from __future__ import annotations

import asyncio
import itertools
import json
import logging
from json import JSONDecodeError
from typing import Awaitable, Callable, Optional, Protocol

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .clock import Clock
from .errors import CLIENT_ERRORS
from .log import log_event
from .metrics import PIPE, Metrics
from .protocol import InboundEvent, OutboundError, OutboundEvent, dumps_outbound, parse_inbound_obj


logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def recv_text(self) -> str: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self, *, code: int = 1000, reason: str = "") -> None: ...


_conn_ids = itertools.count(1)


class Connection:
    """
    One observer socket.

    Single-writer rule: only the writer task touches transport.send_text(), so
    frames go out in the order they were offered. A write that fails or exceeds
    the write timeout, or an outbound queue that fills up, marks the connection
    dead; the hub prunes it on the next broadcast.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        clock: Clock,
        metrics: Optional[Metrics] = None,
        queue_max: int = 256,
        write_timeout_ms: int = 400,
        conn_id: str = "",
    ) -> None:
        self.transport = transport
        self.conn_id = conn_id or f"conn-{next(_conn_ids)}"
        self._clock = clock
        self._metrics = metrics if metrics is not None else Metrics()
        self._q: BoundedDequeQueue[str] = BoundedDequeQueue(queue_max)
        self._write_timeout_ms = int(write_timeout_ms)
        self._writer: Optional[asyncio.Task[None]] = None
        self._alive = True
        self._in_flight = False
        self.dead_reason = ""
        self.sent = 0

    @property
    def alive(self) -> bool:
        return self._alive

    def start(self) -> None:
        if self._writer is None and self._alive:
            self._writer = asyncio.create_task(self._write_loop())

    def offer(self, payload: str) -> bool:
        if not self._alive:
            return False
        if not self._q.put_nowait(payload):
            self.mark_dead("outbound_queue_full")
            return False
        return True

    def send(self, message: OutboundEvent) -> bool:
        return self.offer(dumps_outbound(message))

    def mark_dead(self, reason: str) -> None:
        if not self._alive:
            return
        self._alive = False
        self.dead_reason = reason
        self._q.close()
        self._q.clear()

    def pending(self) -> int:
        return self._q.qsize() + (1 if self._in_flight else 0)

    async def flush(self, *, max_spins: int = 1000) -> None:
        """Yield to the writer until everything offered so far is written."""
        for _ in range(max_spins):
            if not self._alive or self.pending() == 0:
                return
            await asyncio.sleep(0)

    async def _write_loop(self) -> None:
        while self._alive:
            try:
                payload = await self._q.get()
            except QueueClosed:
                return
            self._in_flight = True
            try:
                await self._clock.run_with_timeout(
                    self.transport.send_text(payload),
                    max(1, self._write_timeout_ms),
                )
                self.sent += 1
            except TimeoutError:
                self._metrics.inc(PIPE["ws_write_timeout_total"], 1)
                self.mark_dead("write_timeout")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._metrics.inc(PIPE["delivery_failures_total"], 1)
                log_event(logger, "transport", "write_failed", level=logging.WARNING,
                          conn_id=self.conn_id, error=str(e))
                self.mark_dead("write_error")
            finally:
                self._in_flight = False

    async def aclose(self, *, code: int = 1000, reason: str = "") -> None:
        self.mark_dead(reason or "closed")
        task = self._writer
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        try:
            await self.transport.close(code=code, reason=reason)
        except Exception:
            logger.debug("transport close failed conn_id=%s", self.conn_id, exc_info=True)


ChannelEmptyHook = Callable[[str], None]


class BroadcastHub:
    """
    call_id -> ordered set of live connections.

    The hub holds non-owning references; sockets are owned by whoever accepted
    them. broadcast() serializes once and offers the same text to everyone.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        metrics: Optional[Metrics] = None,
        on_channel_empty: Optional[ChannelEmptyHook] = None,
        structured_logs: bool = False,
    ) -> None:
        self._clock = clock
        self._metrics = metrics if metrics is not None else Metrics()
        self._channels: dict[str, dict[str, Connection]] = {}
        self._on_channel_empty = on_channel_empty
        self._structured_logs = bool(structured_logs)

    def set_on_channel_empty(self, hook: Optional[ChannelEmptyHook]) -> None:
        self._on_channel_empty = hook

    def _log(self, event: str, **fields: object) -> None:
        if self._structured_logs:
            log_event(logger, "broadcast_hub", event, **fields)

    def join(self, call_id: str, connection: Connection) -> int:
        channel = self._channels.setdefault(call_id, {})
        channel[connection.conn_id] = connection
        connection.start()
        self._log("joined", call_id=call_id, conn_id=connection.conn_id, size=len(channel))
        return len(channel)

    def leave(self, call_id: str, connection: Connection) -> int:
        channel = self._channels.get(call_id)
        if channel is None:
            return 0
        channel.pop(connection.conn_id, None)
        self._log("left", call_id=call_id, conn_id=connection.conn_id, size=len(channel))
        if not channel:
            self._channel_emptied(call_id)
        return len(channel)

    def connection_count(self, call_id: str) -> int:
        return len(self._channels.get(call_id, {}))

    def channel_ids(self) -> list[str]:
        return list(self._channels.keys())

    def broadcast(self, call_id: str, message: OutboundEvent) -> int:
        channel = self._channels.get(call_id)
        if not channel:
            return 0
        payload = dumps_outbound(message)
        self._metrics.inc(PIPE["broadcast_total"], 1)
        delivered = 0
        dead: list[Connection] = []
        for conn in list(channel.values()):
            if conn.offer(payload):
                delivered += 1
            else:
                dead.append(conn)
        for conn in dead:
            self._prune(call_id, conn)
        return delivered

    def send_to(self, connection: Connection, message: OutboundEvent) -> bool:
        return connection.send(message)

    def drop_channel(self, call_id: str) -> list[Connection]:
        """Forget a channel without firing the empty hook; sockets stay open."""
        return list(self._channels.pop(call_id, {}).values())

    def _prune(self, call_id: str, conn: Connection) -> None:
        channel = self._channels.get(call_id)
        if channel is None or channel.pop(conn.conn_id, None) is None:
            return
        self._metrics.inc(PIPE["connections_pruned_total"], 1)
        log_event(logger, "broadcast_hub", "connection_pruned", level=logging.WARNING,
                  call_id=call_id, conn_id=conn.conn_id, reason=conn.dead_reason or "dead")
        asyncio.get_running_loop().create_task(conn.aclose(code=1011, reason=conn.dead_reason or "dead"))
        if not channel:
            self._channel_emptied(call_id)

    def _channel_emptied(self, call_id: str) -> None:
        self._channels.pop(call_id, None)
        hook = self._on_channel_empty
        if hook is None:
            return
        try:
            hook(call_id)
        except Exception:
            logger.exception("on_channel_empty hook failed call_id=%s", call_id)

    async def aclose(self) -> None:
        conns = [c for ch in self._channels.values() for c in ch.values()]
        self._channels.clear()
        await asyncio.gather(*(c.aclose(code=1001, reason="shutdown") for c in conns), return_exceptions=True)


InboundHandler = Callable[[InboundEvent], Awaitable[None]]


async def connection_reader(
    *,
    transport: Transport,
    connection: Connection,
    on_message: InboundHandler,
    metrics: Optional[Metrics] = None,
    max_frame_bytes: int = 262_144,
    structured_logs: bool = False,
    call_id: str = "",
) -> str:
    """
    Reads frames -> JSON decode -> protocol validation -> on_message().

    Bad frames get an `error` message on this connection only and the loop keeps
    reading. Returns the reason the loop stopped.
    """
    m = metrics if metrics is not None else Metrics()

    def _log(event: str, **payload: object) -> None:
        if structured_logs:
            log_event(logger, "ws_inbound", event, call_id=call_id, conn_id=connection.conn_id, **payload)

    def _reject(reason: str, message: str) -> None:
        m.inc(PIPE["inbound_bad_frame_total"], 1)
        _log("frame_dropped", reason=reason)
        connection.send(OutboundError(message=message, code=reason.lower()))

    while connection.alive:
        try:
            raw = await transport.recv_text()
        except asyncio.CancelledError:
            raise
        except Exception:
            return "transport_closed"

        if int(max_frame_bytes) > 0:
            size = len(raw.encode("utf-8"))
            if size > int(max_frame_bytes):
                _reject("FRAME_TOO_LARGE", f"frame exceeds {int(max_frame_bytes)} bytes")
                return "frame_too_large"

        try:
            obj = json.loads(raw)
        except (JSONDecodeError, ValueError):
            _reject("BAD_JSON", "invalid JSON")
            continue

        try:
            ev = parse_inbound_obj(obj)
        except Exception:
            _reject("BAD_SCHEMA", "unsupported or malformed message")
            continue

        _log("frame_accepted", type=str(getattr(ev, "type", "")))
        try:
            await on_message(ev)
        except CLIENT_ERRORS as e:
            connection.send(OutboundError(message=str(e), code=getattr(e, "code", None)))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("inbound handler failed call_id=%s", call_id)
            connection.send(OutboundError(message="internal error", code="internal_error"))
    return "connection_dead"
