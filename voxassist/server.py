from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import PipelineConfig
from .errors import MalformedInput, QueueOverflow, SessionNotFound, TransportDeliveryFailure
from .log import configure_logging, log_event
from .orchestrator import Orchestrator, build_orchestrator
from .protocol import InboundEvent, entry_from_turn
from .transport_ws import Connection, Transport, connection_reader


logger = logging.getLogger(__name__)


class StarletteTransport(Transport):
    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws

    async def recv_text(self) -> str:
        return await self._ws.receive_text()

    async def send_text(self, text: str) -> None:
        try:
            await self._ws.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise TransportDeliveryFailure(f"websocket send failed: {e}") from e

    async def close(self, *, code: int = 1000, reason: str = "") -> None:
        try:
            await self._ws.close(code=code, reason=reason)
        except Exception:
            return


class StartCallBody(BaseModel):
    model_config = ConfigDict(extra="ignore")
    options: dict[str, Any] = Field(default_factory=dict)


class ParticipantMessageBody(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    text: str = Field(min_length=1)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    stt_ms: Optional[int] = Field(default=None, alias="sttMs", ge=0)


class StartDemoBody(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    template_id: str = Field(default="CUSTOMER_SUPPORT", alias="templateId")
    call_id: Optional[str] = Field(default=None, alias="callId")


def _error(status: int, message: str, code: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message, "code": code}, status_code=status)


def _orch(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def create_app(
    config: Optional[PipelineConfig] = None,
    *,
    orchestrator: Optional[Orchestrator] = None,
) -> FastAPI:
    cfg = config or PipelineConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(cfg.log_level)
        orch = orchestrator or build_orchestrator(cfg)
        app.state.orchestrator = orch
        app.state.config = cfg
        log_event(logger, "server", "startup", reasoning=cfg.reasoning_provider,
                  synthesis=cfg.synthesis_provider)
        try:
            yield
        finally:
            await orch.aclose()
            log_event(logger, "server", "shutdown")

    app = FastAPI(lifespan=lifespan)

    @app.exception_handler(SessionNotFound)
    async def _not_found(request: Request, exc: SessionNotFound) -> JSONResponse:
        return _error(404, str(exc), exc.code)

    @app.exception_handler(MalformedInput)
    async def _malformed(request: Request, exc: MalformedInput) -> JSONResponse:
        return _error(400, str(exc), exc.code)

    @app.exception_handler(QueueOverflow)
    async def _overflow(request: Request, exc: QueueOverflow) -> JSONResponse:
        return _error(429, str(exc), exc.code)

    @app.get("/healthz")
    async def healthz() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/metrics")
    async def metrics(request: Request) -> PlainTextResponse:
        return PlainTextResponse(_orch(request).exporter.render())

    @app.get("/api/metrics")
    async def metrics_snapshot(request: Request) -> JSONResponse:
        return JSONResponse({"ok": True, "metrics": _orch(request).metrics.snapshot()})

    @app.get("/api/stats")
    async def stats(request: Request) -> JSONResponse:
        return JSONResponse({"ok": True, "stats": _orch(request).stats()})

    @app.get("/api/performance")
    async def performance(request: Request) -> JSONResponse:
        return JSONResponse({"ok": True, "report": _orch(request).performance_report()})

    @app.post("/api/calls/{call_id}")
    async def start_call(call_id: str, request: Request, body: Optional[StartCallBody] = None) -> JSONResponse:
        session = _orch(request).start_call(call_id, (body or StartCallBody()).options)
        return JSONResponse({"ok": True, "call_id": session.call_id, "generation": session.generation})

    @app.get("/api/calls/{call_id}")
    async def get_call(call_id: str, request: Request) -> JSONResponse:
        orch = _orch(request)
        session = orch.registry.require(call_id)
        return JSONResponse(
            {
                "ok": True,
                "stats": orch.call_stats(call_id),
                "transcript": [entry_from_turn(t).model_dump(by_alias=True) for t in session.turns],
            }
        )

    @app.delete("/api/calls/{call_id}")
    async def end_call(call_id: str, request: Request) -> JSONResponse:
        summary = _orch(request).end_call(call_id, "ended_by_api")
        if summary is None:
            raise SessionNotFound(call_id)
        return JSONResponse({"ok": True, "summary": summary})

    @app.post("/api/calls/{call_id}/reset")
    async def reset_call(call_id: str, request: Request) -> JSONResponse:
        session = _orch(request).reset_call(call_id)
        return JSONResponse({"ok": True, "call_id": session.call_id, "generation": session.generation})

    @app.post("/api/calls/{call_id}/messages")
    async def participant_message(call_id: str, body: ParticipantMessageBody, request: Request) -> JSONResponse:
        result = await _orch(request).handle_participant_text(
            call_id,
            body.text,
            confidence=body.confidence,
            stt_ms=body.stt_ms,
        )
        return JSONResponse({"ok": True, "result": result.to_dict()})

    @app.put("/api/calls/{call_id}/voice")
    async def update_voice(call_id: str, request: Request) -> JSONResponse:
        try:
            raw = await request.json()
        except ValueError as e:
            raise MalformedInput("invalid json body") from e
        if not isinstance(raw, dict):
            raise MalformedInput("expected object body")
        settings = _orch(request).update_voice_settings(call_id, **raw)
        return JSONResponse({"ok": True, "voice": settings})

    @app.post("/api/demo-calls")
    async def start_demo(request: Request, body: Optional[StartDemoBody] = None) -> JSONResponse:
        b = body or StartDemoBody()
        run = _orch(request).start_demo(b.template_id, call_id=b.call_id)
        return JSONResponse({"ok": True, "call_id": run.call_id, "template_id": run.template_id,
                             "lines": len(run.lines)})

    @app.delete("/api/demo-calls/{call_id}")
    async def cancel_demo(call_id: str, request: Request) -> JSONResponse:
        if not _orch(request).cancel_demo(call_id):
            raise SessionNotFound(call_id)
        return JSONResponse({"ok": True})

    @app.websocket("/ws/calls/{call_id}")
    async def call_websocket(ws: WebSocket, call_id: str) -> None:
        await _run_observer(ws, call_id)

    return app


async def _run_observer(ws: WebSocket, call_id: str) -> None:
    orch: Orchestrator = ws.app.state.orchestrator
    cfg: PipelineConfig = ws.app.state.config
    await ws.accept()

    transport = StarletteTransport(ws)
    connection = Connection(
        transport,
        clock=orch.clock,
        metrics=orch.metrics,
        queue_max=cfg.connection_queue_max,
        write_timeout_ms=cfg.ws_write_timeout_ms,
    )
    try:
        orch.join(call_id, connection)
    except SessionNotFound as e:
        log_event(logger, "server", "join_rejected", level=logging.WARNING, call_id=call_id)
        await transport.close(code=1008, reason=e.code)
        return

    async def _on_message(ev: InboundEvent) -> None:
        await orch.handle_inbound(call_id, connection, ev)

    reason = "unknown"
    try:
        reason = await connection_reader(
            transport=transport,
            connection=connection,
            on_message=_on_message,
            metrics=orch.metrics,
            max_frame_bytes=cfg.ws_max_frame_bytes,
            structured_logs=cfg.ws_structured_logging,
            call_id=call_id,
        )
    finally:
        orch.leave(call_id, connection)
        await connection.aclose(code=1009 if reason == "frame_too_large" else 1000, reason=reason)
        log_event(logger, "server", "observer_left", call_id=call_id, conn_id=connection.conn_id, reason=reason)


app = create_app()


def main() -> None:
    import uvicorn

    host = os.getenv("VOXASSIST_HOST", "127.0.0.1")
    port = int(os.getenv("VOXASSIST_PORT", "8000"))
    uvicorn.run("voxassist.server:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
