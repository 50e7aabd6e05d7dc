from __future__ import annotations

import asyncio
import base64
import logging
import random
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .bounded_queue import QueueClosed
from .clock import Clock, RealClock, ScheduledTask, Scheduler
from .config import PipelineConfig
from .demo_simulator import DemoRun, DemoSimulator
from .errors import CLIENT_ERRORS, MalformedInput
from .latency import CycleReport, LatencyMonitor
from .llm_client import ReasoningProvider
from .log import log_event
from .metrics import CompositeMetrics, Metrics
from .persistence import FireAndForgetWriter, PersistenceSink
from .prom_export import PromExporter
from .protocol import (
    InboundEndCall,
    InboundEvent,
    InboundParticipantMessage,
    InboundPing,
    InboundResetContext,
    OutboundAudioResponse,
    OutboundAudioStream,
    OutboundCallEnded,
    OutboundContextReset,
    OutboundError,
    OutboundEscalation,
    OutboundEvent,
    OutboundPong,
    OutboundSessionJoined,
    OutboundTranscriptEntry,
    OutboundVoiceStatus,
    entry_from_turn,
    transcript_from_turns,
)
from .provider import build_persistence, build_reasoning_provider, build_synthesis_provider
from .response_gateway import ResponseCache, ResponseGateway
from .session_registry import CallSession, SessionRegistry, Turn
from .synthesis_streamer import AudioChunk, SynthesisJob, SynthesisStreamer
from .transport_ws import BroadcastHub, Connection
from .tts_client import SynthesisProvider
from .turn_engine import TurnEngine, require_text


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CycleResult:
    call_id: str
    participant_turn: Turn
    agent_turn: Optional[Turn] = None
    response_source: Optional[str] = None
    fallback_reason: Optional[str] = None
    audio_job: Optional[SynthesisJob] = None
    latency: Optional[CycleReport] = None
    escalated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "participant_turn": entry_from_turn(self.participant_turn).model_dump(by_alias=True),
            "agent_turn": (
                entry_from_turn(self.agent_turn).model_dump(by_alias=True) if self.agent_turn else None
            ),
            "response_source": self.response_source,
            "fallback_reason": self.fallback_reason,
            "audio_status": self.audio_job.status if self.audio_job is not None else None,
            "audio_chunks": len(self.audio_job.chunks) if self.audio_job is not None else 0,
            "latency": self.latency.to_dict() if self.latency is not None else None,
            "escalated": self.escalated,
        }


class Orchestrator:
    """
    Wires registry, turn engine, gateway, synthesis and broadcast for every call.

    Per call it owns one audio pump task: the only consumer of the call's audio
    queue, forwarding chunks to observers in order.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        clock: Clock,
        scheduler: Scheduler,
        metrics: Metrics,
        writer: FireAndForgetWriter,
        registry: SessionRegistry,
        gateway: ResponseGateway,
        engine: TurnEngine,
        streamer: SynthesisStreamer,
        hub: BroadcastHub,
        latency: LatencyMonitor,
        demo: DemoSimulator,
        exporter: Optional[PromExporter] = None,
    ) -> None:
        self.config = config
        self.clock = clock
        self.scheduler = scheduler
        self.metrics = metrics
        self.writer = writer
        self.registry = registry
        self.gateway = gateway
        self.engine = engine
        self.streamer = streamer
        self.hub = hub
        self.latency = latency
        self.demo = demo
        self.exporter = exporter if exporter is not None else PromExporter()
        self._pumps: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._prune_handle: Optional[ScheduledTask] = None
        self._closed = False

        registry.add_end_listener(self._on_session_end)
        hub.set_on_channel_empty(self._on_channel_empty)

    # Session lifecycle

    def start_call(self, call_id: str, options: Optional[Mapping[str, Any]] = None) -> CallSession:
        session = self.registry.initialize_session(call_id, options)
        voice = dict((options or {}).get("voice") or {})
        settings = self.streamer.voice_settings(session.call_id).merged(**voice) if voice else None
        if self.streamer.is_active(session.call_id):
            self.streamer.clear_queue(session.call_id)
        self.streamer.initialize_call(session.call_id, settings)
        self._ensure_pump(session.call_id)
        self._ensure_prune_timer()
        return session

    def end_call(self, call_id: str, reason: str = "ended") -> Optional[dict[str, Any]]:
        return self.registry.end_session(call_id, reason)

    def reset_call(self, call_id: str) -> CallSession:
        session = self.registry.reset_session(call_id)
        self.latency.discard(call_id)
        self.streamer.clear_queue(call_id)
        self.demo.cancel(call_id)
        self.hub.broadcast(call_id, OutboundContextReset(call_id=call_id))
        return session

    def update_voice_settings(self, call_id: str, **updates: Any) -> dict[str, Any]:
        self.registry.require(call_id)
        settings = self.streamer.update_voice_settings(call_id, **updates)
        return {
            "voice_id": settings.voice_id,
            "stability": settings.stability,
            "similarity_boost": settings.similarity_boost,
            "style": settings.style,
            "use_speaker_boost": settings.use_speaker_boost,
            "streaming": settings.streaming,
            "language": settings.language,
            "speed": settings.speed,
        }

    def _on_session_end(self, session: CallSession, reason: str) -> None:
        call_id = session.call_id
        self.demo.cancel(call_id)
        self.latency.discard(call_id)
        self.streamer.cleanup(call_id)
        self.engine.forget(call_id)
        self._pumps.pop(call_id, None)
        end_ms = session.ended_ms if session.ended_ms is not None else self.clock.now_ms()
        self.hub.broadcast(
            call_id,
            OutboundCallEnded(
                call_id=call_id,
                reason=reason,
                duration_ms=max(0, end_ms - session.started_ms),
            ),
        )
        self.hub.drop_channel(call_id)

    def _on_channel_empty(self, call_id: str) -> None:
        self.registry.finalize_end_time(call_id)

    # Observers

    def join(self, call_id: str, connection: Connection) -> CallSession:
        session = self.registry.get(call_id)
        if session is None:
            if not self.config.auto_start_on_join:
                session = self.registry.require(call_id)
            else:
                session = self.start_call(call_id)
        elif session.ended_ms is not None:
            session.ended_ms = None
        self.hub.join(call_id, connection)
        self.hub.send_to(
            connection,
            OutboundSessionJoined(call_id=call_id, transcript=transcript_from_turns(session.turns)),
        )
        return session

    def leave(self, call_id: str, connection: Connection) -> None:
        self.hub.leave(call_id, connection)

    # Conversation cycle

    def _broadcast(self, call_id: str, message: OutboundEvent) -> int:
        return self.hub.broadcast(call_id, message)

    async def handle_participant_text(
        self,
        call_id: str,
        text: str,
        *,
        confidence: float = 1.0,
        stt_ms: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> CycleResult:
        """
        One perceive -> respond -> speak cycle.

        Observers see: participant transcript, processing, agent transcript,
        speaking + audio (or a text-only audio_response), then idle.

        The call's turn slot is held until the reply has been spoken, so a
        second utterance on the same call waits for the whole cycle (or is
        rejected with QueueOverflow when too many are already waiting).
        """
        self.registry.require(call_id)
        require_text(text)
        async with self.engine.slot(call_id):
            return await self._run_cycle(
                call_id,
                text,
                confidence=confidence,
                stt_ms=stt_ms,
                metadata=metadata,
            )

    async def _run_cycle(
        self,
        call_id: str,
        text: str,
        *,
        confidence: float,
        stt_ms: Optional[int],
        metadata: Optional[Mapping[str, Any]],
    ) -> CycleResult:
        self.registry.require(call_id)
        started_cycle = False

        def _on_participant_turn(turn: Turn) -> None:
            nonlocal started_cycle
            started_cycle = True
            if stt_ms is not None and stt_ms >= 0:
                self.latency.record_stage(call_id, "speech_to_text", int(stt_ms))
            else:
                self.latency.start_cycle(call_id)
            self._broadcast(call_id, OutboundTranscriptEntry(entry=entry_from_turn(turn)))
            self._broadcast(call_id, OutboundVoiceStatus(status="processing"))

        try:
            outcome = await self.engine.process_participant_text(
                call_id,
                text,
                confidence=confidence,
                metadata=metadata,
                on_participant_turn=_on_participant_turn,
            )
            if outcome.escalated_now:
                self._broadcast(call_id, OutboundEscalation(call_id=call_id, reason=outcome.escalation_reason))

            reply = outcome.reply
            if reply is None:
                self.latency.discard(call_id)
                return CycleResult(call_id=call_id, participant_turn=outcome.participant_turn)

            agent_turn = reply.turn
            self._broadcast(call_id, OutboundTranscriptEntry(entry=entry_from_turn(agent_turn)))

            self.latency.start_timing(call_id, "text_to_speech")
            job = await self.streamer.synthesize(call_id, agent_turn.text, transcript_id=agent_turn.turn_id)
            self.latency.end_timing(
                call_id,
                "text_to_speech",
                {"status": job.status, "audio_bytes": job.audio_bytes, "chunks": len(job.chunks)},
            )

            if job.ok and self.registry.is_current(call_id, reply.generation):
                self.latency.start_timing(call_id, "audio_transmission")
                try:
                    await self.clock.run_with_timeout(
                        job.delivered.wait(),
                        int(self.config.audio_delivery_timeout_ms),
                    )
                except TimeoutError:
                    log_event(logger, "orchestrator", "audio_delivery_timeout", level=logging.WARNING,
                              call_id=call_id, job_id=job.job_id)
                self.latency.end_timing(call_id, "audio_transmission")
            elif job.status == "failed" and self.registry.is_current(call_id, reply.generation):
                # Synthesis failed: observers still get the words.
                self._broadcast(
                    call_id,
                    OutboundAudioResponse(transcript_id=agent_turn.turn_id, text=agent_turn.text),
                )

            report = self.latency.complete_cycle(call_id)
            return CycleResult(
                call_id=call_id,
                participant_turn=outcome.participant_turn,
                agent_turn=agent_turn,
                response_source=reply.response.source,
                fallback_reason=reply.response.fallback_reason,
                audio_job=job,
                latency=report,
                escalated=outcome.escalated_now,
            )
        except BaseException:
            if started_cycle:
                self.latency.discard(call_id)
            raise
        finally:
            if started_cycle and self.registry.get(call_id) is not None:
                self._broadcast(call_id, OutboundVoiceStatus(status="idle"))

    # Audio pump

    def _ensure_pump(self, call_id: str) -> None:
        task = self._pumps.get(call_id)
        if task is not None and not task.done():
            return
        self._pumps[call_id] = asyncio.create_task(self._pump_audio(call_id))

    async def _pump_audio(self, call_id: str) -> None:
        announced = ""
        while True:
            try:
                chunk = await self.streamer.next_audio(call_id)
            except QueueClosed:
                return
            if chunk.job_id != announced:
                announced = chunk.job_id
                self._broadcast(call_id, OutboundVoiceStatus(status="speaking"))
            self._broadcast(call_id, self._audio_message(chunk))
            if chunk.is_last:
                self.streamer.mark_delivered(call_id, chunk.job_id)

    @staticmethod
    def _audio_message(chunk: AudioChunk) -> OutboundEvent:
        data = base64.b64encode(chunk.data).decode("ascii")
        if chunk.mode == "batch":
            return OutboundAudioResponse(
                transcript_id=chunk.transcript_id,
                text=chunk.text,
                audio_data=data,
                content_type=chunk.content_type,
            )
        return OutboundAudioStream(
            transcript_id=chunk.transcript_id,
            text=chunk.text,
            audio_data=data,
            chunk_index=chunk.index,
            total_chunks=chunk.total_chunks,
            content_type=chunk.content_type,
            is_last=chunk.is_last,
        )

    # Inbound socket messages

    async def handle_inbound(self, call_id: str, connection: Connection, ev: InboundEvent) -> None:
        if isinstance(ev, InboundPing):
            self.hub.send_to(connection, OutboundPong(timestamp=ev.timestamp))
        elif isinstance(ev, InboundParticipantMessage):
            self.registry.require(call_id)
            self._spawn(
                self.handle_participant_text(
                    call_id,
                    ev.text,
                    confidence=ev.confidence if ev.confidence is not None else 1.0,
                    stt_ms=ev.stt_ms,
                    metadata=ev.metadata,
                ),
                connection=connection,
                call_id=call_id,
            )
        elif isinstance(ev, InboundResetContext):
            self.reset_call(call_id)
        elif isinstance(ev, InboundEndCall):
            if self.end_call(call_id, "ended_by_client") is None:
                self.registry.require(call_id)

    def _spawn(self, coro: Any, *, connection: Optional[Connection], call_id: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is None:
                return
            if isinstance(exc, CLIENT_ERRORS):
                if connection is not None:
                    connection.send(OutboundError(message=str(exc), code=getattr(exc, "code", None)))
                return
            logger.error("conversation cycle failed call_id=%s", call_id, exc_info=exc)
            if connection is not None:
                connection.send(OutboundError(message="internal error", code="internal_error"))

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait for spawned cycles to finish (tests, shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Demo

    def start_demo(self, template_id: str = "CUSTOMER_SUPPORT", *, call_id: Optional[str] = None) -> DemoRun:
        cid = call_id or f"demo-call-{uuid.uuid4().hex[:12]}"
        if str(template_id or "").upper() not in self.demo.templates():
            raise MalformedInput(f"unknown demo template: {template_id!r}")
        self.start_call(cid, {"demo": True, "template": template_id.upper()})
        return self.demo.start_scripted_session(cid, template_id)

    def cancel_demo(self, call_id: str) -> bool:
        cancelled = self.demo.cancel(call_id)
        ended = self.end_call(call_id, "demo_cancelled") is not None
        return cancelled or ended

    # Reporting

    def call_stats(self, call_id: str) -> dict[str, Any]:
        out = self.registry.session_stats(call_id)
        out["observers"] = self.hub.connection_count(call_id)
        out["audio"] = self.streamer.stats(call_id)
        out["pending_turns"] = self.engine.pending(call_id)
        out["demo_active"] = call_id in self.demo.active_runs()
        return out

    def stats(self) -> dict[str, Any]:
        return {
            "sessions": self.registry.global_stats(),
            "synthesis": self.streamer.global_stats(),
            "channels": len(self.hub.channel_ids()),
            "demo_runs": self.demo.active_runs(),
            "response_cache_entries": len(self.gateway.cache),
        }

    def performance_report(self) -> dict[str, Any]:
        return self.latency.performance_report()

    def _ensure_prune_timer(self) -> None:
        if self._closed or (self._prune_handle is not None and self._prune_handle.pending()):
            return
        interval = int(self.config.latency_stale_cycle_ms)
        if interval <= 0:
            return
        self._prune_handle = self.scheduler.call_later(interval, self._prune_tick, name="latency_prune")

    def _prune_tick(self) -> None:
        pruned = self.latency.prune()
        if pruned:
            log_event(logger, "orchestrator", "stale_cycles_pruned", count=pruned)
        self._prune_handle = None
        if self.registry.active_count() > 0:
            self._ensure_prune_timer()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.demo.cancel_all()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.registry.aclose()
        self.scheduler.cancel_all()
        pumps = list(self._pumps.values())
        self._pumps.clear()
        for task in pumps:
            task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)
        await self.hub.aclose()
        await self.streamer.aclose()
        await self.gateway.aclose()
        await self.writer.drain()


def build_orchestrator(
    config: Optional[PipelineConfig] = None,
    *,
    clock: Optional[Clock] = None,
    reasoning: Optional[ReasoningProvider] = None,
    synthesis: Optional[SynthesisProvider] = None,
    persistence: Optional[PersistenceSink] = None,
    metrics: Optional[Metrics] = None,
    exporter: Optional[PromExporter] = None,
    rng: Optional[random.Random] = None,
) -> Orchestrator:
    cfg = config or PipelineConfig()
    clk = clock or RealClock()
    prom = exporter if exporter is not None else PromExporter()
    m = CompositeMetrics(metrics if metrics is not None else Metrics(), prom)
    scheduler = Scheduler(clk)
    writer = FireAndForgetWriter(persistence if persistence is not None else build_persistence(cfg), metrics=m)

    registry = SessionRegistry(cfg, scheduler=scheduler, metrics=m, writer=writer)
    latency = LatencyMonitor(cfg, clock=clk, metrics=m)
    gateway = ResponseGateway(
        provider=reasoning if reasoning is not None else build_reasoning_provider(cfg, clock=clk),
        clock=clk,
        metrics=m,
        timeout_ms=cfg.provider_timeout_ms,
        cache=ResponseCache(
            clock=clk,
            ttl_ms=cfg.response_cache_ttl_ms,
            max_entries=cfg.response_cache_max_entries,
        ),
        agent_name=cfg.agent_name,
        history_turns=cfg.prompt_history_turns,
    )
    engine = TurnEngine(cfg, registry=registry, gateway=gateway, clock=clk, metrics=m, latency=latency)
    streamer = SynthesisStreamer(
        cfg,
        provider=synthesis if synthesis is not None else build_synthesis_provider(cfg, clock=clk),
        clock=clk,
        metrics=m,
        writer=writer,
    )
    hub = BroadcastHub(clock=clk, metrics=m, structured_logs=cfg.ws_structured_logging)
    demo = DemoSimulator(cfg, registry=registry, scheduler=scheduler, broadcast=hub.broadcast, metrics=m, rng=rng)
    return Orchestrator(
        cfg,
        clock=clk,
        scheduler=scheduler,
        metrics=m,
        writer=writer,
        registry=registry,
        gateway=gateway,
        engine=engine,
        streamer=streamer,
        hub=hub,
        latency=latency,
        demo=demo,
        exporter=prom,
    )
