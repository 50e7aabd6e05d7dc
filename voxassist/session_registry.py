from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Union

from .clock import ScheduledTask, Scheduler
from .config import PipelineConfig
from .dialogue_policy import ConversationPhase, Intent, Sentiment
from .errors import MalformedInput, SessionNotFound
from .log import log_event
from .metrics import PIPE, Metrics
from .persistence import FireAndForgetWriter


logger = logging.getLogger(__name__)

__all__ = [
    "CallSession",
    "SessionMetrics",
    "SessionRegistry",
    "SessionState",
    "Sentiment",
    "Speaker",
    "Turn",
]


class Speaker(str, Enum):
    PARTICIPANT = "participant"
    AGENT = "agent"


def _frozen_mapping(data: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True, slots=True)
class Turn:
    seq: int
    speaker: Speaker
    text: str
    timestamp_ms: int
    confidence: float = 1.0
    sentiment: Sentiment = Sentiment.NEUTRAL
    turn_id: str = ""
    metadata: Mapping[str, Any] = field(default_factory=_frozen_mapping)

    def to_record(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "speaker": self.speaker.value,
            "text": self.text,
            "timestamp_ms": self.timestamp_ms,
            "confidence": self.confidence,
            "sentiment": self.sentiment.value,
            "turn_id": self.turn_id,
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class SessionState:
    phase: ConversationPhase = ConversationPhase.GREETING
    intent: Optional[Intent] = None
    current_topic: Optional[str] = None
    escalation_requested: bool = False
    escalation_reason: str = ""
    negative_run: int = 0

    def mark_escalated(self, reason: str) -> bool:
        """Returns True only on the first escalation; the flag never reverts."""
        if self.escalation_requested:
            return False
        self.escalation_requested = True
        self.escalation_reason = reason
        return True


@dataclass(slots=True)
class SessionMetrics:
    response_count: int = 0
    total_response_ms: int = 0
    average_response_ms: float = 0.0

    def record_response(self, elapsed_ms: int) -> None:
        self.response_count += 1
        self.total_response_ms += max(0, int(elapsed_ms))
        self.average_response_ms = self.total_response_ms / self.response_count


@dataclass(slots=True)
class CallSession:
    call_id: str
    started_ms: int
    last_activity_ms: int
    options: Mapping[str, Any] = field(default_factory=_frozen_mapping)
    turns: list[Turn] = field(default_factory=list)
    state: SessionState = field(default_factory=SessionState)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    generation: int = 0
    ended_ms: Optional[int] = None
    _next_seq: int = 1

    @property
    def participant_id(self) -> str:
        return str(self.options.get("participant_id", "") or "")


EndListener = Callable[[CallSession, str], Any]


class SessionRegistry:
    """
    Owns every live CallSession.

    Sequence numbers are assigned synchronously inside record_turn(), so turns
    stay gapless no matter how many tasks record concurrently on one loop.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        scheduler: Scheduler,
        metrics: Optional[Metrics] = None,
        writer: Optional[FireAndForgetWriter] = None,
    ) -> None:
        self._config = config
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._metrics = metrics if metrics is not None else Metrics()
        self._writer = writer if writer is not None else FireAndForgetWriter(metrics=self._metrics)
        self._sessions: dict[str, CallSession] = {}
        self._timers: dict[str, ScheduledTask] = {}
        self._end_listeners: list[EndListener] = []
        self._generation = 0

    def add_end_listener(self, listener: EndListener) -> None:
        self._end_listeners.append(listener)

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def initialize_session(
        self, call_id: str, options: Optional[Mapping[str, Any]] = None
    ) -> CallSession:
        call_id = str(call_id or "").strip()
        if not call_id:
            raise MalformedInput("call_id must be non-empty")
        now = self._clock.now_ms()
        existed = call_id in self._sessions
        session = CallSession(
            call_id=call_id,
            started_ms=now,
            last_activity_ms=now,
            options=_frozen_mapping(options),
            generation=self._next_generation(),
        )
        self._sessions[call_id] = session
        self._arm_timer(call_id)
        if not existed:
            self._metrics.inc(PIPE["sessions_started_total"], 1)
        self._metrics.set(PIPE["sessions_active"], len(self._sessions))
        log_event(
            logger,
            "session_registry",
            "session_reinitialized" if existed else "session_started",
            call_id=call_id,
            generation=session.generation,
        )
        return session

    def get(self, call_id: str) -> Optional[CallSession]:
        return self._sessions.get(call_id)

    def require(self, call_id: str) -> CallSession:
        session = self._sessions.get(call_id)
        if session is None:
            raise SessionNotFound(call_id)
        return session

    def is_current(self, call_id: str, generation: int) -> bool:
        session = self._sessions.get(call_id)
        return session is not None and session.generation == generation

    def active_call_ids(self) -> list[str]:
        return list(self._sessions.keys())

    def active_count(self) -> int:
        return len(self._sessions)

    def record_turn(
        self,
        call_id: str,
        speaker: Union[Speaker, str],
        text: str,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        confidence: float = 1.0,
        sentiment: Sentiment = Sentiment.NEUTRAL,
    ) -> Turn:
        session = self.require(call_id)
        try:
            spk = speaker if isinstance(speaker, Speaker) else Speaker(str(speaker))
        except ValueError as e:
            raise MalformedInput(f"unknown speaker: {speaker!r}") from e
        cleaned = str(text or "").strip()
        if not cleaned:
            raise MalformedInput("turn text must be non-empty")

        now = self._clock.now_ms()
        seq = session._next_seq
        turn = Turn(
            seq=seq,
            speaker=spk,
            text=cleaned,
            timestamp_ms=now,
            confidence=max(0.0, min(1.0, float(confidence))),
            sentiment=sentiment,
            turn_id=f"{call_id}:{session.generation}:{seq}",
            metadata=_frozen_mapping(metadata),
        )
        session._next_seq = seq + 1
        session.turns.append(turn)
        session.last_activity_ms = now
        self._arm_timer(call_id)
        self._metrics.inc(PIPE["turns_recorded_total"], 1)
        self._writer.store_turn(call_id, turn.to_record())
        return turn

    def reset_session(self, call_id: str) -> CallSession:
        """Fresh history and state; call id, start time and options survive."""
        session = self.require(call_id)
        now = self._clock.now_ms()
        session.turns = []
        session.state = SessionState()
        session.metrics = SessionMetrics()
        session._next_seq = 1
        session.generation = self._next_generation()
        session.last_activity_ms = now
        session.ended_ms = None
        self._arm_timer(call_id)
        self._metrics.inc(PIPE["sessions_reset_total"], 1)
        log_event(
            logger,
            "session_registry",
            "session_reset",
            call_id=call_id,
            generation=session.generation,
        )
        return session

    def finalize_end_time(self, call_id: str) -> Optional[int]:
        session = self._sessions.get(call_id)
        if session is None:
            return None
        session.ended_ms = self._clock.now_ms()
        return session.ended_ms

    def end_session(self, call_id: str, reason: str = "ended") -> Optional[dict[str, Any]]:
        session = self._sessions.pop(call_id, None)
        if session is None:
            return None

        timer = self._timers.pop(call_id, None)
        if timer is not None:
            timer.cancel()
        # Anything still holding the old generation is now stale.
        session.generation = self._next_generation()

        summary = self._summary(session, reason=reason)
        self._metrics.inc(PIPE["sessions_ended_total"], 1)
        if reason == "inactivity_timeout":
            self._metrics.inc(PIPE["sessions_timed_out_total"], 1)
        self._metrics.set(PIPE["sessions_active"], len(self._sessions))
        log_event(logger, "session_registry", "session_ended", **summary)
        self._writer.store_session_summary(call_id, summary)

        for listener in list(self._end_listeners):
            try:
                listener(session, reason)
            except Exception:
                logger.exception("session end listener failed call_id=%s", call_id)
        return summary

    def session_stats(self, call_id: str) -> dict[str, Any]:
        session = self.require(call_id)
        return self._summary(session, reason=None)

    def global_stats(self) -> dict[str, Any]:
        return {
            "active_calls": len(self._sessions),
            "call_ids": self.active_call_ids(),
        }

    async def aclose(self) -> None:
        for call_id in list(self._sessions.keys()):
            self.end_session(call_id, "shutdown")
        await self._writer.drain()

    def _summary(self, session: CallSession, *, reason: Optional[str]) -> dict[str, Any]:
        end_ms = session.ended_ms if session.ended_ms is not None else self._clock.now_ms()
        out: dict[str, Any] = {
            "call_id": session.call_id,
            "duration_ms": max(0, end_ms - session.started_ms),
            "message_count": len(session.turns),
            "response_count": session.metrics.response_count,
            "average_response_ms": round(session.metrics.average_response_ms, 1),
            "phase": session.state.phase.value,
            "intent": session.state.intent.value if session.state.intent else None,
            "escalation_requested": session.state.escalation_requested,
        }
        if reason is not None:
            out["reason"] = reason
        return out

    def _arm_timer(self, call_id: str) -> None:
        old = self._timers.pop(call_id, None)
        if old is not None:
            old.cancel()
        timeout_ms = int(self._config.session_inactivity_timeout_ms)
        if timeout_ms <= 0:
            return
        self._timers[call_id] = self._scheduler.call_later(
            timeout_ms,
            lambda: self._on_inactivity(call_id),
            name=f"inactivity:{call_id}",
        )

    def _on_inactivity(self, call_id: str) -> None:
        session = self._sessions.get(call_id)
        if session is None:
            return
        idle_ms = self._clock.now_ms() - session.last_activity_ms
        if idle_ms < int(self._config.session_inactivity_timeout_ms):
            return
        log_event(
            logger,
            "session_registry",
            "inactivity_timeout",
            level=logging.WARNING,
            call_id=call_id,
            idle_ms=idle_ms,
        )
        self.end_session(call_id, "inactivity_timeout")

    def pending_timers(self) -> int:
        return sum(1 for t in self._timers.values() if t.pending())
