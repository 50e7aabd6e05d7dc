from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Sequence

from .clock import Clock
from .config import PipelineConfig
from .dialogue_policy import (
    ConversationPhase,
    EscalationDecision,
    Intent,
    IntentClassifier,
    RuleIntentClassifier,
    analyze_sentiment,
    decide_phase,
    escalation_decision,
    negative_run,
)
from .errors import MalformedInput, QueueOverflow
from .latency import LatencyMonitor
from .log import log_event
from .metrics import PIPE, Metrics
from .response_gateway import GatewayContext, GeneratedResponse, ResponseGateway
from .session_registry import CallSession, SessionRegistry, Speaker, Turn


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AgentReply:
    turn: Turn
    response: GeneratedResponse
    generation: int


@dataclass(frozen=True, slots=True)
class TurnOutcome:
    call_id: str
    participant_turn: Turn
    intent: Intent
    phase: ConversationPhase
    reply: Optional[AgentReply] = None
    escalated_now: bool = False
    escalation_reason: str = ""

    @property
    def agent_turn(self) -> Optional[Turn]:
        return self.reply.turn if self.reply is not None else None


def require_text(text: str) -> str:
    if not str(text or "").strip():
        raise MalformedInput("participant text must be non-empty")
    return text


def trim_context(turns: Sequence[Turn], max_turns: int) -> list[Turn]:
    """Last max_turns turns, with the opening turn always kept."""
    n = max(1, int(max_turns))
    if len(turns) <= n:
        return list(turns)
    tail = list(turns[-n:])
    return [turns[0]] + tail


ParticipantTurnHook = Callable[[Turn], Any]


class TurnEngine:
    """
    Serializes work per call and applies intent, phase and escalation rules.

    At most one response generation is in flight per call. Up to
    turn_queue_max further requests wait their turn; beyond that new requests
    are rejected with QueueOverflow. Distinct calls never wait on each other.

    slot() is public so a caller can hold the call for longer than one
    generation (the orchestrator keeps it until the reply has been spoken).
    It is reentrant for the task that holds it.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        registry: SessionRegistry,
        gateway: ResponseGateway,
        clock: Clock,
        metrics: Optional[Metrics] = None,
        latency: Optional[LatencyMonitor] = None,
        classifier: Optional[IntentClassifier] = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._gateway = gateway
        self._clock = clock
        self._metrics = metrics if metrics is not None else Metrics()
        self._latency = latency
        self._classifier: IntentClassifier = classifier or RuleIntentClassifier()
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}
        self._owners: dict[str, asyncio.Task[Any]] = {}

    def pending(self, call_id: str) -> int:
        lock = self._locks.get(call_id)
        busy = 1 if lock is not None and lock.locked() else 0
        return busy + self._waiting.get(call_id, 0)

    def forget(self, call_id: str) -> None:
        lock = self._locks.get(call_id)
        if lock is not None and not lock.locked() and not self._waiting.get(call_id):
            self._locks.pop(call_id, None)
            self._waiting.pop(call_id, None)

    @asynccontextmanager
    async def slot(self, call_id: str) -> AsyncIterator[None]:
        task = asyncio.current_task()
        if task is not None and self._owners.get(call_id) is task:
            yield
            return
        lock = self._locks.setdefault(call_id, asyncio.Lock())
        waiting = self._waiting.get(call_id, 0)
        if lock.locked() and waiting >= int(self._config.turn_queue_max):
            self._metrics.inc(PIPE["turn_requests_rejected_total"], 1)
            log_event(logger, "turn_engine", "request_rejected", level=logging.WARNING,
                      call_id=call_id, waiting=waiting)
            raise QueueOverflow(f"too many pending turns for call {call_id}")
        self._waiting[call_id] = waiting + 1
        try:
            await lock.acquire()
        finally:
            self._waiting[call_id] = max(0, self._waiting.get(call_id, 1) - 1)
        if task is not None:
            self._owners[call_id] = task
        try:
            yield
        finally:
            self._owners.pop(call_id, None)
            lock.release()
            if self._registry.get(call_id) is None:
                self.forget(call_id)

    async def process_participant_text(
        self,
        call_id: str,
        text: str,
        *,
        confidence: float = 1.0,
        metadata: Optional[Mapping[str, Any]] = None,
        on_participant_turn: Optional[ParticipantTurnHook] = None,
    ) -> TurnOutcome:
        self._registry.require(call_id)
        require_text(text)

        async with self.slot(call_id):
            session = self._registry.require(call_id)
            sentiment = analyze_sentiment(text)
            turn = self._registry.record_turn(
                call_id,
                Speaker.PARTICIPANT,
                text,
                metadata,
                confidence=confidence,
                sentiment=sentiment,
            )
            if on_participant_turn is not None:
                on_participant_turn(turn)

            state = session.state
            intent = self._classifier.classify(turn.text)
            state.intent = intent
            state.negative_run = negative_run(
                t.sentiment for t in session.turns if t.speaker is Speaker.PARTICIPANT
            )

            decision = self._escalation(intent, state.negative_run)
            escalated_now = decision.escalate and state.mark_escalated(decision.reason)
            state.phase = decide_phase(state.phase, intent, escalated=state.escalation_requested)

            reply = await self._respond(session, turn.text)
            if reply is not None and reply.response.should_escalate:
                decision = self._escalation(intent, state.negative_run, gateway_flag=True)
                if state.mark_escalated(decision.reason):
                    escalated_now = True
                    state.phase = decide_phase(state.phase, intent, escalated=True)

            if escalated_now:
                self._metrics.inc(PIPE["escalations_total"], 1)
                log_event(logger, "turn_engine", "escalation_requested", call_id=call_id,
                          reason=state.escalation_reason)

            return TurnOutcome(
                call_id=call_id,
                participant_turn=turn,
                intent=intent,
                phase=state.phase,
                reply=reply,
                escalated_now=escalated_now,
                escalation_reason=state.escalation_reason if escalated_now else "",
            )

    def _escalation(self, intent: Intent, run: int, *, gateway_flag: bool = False) -> EscalationDecision:
        return escalation_decision(
            intent=intent,
            negative_run_length=run,
            negative_run_threshold=int(self._config.escalation_negative_run),
            gateway_flag=gateway_flag,
        )

    async def request_response(self, session: CallSession, participant_text: str) -> Optional[AgentReply]:
        async with self.slot(session.call_id):
            return await self._respond(session, participant_text)

    async def _respond(self, session: CallSession, participant_text: str) -> Optional[AgentReply]:
        call_id = session.call_id
        generation = session.generation
        context = GatewayContext(
            call_id=call_id,
            phase=session.state.phase.value,
            history=tuple(trim_context(session.turns, self._config.context_max_turns)),
            escalated=session.state.escalation_requested,
        )

        started = self._clock.now_ms()
        if self._latency is not None:
            self._latency.start_timing(call_id, "ai_processing")
        response = await self._gateway.generate(participant_text, context)
        elapsed = self._clock.now_ms() - started
        if self._latency is not None:
            self._latency.end_timing(
                call_id,
                "ai_processing",
                {"source": response.source, "fallback_reason": response.fallback_reason},
            )

        if not self._registry.is_current(call_id, generation):
            self._metrics.inc(PIPE["stale_results_dropped_total"], 1)
            log_event(logger, "turn_engine", "stale_result_dropped", call_id=call_id, generation=generation)
            return None

        if response.intent and response.intent != "general":
            session.state.current_topic = response.intent
        agent_turn = self._registry.record_turn(
            call_id,
            Speaker.AGENT,
            response.text,
            {
                "source": response.source,
                "intent": response.intent,
                "fallback_reason": response.fallback_reason,
            },
            confidence=response.confidence,
        )
        session.metrics.record_response(elapsed)
        self._metrics.observe(PIPE["response_time_ms"], elapsed)
        return AgentReply(turn=agent_turn, response=response, generation=generation)
