from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional

from .clock import ScheduledTask, Scheduler
from .config import PipelineConfig
from .dialogue_policy import Sentiment
from .errors import MalformedInput
from .log import log_event
from .metrics import PIPE, Metrics
from .protocol import OutboundEvent, OutboundSentimentUpdate, OutboundTranscriptEntry, entry_from_turn
from .session_registry import SessionRegistry, Speaker


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScriptLine:
    speaker: Speaker
    text: str
    sentiment: Sentiment
    score: float


def _agent(text: str, sentiment: Sentiment, score: float) -> ScriptLine:
    return ScriptLine(Speaker.AGENT, text, sentiment, score)


def _participant(text: str, sentiment: Sentiment, score: float) -> ScriptLine:
    return ScriptLine(Speaker.PARTICIPANT, text, sentiment, score)


_POS, _NEU, _NEG = Sentiment.POSITIVE, Sentiment.NEUTRAL, Sentiment.NEGATIVE

TEMPLATES: dict[str, tuple[ScriptLine, ...]] = {
    "CUSTOMER_SUPPORT": (
        _agent("Hello! I'm VoxAssist, your support agent. How can I help you today?", _POS, 0.8),
        _participant("Hi, I'm having trouble with my account login. I can't seem to access my dashboard.", _NEG, 0.3),
        _agent("I understand your frustration with the login issue. Can you tell me what error message you're seeing?", _POS, 0.7),
        _participant("It says 'Invalid credentials' but I'm sure I'm using the right password.", _NEG, 0.4),
        _agent("Let me check your account status. I can see a temporary lock. I'll reset it for you right now.", _POS, 0.8),
        _participant("Oh great! That would be really helpful. Thank you so much.", _POS, 0.9),
        _agent("I've reset your account. You should be able to log in now. Is there anything else I can help with?", _POS, 0.9),
        _participant("That worked perfectly! You've been incredibly helpful. Thank you!", _POS, 0.95),
    ),
    "BILLING_INQUIRY": (
        _agent("Thanks for calling VoxAssist billing support. What can I help you with?", _POS, 0.75),
        _participant("I was charged twice for my subscription this month.", _NEG, 0.3),
        _agent("I'm sorry about that. I can see two charges on the 3rd. I'll refund the duplicate now.", _POS, 0.7),
        _participant("Okay, how long will the refund take?", _NEU, 0.5),
        _agent("Refunds usually appear within three to five business days.", _NEU, 0.6),
        _participant("Good, thanks for sorting that out.", _POS, 0.8),
    ),
    "ESCALATION": (
        _agent("Hello, this is VoxAssist. How can I help?", _POS, 0.7),
        _participant("This is the third time I'm calling about the same broken router.", _NEG, 0.2),
        _agent("I'm sorry you've had to call again. Let me look at your previous tickets.", _NEU, 0.5),
        _participant("I want to speak to a manager, please.", _NEG, 0.2),
        _agent("Of course. I'm connecting you with a supervisor now. Please stay on the line.", _NEU, 0.5),
    ),
}


@dataclass(slots=True)
class DemoRun:
    call_id: str
    template_id: str
    lines: tuple[ScriptLine, ...]
    generation: int
    index: int = 0
    score: float = 0.5
    handle: Optional[ScheduledTask] = None
    cancelled: bool = False
    finished: bool = False

    @property
    def overall(self) -> Sentiment:
        if self.score > 0.6:
            return Sentiment.POSITIVE
        if self.score < 0.4:
            return Sentiment.NEGATIVE
        return Sentiment.NEUTRAL


BroadcastFn = Callable[[str, OutboundEvent], int]


class DemoSimulator:
    """
    Replays a fixed script into a live session so observers can watch a call.

    Lines go through the session registry like real turns and are broadcast as
    transcript entries. Delays are random within bounds; agent lines come
    faster than participant lines.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        registry: SessionRegistry,
        scheduler: Scheduler,
        broadcast: BroadcastFn,
        metrics: Optional[Metrics] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._scheduler = scheduler
        self._broadcast = broadcast
        self._metrics = metrics if metrics is not None else Metrics()
        self._rng = rng or (random.Random(config.demo_seed) if config.demo_seed else random.Random())
        self._runs: dict[str, DemoRun] = {}

    @staticmethod
    def templates() -> list[str]:
        return sorted(TEMPLATES.keys())

    def active_runs(self) -> list[str]:
        return [cid for cid, run in self._runs.items() if not run.cancelled and not run.finished]

    def start_scripted_session(self, call_id: str, template_id: str = "CUSTOMER_SUPPORT") -> DemoRun:
        lines = TEMPLATES.get(str(template_id or "").upper())
        if lines is None:
            raise MalformedInput(f"unknown demo template: {template_id!r}")
        session = self._registry.require(call_id)
        self.cancel(call_id)

        run = DemoRun(
            call_id=call_id,
            template_id=str(template_id).upper(),
            lines=lines,
            generation=session.generation,
        )
        self._runs[call_id] = run
        self._schedule(run, int(self._config.demo_initial_delay_ms))
        self._metrics.inc(PIPE["demo_runs_started_total"], 1)
        log_event(logger, "demo_simulator", "run_started", call_id=call_id,
                  template=run.template_id, lines=len(lines))
        return run

    def cancel(self, call_id: str) -> bool:
        run = self._runs.pop(call_id, None)
        if run is None or run.finished:
            return False
        run.cancelled = True
        if run.handle is not None:
            run.handle.cancel()
        self._metrics.inc(PIPE["demo_runs_cancelled_total"], 1)
        log_event(logger, "demo_simulator", "run_cancelled", call_id=call_id, emitted=run.index)
        return True

    def cancel_all(self) -> int:
        return sum(1 for cid in list(self._runs.keys()) if self.cancel(cid))

    def _delay_for(self, line: ScriptLine) -> int:
        if line.speaker is Speaker.AGENT:
            lo, hi = self._config.demo_agent_delay_min_ms, self._config.demo_agent_delay_max_ms
        else:
            lo, hi = self._config.demo_participant_delay_min_ms, self._config.demo_participant_delay_max_ms
        lo, hi = int(min(lo, hi)), int(max(lo, hi))
        return self._rng.randint(lo, hi)

    def _schedule(self, run: DemoRun, delay_ms: int) -> None:
        run.handle = self._scheduler.call_later(
            delay_ms,
            lambda: self._emit(run),
            name=f"demo:{run.call_id}:{run.index}",
        )

    def _emit(self, run: DemoRun) -> None:
        if run.cancelled or self._runs.get(run.call_id) is not run:
            return
        if not self._registry.is_current(run.call_id, run.generation):
            self.cancel(run.call_id)
            return

        line = run.lines[run.index]
        turn = self._registry.record_turn(
            run.call_id,
            line.speaker,
            line.text,
            {"demo": True, "template": run.template_id, "sentiment_score": line.score},
            confidence=0.85 + self._rng.random() * 0.1,
            sentiment=line.sentiment,
        )
        self._broadcast(run.call_id, OutboundTranscriptEntry(entry=entry_from_turn(turn)))

        run.index += 1
        # Running mean of the scripted scores.
        run.score = run.score * (run.index - 1) / run.index + line.score / run.index
        self._broadcast(
            run.call_id,
            OutboundSentimentUpdate(sentiment=run.overall.value, score=round(run.score, 3)),
        )
        self._metrics.inc(PIPE["demo_turns_total"], 1)

        if run.index >= len(run.lines):
            run.finished = True
            run.handle = None
            self._runs.pop(run.call_id, None)
            log_event(logger, "demo_simulator", "run_finished", call_id=run.call_id,
                      template=run.template_id, overall=run.overall.value)
            return
        self._schedule(run, self._delay_for(run.lines[run.index]))
