from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Literal, Mapping, Optional, Sequence

from .clock import Clock
from .errors import ProviderRejected, ProviderTimeout, ProviderUnavailable
from .llm_client import ReasoningProvider
from .log import log_event
from .metrics import PIPE, Metrics
from .session_registry import Speaker, Turn


logger = logging.getLogger(__name__)


ResponseSource = Literal["provider", "cache", "fallback"]


@dataclass(frozen=True, slots=True)
class GatewayContext:
    call_id: str
    phase: str = "general"
    history: tuple[Turn, ...] = ()
    escalated: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "phase": self.phase,
            "escalated": self.escalated,
            "history": [{"speaker": t.speaker.value, "text": t.text} for t in self.history],
        }


@dataclass(frozen=True, slots=True)
class GeneratedResponse:
    text: str
    intent: str
    confidence: float
    should_escalate: bool
    source: ResponseSource
    fallback_reason: Optional[str] = None
    latency_ms: int = 0


def normalize_query(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def cache_key(query: str, phase: str) -> str:
    return f"{phase or 'general'}:{normalize_query(query)}"


class ResponseCache:
    """
    TTL cache keyed by (phase, normalized query).

    Capacity evicts the oldest inserted entry. Expired entries are purged
    whenever the cache is touched.
    """

    def __init__(self, *, clock: Clock, ttl_ms: int = 300_000, max_entries: int = 100) -> None:
        self._clock = clock
        self._ttl_ms = int(ttl_ms)
        self._max_entries = max(1, int(max_entries))
        self._entries: OrderedDict[str, tuple[int, GeneratedResponse]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _purge_expired(self) -> int:
        now = self._clock.now_ms()
        expired = [k for k, (exp, _) in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def get(self, key: str) -> Optional[GeneratedResponse]:
        self._purge_expired()
        hit = self._entries.get(key)
        return hit[1] if hit is not None else None

    def put(self, key: str, value: GeneratedResponse) -> int:
        """Insert and return how many entries were evicted for capacity."""
        self._purge_expired()
        self._entries.pop(key, None)
        evicted = 0
        while len(self._entries) >= self._max_entries:
            self._entries.popitem(last=False)
            evicted += 1
        self._entries[key] = (self._clock.now_ms() + self._ttl_ms, value)
        return evicted

    def clear(self) -> None:
        self._entries.clear()


_INTENT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("billing", ("bill", "charge", "payment", "invoice", "cost")),
    ("technical", ("not working", "error", "bug", "broken", "issue")),
    ("account", ("account", "login", "password", "profile", "settings")),
    ("general", ("help", "information", "how to", "what is")),
    ("escalation", ("manager", "human", "person", "speak to someone")),
)

_ESCALATION_TRIGGERS = (
    "escalate",
    "human agent",
    "speak to someone",
    "manager",
    "i don't know",
    "cannot help",
    "complex issue",
)


def reply_text(reply: Any) -> str:
    """Text of a provider reply: an object with .text or a mapping with a "text" key."""
    if isinstance(reply, Mapping):
        value = reply.get("text")
    else:
        value = getattr(reply, "text", None)
    return value.strip() if isinstance(value, str) else ""


def extract_intent(reply: str) -> str:
    lowered = (reply or "").lower()
    for intent, keywords in _INTENT_KEYWORDS:
        if any(k in lowered for k in keywords):
            return intent
    return "general"


def calculate_confidence(reply: str) -> float:
    text = reply or ""
    lowered = text.lower()
    if "i don't know" in lowered or "uncertain" in lowered:
        return 0.3
    if "escalate" in lowered or "human agent" in lowered:
        return 0.5
    if len(text) > 50 and "sorry" not in lowered:
        return 0.9
    return 0.7


def should_escalate(reply: str, query: str) -> bool:
    r = (reply or "").lower()
    q = (query or "").lower()
    return any(t in r or t in q for t in _ESCALATION_TRIGGERS)


@lru_cache(maxsize=64)
def _phrase_pattern(phrases: tuple[str, ...]) -> "re.Pattern[str]":
    return re.compile(r"\b(" + "|".join(re.escape(p) for p in phrases) + r")\b")


@dataclass(frozen=True, slots=True)
class FallbackRule:
    name: str
    patterns: tuple[str, ...]
    intent: str
    confidence: float
    responses: tuple[str, ...]
    should_escalate: bool = False

    def matches(self, normalized_query: str) -> bool:
        if not self.patterns:
            return False
        return bool(_phrase_pattern(self.patterns).search(normalized_query))


ESCALATION_HANDOFF = FallbackRule(
    name="escalation_handoff",
    patterns=(),
    intent="escalation",
    confidence=0.8,
    responses=(
        "I understand. I'm connecting you with a member of our support team now. Please stay on the line.",
        "Of course. Let me transfer you to a human agent who can take it from here.",
    ),
    should_escalate=True,
)

DEFAULT_FALLBACK = FallbackRule(
    name="default",
    patterns=(),
    intent="general",
    confidence=0.7,
    responses=(
        "What specific topic would you like help with?",
        "I'm here to assist you. What's your question?",
        "How can I help you today?",
        "What information are you looking for?",
    ),
)

# Ordered: first match wins.
FALLBACK_RULES: tuple[FallbackRule, ...] = (
    FallbackRule(
        name="escalation",
        patterns=("human", "manager", "representative", "real person", "speak to someone", "supervisor"),
        intent="escalation",
        confidence=0.8,
        responses=ESCALATION_HANDOFF.responses,
        should_escalate=True,
    ),
    FallbackRule(
        name="dpms",
        patterns=("dpms", "display power management"),
        intent="technical",
        confidence=0.9,
        responses=(
            "DPMS, or Display Power Management Signaling, lets monitors enter power-saving modes "
            "like standby, suspend and off. What would you like to know about it?",
        ),
    ),
    FallbackRule(
        name="greeting",
        patterns=("hello", "hi", "hey", "how are you"),
        intent="greeting",
        confidence=0.9,
        responses=(
            "Hello! What can I help you with today?",
            "Hi there! How may I assist you?",
            "Good day! What would you like to know?",
            "Hello! I'm here to help. What's your question?",
        ),
    ),
    FallbackRule(
        name="capability",
        patterns=("what can you do", "what do you know"),
        intent="general",
        confidence=0.9,
        responses=(
            "I can help with technical questions, billing, account access, troubleshooting and more. "
            "What are you interested in?",
        ),
    ),
    FallbackRule(
        name="billing",
        patterns=("bill", "billing", "payment", "charge", "charged", "invoice", "refund"),
        intent="billing",
        confidence=0.85,
        responses=(
            "I'd be happy to help with your billing question. What specific issue can I look into?",
        ),
    ),
    FallbackRule(
        name="technical",
        patterns=("not working", "broken", "error", "crash", "bug"),
        intent="technical",
        confidence=0.85,
        responses=(
            "I understand you're experiencing a technical issue. Can you tell me more about what's happening?",
        ),
    ),
    FallbackRule(
        name="account",
        patterns=("account", "password", "login", "log in", "sign in"),
        intent="account",
        confidence=0.85,
        responses=("I can help with your account. What do you need assistance with?",),
    ),
    FallbackRule(
        name="hours",
        patterns=("hours", "open", "available"),
        intent="general",
        confidence=0.8,
        responses=(
            "Our support team is available around the clock. Is there something I can help with right now?",
        ),
    ),
)


def select_variant(options: Sequence[str], normalized_query: str) -> str:
    """Stable choice among phrasings: same query, same answer."""
    if not options:
        raise ValueError("options must be non-empty")
    digest = hashlib.sha256(normalized_query.encode("utf-8")).digest()
    return str(options[int.from_bytes(digest[:8], "big") % len(options)])


def fallback_response(
    query: str,
    *,
    escalated: bool = False,
    reason: str = "error",
    rules: Sequence[FallbackRule] = FALLBACK_RULES,
) -> GeneratedResponse:
    normalized = normalize_query(query)
    chosen = DEFAULT_FALLBACK
    if escalated:
        chosen = ESCALATION_HANDOFF
    else:
        for rule in rules:
            if rule.matches(normalized):
                chosen = rule
                break
    return GeneratedResponse(
        text=select_variant(chosen.responses, normalized),
        intent=chosen.intent,
        confidence=chosen.confidence,
        should_escalate=chosen.should_escalate,
        source="fallback",
        fallback_reason=reason,
    )


def build_prompt(query: str, context: GatewayContext, *, agent_name: str = "VoxAssist", history_turns: int = 3) -> str:
    participant_lines = [
        f"User: {t.text}" for t in context.history if t.speaker is Speaker.PARTICIPANT
    ]
    # The current question is usually already the last participant turn.
    if participant_lines and participant_lines[-1] == f"User: {query}":
        participant_lines = participant_lines[:-1]
    recent = participant_lines[-history_turns:] if history_turns > 0 else []

    parts = [
        f"You are {agent_name}, a helpful customer support voice assistant. "
        "Respond naturally and briefly, in one or two spoken sentences.",
    ]
    if context.escalated:
        parts.append("The caller has asked for a human. Tell them you are connecting them to the support team.")
    if recent:
        parts.append("Previous context:\n" + "\n".join(recent))
    parts.append(f"Current user question: {query}")
    parts.append("Respond helpfully to their current question:")
    return "\n\n".join(parts)


class ResponseGateway:
    """
    Latency-bounded access to the reasoning provider.

    generate() always returns a response: provider failures of any kind degrade
    to a canned fallback and are never raised to the caller.
    """

    def __init__(
        self,
        *,
        provider: ReasoningProvider,
        clock: Clock,
        metrics: Optional[Metrics] = None,
        timeout_ms: int = 30_000,
        cache: Optional[ResponseCache] = None,
        agent_name: str = "VoxAssist",
        history_turns: int = 3,
    ) -> None:
        self._provider = provider
        self._clock = clock
        self._metrics = metrics if metrics is not None else Metrics()
        self._timeout_ms = int(timeout_ms)
        self._cache = cache if cache is not None else ResponseCache(clock=clock)
        self._agent_name = agent_name
        self._history_turns = int(history_turns)

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def provider(self) -> ReasoningProvider:
        return self._provider

    async def generate(self, prompt_text: str, context: GatewayContext) -> GeneratedResponse:
        started = self._clock.now_ms()
        self._metrics.inc(PIPE["gateway_requests_total"], 1)

        key = cache_key(prompt_text, context.phase)
        cached = self._cache.get(key)
        if cached is not None:
            self._metrics.inc(PIPE["gateway_cache_hit_total"], 1)
            return GeneratedResponse(
                text=cached.text,
                intent=cached.intent,
                confidence=cached.confidence,
                should_escalate=cached.should_escalate,
                source="cache",
                latency_ms=self._clock.now_ms() - started,
            )

        prompt = build_prompt(
            prompt_text,
            context,
            agent_name=self._agent_name,
            history_turns=self._history_turns,
        )
        reason: str
        try:
            reply = await self._clock.run_with_timeout(
                self._provider.call(prompt, context.as_dict()),
                self._timeout_ms,
            )
            text = reply_text(reply)
        except (TimeoutError, asyncio.TimeoutError, ProviderTimeout):
            self._metrics.inc(PIPE["gateway_timeout_total"], 1)
            reason = "timeout"
        except ProviderRejected as e:
            self._metrics.inc(PIPE["gateway_rejected_total"], 1)
            reason = "rejected"
            log_event(logger, "response_gateway", "provider_rejected", level=logging.WARNING,
                      call_id=context.call_id, detail=e.reason)
        except ProviderUnavailable as e:
            reason = "unavailable"
            log_event(logger, "response_gateway", "provider_unavailable", level=logging.WARNING,
                      call_id=context.call_id, error=str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = "error"
            log_event(logger, "response_gateway", "provider_error", level=logging.WARNING,
                      exc_info=True, call_id=context.call_id, error=str(e))
        else:
            elapsed = self._clock.now_ms() - started
            self._metrics.observe(PIPE["gateway_provider_ms"], elapsed)
            if text:
                result = GeneratedResponse(
                    text=text,
                    intent=extract_intent(text),
                    confidence=calculate_confidence(text),
                    should_escalate=should_escalate(text, prompt_text),
                    source="provider",
                    latency_ms=elapsed,
                )
                evicted = self._cache.put(key, result)
                if evicted:
                    self._metrics.inc(PIPE["gateway_cache_evictions_total"], evicted)
                return result
            reason = "empty"

        self._metrics.inc(PIPE["gateway_fallback_total"], 1)
        fb = fallback_response(prompt_text, escalated=context.escalated, reason=reason)
        log_event(
            logger,
            "response_gateway",
            "fallback_used",
            level=logging.WARNING,
            call_id=context.call_id,
            reason=reason,
            intent=fb.intent,
        )
        return GeneratedResponse(
            text=fb.text,
            intent=fb.intent,
            confidence=fb.confidence,
            should_escalate=fb.should_escalate,
            source="fallback",
            fallback_reason=reason,
            latency_ms=self._clock.now_ms() - started,
        )

    async def aclose(self) -> None:
        close_fn = getattr(self._provider, "aclose", None)
        if callable(close_fn):
            await close_fn()
