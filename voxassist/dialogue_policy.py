from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol, Sequence


class Intent(str, Enum):
    ESCALATION_REQUEST = "escalation_request"
    CLOSING = "closing"
    GREETING = "greeting"
    HELP_REQUEST = "help_request"
    GENERAL_INQUIRY = "general_inquiry"


class ConversationPhase(str, Enum):
    GREETING = "greeting"
    INQUIRY = "inquiry"
    RESOLUTION = "resolution"
    ESCALATION = "escalation"
    CLOSING = "closing"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


@dataclass(frozen=True, slots=True)
class IntentRule:
    name: str
    intent: Intent
    matches: Callable[[str], bool]


class IntentClassifier(Protocol):
    def classify(self, text: str) -> Intent: ...


def _words(*words: str) -> Callable[[str], bool]:
    pat = re.compile(r"\b(" + "|".join(re.escape(w) for w in words) + r")\b", re.I)
    return lambda text: bool(pat.search(text or ""))


# Order matters: first match wins. Escalation is checked before anything else so
# "hi, get me a manager" escalates rather than greets.
DEFAULT_INTENT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        "escalation_keywords",
        Intent.ESCALATION_REQUEST,
        _words("human", "agent", "transfer", "manager", "representative", "supervisor", "real person"),
    ),
    IntentRule("closing_keywords", Intent.CLOSING, _words("thank", "thanks", "bye", "goodbye")),
    IntentRule("greeting_keywords", Intent.GREETING, _words("hello", "hi", "hey", "good morning", "good afternoon")),
    IntentRule("help_keywords", Intent.HELP_REQUEST, _words("help", "support", "problem", "issue", "broken")),
)


class RuleIntentClassifier:
    def __init__(self, rules: Optional[Sequence[IntentRule]] = None) -> None:
        self._rules: tuple[IntentRule, ...] = tuple(rules if rules is not None else DEFAULT_INTENT_RULES)

    def classify(self, text: str) -> Intent:
        for rule in self._rules:
            if rule.matches(text or ""):
                return rule.intent
        return Intent.GENERAL_INQUIRY


_default_classifier = RuleIntentClassifier()


def classify_intent(text: str, classifier: Optional[IntentClassifier] = None) -> Intent:
    return (classifier or _default_classifier).classify(text)


POSITIVE_WORDS = frozenset(
    {
        "good", "great", "excellent", "happy", "satisfied", "thank", "thanks",
        "perfect", "wonderful", "amazing", "love", "appreciate", "helpful",
    }
)
NEGATIVE_WORDS = frozenset(
    {
        "bad", "terrible", "awful", "angry", "frustrated", "disappointed",
        "hate", "worst", "horrible", "annoyed", "upset", "useless", "ridiculous",
    }
)

_TOKEN_PAT = re.compile(r"[a-z']+")


def sentiment_score(text: str) -> int:
    """Positive minus negative keyword hits."""
    tokens = _TOKEN_PAT.findall((text or "").lower())
    pos = sum(1 for t in tokens if t in POSITIVE_WORDS)
    neg = sum(1 for t in tokens if t in NEGATIVE_WORDS)
    return pos - neg


def analyze_sentiment(text: str) -> Sentiment:
    score = sentiment_score(text)
    if score > 0:
        return Sentiment.POSITIVE
    if score < 0:
        return Sentiment.NEGATIVE
    return Sentiment.NEUTRAL


_P = ConversationPhase
_I = Intent

PHASE_TRANSITIONS: dict[tuple[ConversationPhase, Intent], ConversationPhase] = {
    # First participant turn from the initial phase follows the intent.
    (_P.GREETING, _I.GREETING): _P.GREETING,
    (_P.GREETING, _I.HELP_REQUEST): _P.INQUIRY,
    (_P.GREETING, _I.GENERAL_INQUIRY): _P.INQUIRY,
    (_P.GREETING, _I.ESCALATION_REQUEST): _P.ESCALATION,
    (_P.GREETING, _I.CLOSING): _P.CLOSING,
    (_P.INQUIRY, _I.HELP_REQUEST): _P.INQUIRY,
    (_P.INQUIRY, _I.GENERAL_INQUIRY): _P.RESOLUTION,
    (_P.INQUIRY, _I.ESCALATION_REQUEST): _P.ESCALATION,
    (_P.INQUIRY, _I.CLOSING): _P.CLOSING,
    (_P.RESOLUTION, _I.GENERAL_INQUIRY): _P.RESOLUTION,
    (_P.RESOLUTION, _I.HELP_REQUEST): _P.INQUIRY,
    (_P.RESOLUTION, _I.ESCALATION_REQUEST): _P.ESCALATION,
    (_P.RESOLUTION, _I.CLOSING): _P.CLOSING,
    (_P.ESCALATION, _I.CLOSING): _P.CLOSING,
    (_P.CLOSING, _I.CLOSING): _P.CLOSING,
}


def decide_phase(
    current: ConversationPhase,
    intent: Intent,
    *,
    escalated: bool = False,
) -> ConversationPhase:
    """
    Next phase for a participant turn.

    Once escalated, the phase stays at ESCALATION until a closing intent.
    Pairs outside the table default to INQUIRY.
    """
    if escalated:
        return _P.CLOSING if intent is _I.CLOSING else _P.ESCALATION
    return PHASE_TRANSITIONS.get((current, intent), _P.INQUIRY)


def negative_run(sentiments: Iterable[Sentiment]) -> int:
    """Length of the trailing run of negative sentiments."""
    run = 0
    for s in sentiments:
        run = run + 1 if s is Sentiment.NEGATIVE else 0
    return run


@dataclass(frozen=True, slots=True)
class EscalationDecision:
    escalate: bool
    reason: str = ""


def escalation_decision(
    *,
    intent: Intent,
    negative_run_length: int,
    negative_run_threshold: int,
    gateway_flag: bool = False,
) -> EscalationDecision:
    if intent is Intent.ESCALATION_REQUEST:
        return EscalationDecision(True, "participant_request")
    if gateway_flag:
        return EscalationDecision(True, "response_analysis")
    if negative_run_threshold > 0 and negative_run_length >= negative_run_threshold:
        return EscalationDecision(True, "negative_sentiment_run")
    return EscalationDecision(False)
