from __future__ import annotations

import re
from typing import Literal


SpeechMarkupMode = Literal["DASH_PAUSE", "RAW_TEXT", "SSML"]

_ABBREVIATIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bDr\."), "Doctor"),
    (re.compile(r"\bMr\."), "Mister"),
    (re.compile(r"\bMrs\."), "Missus"),
    (re.compile(r"\bMs\."), "Miss"),
    (re.compile(r"\betc\."), "etcetera"),
    (re.compile(r"\bi\.e\."), "that is"),
    (re.compile(r"\be\.g\."), "for example"),
)

_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

_DATE_PAT = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
_DOLLAR_PAT = re.compile(r"\$(\d+(?:,\d{3})*)(?:\.(\d{2}))?")
# Sentence end followed by more text; the final sentence gets no trailing pause.
_SENTENCE_END_PAT = re.compile(r"([.?!])\s+(?=\S)")
_WS_PAT = re.compile(r"\s+")


def dash_pause(*, units: int) -> str:
    """Spaced-dash pause primitive; each unit is exactly " - "."""
    if int(units) <= 0:
        return ""
    return " - " * int(units)


def pause_marker(*, mode: SpeechMarkupMode, pause_ms: int, dash_pause_unit_ms: int = 250) -> str:
    if mode == "RAW_TEXT" or int(pause_ms) <= 0:
        return ""
    if mode == "SSML":
        return f'<break time="{int(pause_ms)}ms"/>'
    u = max(1, int(dash_pause_unit_ms))
    return dash_pause(units=max(1, (int(pause_ms) + u // 2) // u))


def _spoken_date(m: re.Match[str]) -> str:
    month, day, year = int(m.group(1)), int(m.group(2)), m.group(3)
    if not (1 <= month <= 12 and 1 <= day <= 31):
        return m.group(0)
    return f"{_MONTHS[month - 1]} {day}, {year}"


def _spoken_dollars(m: re.Match[str]) -> str:
    whole = m.group(1).replace(",", "")
    cents = m.group(2)
    unit = "dollar" if whole == "1" else "dollars"
    if cents and cents != "00":
        return f"{whole} {unit} and {int(cents)} cents"
    return f"{whole} {unit}"


def normalize_for_speech(
    text: str,
    *,
    mode: SpeechMarkupMode = "SSML",
    pause_ms: int = 500,
) -> str:
    """
    Make reply text read well aloud.

    - Expands common abbreviations (Dr., Mr., e.g., ...).
    - Dates written m/d/yyyy become "March 4, 2025".
    - Dollar amounts become words ("$20" -> "20 dollars").
    - Inserts a pause marker between sentences in the requested markup mode.
    """
    if not text:
        return ""
    out = _WS_PAT.sub(" ", text.strip())
    for pat, repl in _ABBREVIATIONS:
        out = pat.sub(repl, out)
    out = _DATE_PAT.sub(_spoken_date, out)
    out = _DOLLAR_PAT.sub(_spoken_dollars, out)

    marker = pause_marker(mode=mode, pause_ms=pause_ms)
    if marker:
        if mode == "SSML":
            out = _SENTENCE_END_PAT.sub(lambda m: f"{m.group(1)} {marker} ", out)
        else:
            out = _SENTENCE_END_PAT.sub(lambda m: f"{m.group(1)}{marker}", out)
    return out

