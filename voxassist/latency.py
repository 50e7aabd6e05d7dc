from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Mapping, Optional

from .clock import Clock
from .config import PipelineConfig
from .log import log_event
from .metrics import PIPE, Metrics


logger = logging.getLogger(__name__)


STAGES: tuple[str, ...] = (
    "speech_to_text",
    "ai_processing",
    "text_to_speech",
    "audio_transmission",
)

_SOLUTIONS: dict[str, tuple[str, ...]] = {
    "speech_to_text": (
        "Use a faster speech recognition model",
        "Stream audio to recognition instead of sending whole utterances",
    ),
    "ai_processing": (
        "Use a smaller, faster reasoning model",
        "Shorten the prompt and cap output tokens",
        "Raise the response cache TTL for common questions",
    ),
    "text_to_speech": (
        "Use a low-latency synthesis model",
        "Keep spoken replies short",
        "Enable streaming delivery so playback starts on the first chunk",
    ),
    "audio_transmission": (
        "Reduce chunk pacing",
        "Check observer connections for write backpressure",
    ),
}


def severity_for(duration_ms: float) -> str:
    if duration_ms > 5000:
        return "CRITICAL"
    if duration_ms > 2000:
        return "HIGH"
    if duration_ms > 1000:
        return "MEDIUM"
    return "LOW"


@dataclass(slots=True)
class LatencyCycle:
    call_id: str
    started_ms: int
    stages: dict[str, int] = field(default_factory=dict)
    stage_metadata: dict[str, dict[str, Any]] = field(default_factory=dict)
    open_stages: dict[str, int] = field(default_factory=dict)
    completed: bool = False
    budget_breached: bool = False
    total_ms: int = 0


@dataclass(frozen=True, slots=True)
class CycleReport:
    call_id: str
    total_ms: int
    budget_ms: int
    is_optimal: bool
    breakdown: dict[str, dict[str, Any]]
    breached_stages: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "total_ms": self.total_ms,
            "budget_ms": self.budget_ms,
            "is_optimal": self.is_optimal,
            "breakdown": self.breakdown,
            "breached_stages": list(self.breached_stages),
        }


class LatencyMonitor:
    """
    Per-call perceive -> respond -> speak timing.

    One open cycle per call. Completed cycles go into a rolling window that
    feeds the performance report.
    """

    def __init__(self, config: PipelineConfig, *, clock: Clock, metrics: Optional[Metrics] = None) -> None:
        self._clock = clock
        self._metrics = metrics if metrics is not None else Metrics()
        self._budget_ms = int(config.latency_budget_ms)
        self._targets = config.stage_targets_ms()
        self._stale_ms = int(config.latency_stale_cycle_ms)
        self._cycles: dict[str, LatencyCycle] = {}
        self._window: Deque[LatencyCycle] = deque(maxlen=max(1, int(config.latency_window)))
        self._total_completed = 0

    @property
    def budget_ms(self) -> int:
        return self._budget_ms

    def start_cycle(self, call_id: str, *, started_ms: Optional[int] = None) -> LatencyCycle:
        cycle = LatencyCycle(
            call_id=call_id,
            started_ms=int(started_ms) if started_ms is not None else self._clock.now_ms(),
        )
        self._cycles[call_id] = cycle
        return cycle

    def current(self, call_id: str) -> Optional[LatencyCycle]:
        return self._cycles.get(call_id)

    def _cycle(self, call_id: str) -> LatencyCycle:
        cycle = self._cycles.get(call_id)
        if cycle is None:
            cycle = self.start_cycle(call_id)
        return cycle

    def start_timing(self, call_id: str, stage: str) -> None:
        self._cycle(call_id).open_stages[stage] = self._clock.now_ms()

    def end_timing(
        self,
        call_id: str,
        stage: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[int]:
        cycle = self._cycles.get(call_id)
        if cycle is None:
            return None
        started = cycle.open_stages.pop(stage, None)
        if started is None:
            return None
        duration = max(0, self._clock.now_ms() - started)
        self._put_stage(cycle, stage, duration, metadata)
        return duration

    def record_stage(
        self,
        call_id: str,
        stage: str,
        duration_ms: int,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """For stages measured elsewhere; a fresh cycle is backdated to cover them."""
        duration = max(0, int(duration_ms))
        cycle = self._cycles.get(call_id)
        if cycle is None:
            cycle = self.start_cycle(call_id, started_ms=self._clock.now_ms() - duration)
        self._put_stage(cycle, stage, duration, metadata)

    def _put_stage(
        self,
        cycle: LatencyCycle,
        stage: str,
        duration: int,
        metadata: Optional[Mapping[str, Any]],
    ) -> None:
        cycle.stages[stage] = cycle.stages.get(stage, 0) + duration
        if metadata:
            cycle.stage_metadata.setdefault(stage, {}).update(dict(metadata))
        self._metrics.observe(f"latency.stage.{stage}_ms", duration)

    def complete_cycle(self, call_id: str) -> Optional[CycleReport]:
        cycle = self._cycles.pop(call_id, None)
        if cycle is None:
            return None
        now = self._clock.now_ms()
        for stage, started in list(cycle.open_stages.items()):
            self._put_stage(cycle, stage, max(0, now - started), None)
        cycle.open_stages.clear()

        cycle.total_ms = max(0, now - cycle.started_ms)
        cycle.completed = True
        cycle.budget_breached = cycle.total_ms >= self._budget_ms
        breached = self._attribute(cycle) if cycle.budget_breached else ()

        breakdown: dict[str, dict[str, Any]] = {}
        for stage, duration in cycle.stages.items():
            entry: dict[str, Any] = {
                "duration_ms": duration,
                "percentage": round(100.0 * duration / cycle.total_ms) if cycle.total_ms > 0 else 0,
            }
            if stage in cycle.stage_metadata:
                entry["metadata"] = dict(cycle.stage_metadata[stage])
            breakdown[stage] = entry

        self._window.append(cycle)
        self._total_completed += 1
        self._metrics.inc(PIPE["cycle_completed_total"], 1)
        self._metrics.observe(PIPE["cycle_total_ms"], cycle.total_ms)
        if cycle.budget_breached:
            self._metrics.inc(PIPE["cycle_breach_total"], 1)

        log_event(
            logger,
            "latency",
            "cycle_budget_breached" if cycle.budget_breached else "cycle_completed",
            level=logging.WARNING if cycle.budget_breached else logging.INFO,
            call_id=call_id,
            total_ms=cycle.total_ms,
            budget_ms=self._budget_ms,
            stages=dict(cycle.stages),
            breached_stages=list(breached),
        )
        return CycleReport(
            call_id=call_id,
            total_ms=cycle.total_ms,
            budget_ms=self._budget_ms,
            is_optimal=not cycle.budget_breached,
            breakdown=breakdown,
            breached_stages=breached,
        )

    def _attribute(self, cycle: LatencyCycle) -> tuple[str, ...]:
        over = [
            stage
            for stage, duration in cycle.stages.items()
            if stage in self._targets and duration > self._targets[stage]
        ]
        if over:
            return tuple(sorted(over, key=lambda s: -cycle.stages[s]))
        if cycle.stages:
            return (max(cycle.stages.items(), key=lambda kv: kv[1])[0],)
        return ()

    def discard(self, call_id: str) -> bool:
        return self._cycles.pop(call_id, None) is not None

    def prune(self, max_age_ms: Optional[int] = None) -> int:
        """Drop in-progress cycles older than max_age_ms (default: stale-cycle setting)."""
        cutoff = self._clock.now_ms() - int(max_age_ms if max_age_ms is not None else self._stale_ms)
        stale = [cid for cid, c in self._cycles.items() if c.started_ms < cutoff]
        for cid in stale:
            del self._cycles[cid]
        return len(stale)

    def window_summary(self) -> dict[str, Any]:
        totals = [c.total_ms for c in self._window]
        if not totals:
            return {"count": 0, "min_ms": None, "avg_ms": None, "max_ms": None, "success_ratio": None}
        ok = sum(1 for c in self._window if not c.budget_breached)
        return {
            "count": len(totals),
            "min_ms": min(totals),
            "avg_ms": round(sum(totals) / len(totals)),
            "max_ms": max(totals),
            "success_ratio": round(ok / len(totals), 3),
        }

    def bottlenecks(self) -> list[dict[str, Any]]:
        per_stage: dict[str, list[int]] = {}
        for cycle in self._window:
            for stage, duration in cycle.stages.items():
                per_stage.setdefault(stage, []).append(duration)
        out: list[dict[str, Any]] = []
        for stage, values in per_stage.items():
            avg = round(sum(values) / len(values))
            out.append(
                {
                    "stage": stage,
                    "average_ms": avg,
                    "max_ms": max(values),
                    "min_ms": min(values),
                    "samples": len(values),
                    "target_ms": self._targets.get(stage),
                    "severity": severity_for(avg),
                }
            )
        out.sort(key=lambda b: -b["average_ms"])
        return out

    def recommendations(self, bottlenecks: Optional[list[dict[str, Any]]] = None) -> list[dict[str, Any]]:
        recs: list[dict[str, Any]] = []
        for b in bottlenecks if bottlenecks is not None else self.bottlenecks():
            target = b.get("target_ms")
            if target is None or b["average_ms"] <= target:
                continue
            recs.append(
                {
                    "stage": b["stage"],
                    "issue": f"{b['stage']} averaging {b['average_ms']}ms (target: <{target}ms)",
                    "solutions": list(_SOLUTIONS.get(b["stage"], ())),
                }
            )
        return recs

    def performance_report(self) -> dict[str, Any]:
        window = self.window_summary()
        bottlenecks = self.bottlenecks()
        avg = window["avg_ms"]
        return {
            "summary": {
                "total_cycles": self._total_completed,
                "average_ms": avg,
                "budget_ms": self._budget_ms,
                "performance": "OPTIMAL" if avg is None or avg < self._budget_ms else "NEEDS_OPTIMIZATION",
                "in_progress": len(self._cycles),
            },
            "window": window,
            "bottlenecks": bottlenecks,
            "recommendations": self.recommendations(bottlenecks),
        }
