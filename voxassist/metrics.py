from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Metrics:
    """In-process counters, histograms and gauges keyed by the names in PIPE."""

    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, list[int]] = field(default_factory=dict)
    gauges: dict[str, int] = field(default_factory=dict)
    max_samples: int = 10_000

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + value

    def observe(self, name: str, value: int) -> None:
        samples = self.histograms.setdefault(name, [])
        samples.append(int(value))
        if len(samples) > self.max_samples:
            del samples[: len(samples) - self.max_samples]

    def set(self, name: str, value: int) -> None:
        self.gauges[name] = int(value)

    def get(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def get_hist(self, name: str) -> list[int]:
        return list(self.histograms.get(name, []))

    def get_gauge(self, name: str) -> int:
        return int(self.gauges.get(name, 0))

    def percentile(self, name: str, p: float) -> Optional[int]:
        values = sorted(self.histograms.get(name, []))
        if not values:
            return None
        if p <= 0:
            return values[0]
        if p >= 100:
            return values[-1]
        k = int(round((p / 100.0) * (len(values) - 1)))
        return values[k]

    def summarize(self, name: str) -> dict[str, Optional[int]]:
        values = self.histograms.get(name, [])
        return {
            "count": len(values),
            "p50": self.percentile(name, 50),
            "p95": self.percentile(name, 95),
            "max": max(values) if values else None,
        }

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {name: self.summarize(name) for name in self.histograms},
            "gauges": dict(self.gauges),
        }


class CompositeMetrics:
    """
    Fans writes out to several sinks, e.g. the readable Metrics plus the
    Prometheus exporter. Reads go to the primary sink.
    """

    def __init__(self, primary: Metrics, *sinks: Any) -> None:
        self.primary = primary
        self._sinks = [primary] + [s for s in sinks if s is not None]

    def inc(self, name: str, value: int = 1) -> None:
        for s in self._sinks:
            s.inc(name, value)

    def observe(self, name: str, value: int) -> None:
        for s in self._sinks:
            s.observe(name, value)

    def set(self, name: str, value: int) -> None:
        for s in self._sinks:
            s.set(name, value)

    def get(self, name: str) -> int:
        return self.primary.get(name)

    def get_hist(self, name: str) -> list[int]:
        return self.primary.get_hist(name)

    def get_gauge(self, name: str) -> int:
        return self.primary.get_gauge(name)

    def snapshot(self) -> dict[str, Any]:
        return self.primary.snapshot()


PIPE = {
    # Session registry
    "sessions_started_total": "session.started_total",
    "sessions_ended_total": "session.ended_total",
    "sessions_timed_out_total": "session.timed_out_total",
    "sessions_reset_total": "session.reset_total",
    "sessions_active": "session.active",
    "turns_recorded_total": "session.turns_recorded_total",
    # Turn engine
    "escalations_total": "turn.escalations_total",
    "turn_requests_rejected_total": "turn.requests_rejected_total",
    "stale_results_dropped_total": "turn.stale_results_dropped_total",
    "response_time_ms": "turn.response_time_ms",
    # Response gateway
    "gateway_requests_total": "gateway.requests_total",
    "gateway_cache_hit_total": "gateway.cache_hit_total",
    "gateway_cache_evictions_total": "gateway.cache_evictions_total",
    "gateway_fallback_total": "gateway.fallback_total",
    "gateway_timeout_total": "gateway.timeout_total",
    "gateway_rejected_total": "gateway.rejected_total",
    "gateway_provider_ms": "gateway.provider_ms",
    # Synthesis streamer
    "synthesis_jobs_total": "synthesis.jobs_total",
    "synthesis_failed_total": "synthesis.failed_total",
    "synthesis_chunks_total": "synthesis.chunks_total",
    "synthesis_queue_dropped_total": "synthesis.queue_dropped_total",
    "synthesis_discarded_total": "synthesis.discarded_total",
    "synthesis_ms": "synthesis.provider_ms",
    # Transport
    "broadcast_total": "transport.broadcast_total",
    "delivery_failures_total": "transport.delivery_failures_total",
    "connections_pruned_total": "transport.connections_pruned_total",
    "ws_write_timeout_total": "transport.write_timeout_total",
    "inbound_bad_frame_total": "transport.inbound_bad_frame_total",
    # Latency
    "cycle_total_ms": "latency.cycle_total_ms",
    "cycle_breach_total": "latency.cycle_breach_total",
    "cycle_completed_total": "latency.cycle_completed_total",
    # Demo
    "demo_runs_started_total": "demo.runs_started_total",
    "demo_runs_cancelled_total": "demo.runs_cancelled_total",
    "demo_turns_total": "demo.turns_total",
    # Persistence
    "persistence_failures_total": "persistence.failures_total",
}
