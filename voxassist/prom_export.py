from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterable


# Millisecond buckets spanning a fast cache hit up to a provider timeout.
PIPELINE_MS_BUCKETS = (
    10,
    50,
    100,
    200,
    300,
    500,
    800,
    1000,
    1500,
    2000,
    3000,
    5000,
    15000,
    30000,
)


def prom_name(name: str, *, namespace: str = "") -> str:
    # Prometheus names allow [a-zA-Z0-9_:] only.
    base = "".join(ch if ch.isalnum() or ch in "_:" else "_" for ch in (name or ""))
    return f"{namespace}_{base}" if namespace else base


@dataclass(slots=True)
class _Histogram:
    buckets: tuple[int, ...]
    counts: list[int] = field(default_factory=list)
    total: int = 0
    count: int = 0

    def __post_init__(self) -> None:
        if not self.counts:
            self.counts = [0] * (len(self.buckets) + 1)

    def observe(self, v: int) -> None:
        x = int(v)
        self.total += x
        self.count += 1
        for i, bound in enumerate(self.buckets):
            if x <= bound:
                self.counts[i] += 1
                return
        self.counts[-1] += 1

    def cumulative(self) -> Iterable[tuple[str, int]]:
        running = 0
        for bound, n in zip(self.buckets, self.counts):
            running += n
            yield (str(bound), running)
        yield ("+Inf", running + self.counts[-1])


class PromExporter:
    """
    Prometheus text exposition for the pipeline metrics.

    Histograms keep bucket counts only, so memory stays flat however many
    cycles a process serves.
    """

    def __init__(self, *, namespace: str = "voxassist", ms_buckets: tuple[int, ...] = PIPELINE_MS_BUCKETS) -> None:
        self._namespace = namespace
        self._ms_buckets = tuple(sorted(int(b) for b in ms_buckets))
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, int] = {}
        self._hists: dict[str, _Histogram] = {}

    def _key(self, name: str) -> str:
        return prom_name(name, namespace=self._namespace)

    def inc(self, name: str, value: int = 1) -> None:
        key = self._key(name)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(value)

    def observe(self, name: str, value: int) -> None:
        key = self._key(name)
        with self._lock:
            hist = self._hists.get(key)
            if hist is None:
                hist = self._hists[key] = _Histogram(buckets=self._ms_buckets)
            hist.observe(value)

    def set(self, name: str, value: int) -> None:
        with self._lock:
            self._gauges[self._key(name)] = int(value)

    def render(self) -> str:
        out: list[str] = []
        with self._lock:
            for name, value in sorted(self._counters.items()):
                out += [f"# TYPE {name} counter", f"{name} {value}"]
            for name, value in sorted(self._gauges.items()):
                out += [f"# TYPE {name} gauge", f"{name} {value}"]
            for name, hist in sorted(self._hists.items()):
                out.append(f"# TYPE {name} histogram")
                out += [f'{name}_bucket{{le="{le}"}} {n}' for le, n in hist.cumulative()]
                out += [f"{name}_sum {hist.total}", f"{name}_count {hist.count}"]
        return "\n".join(out) + "\n"
