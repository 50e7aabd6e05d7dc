from __future__ import annotations

from voxassist.metrics import PIPE, CompositeMetrics, Metrics
from voxassist.prom_export import PromExporter, prom_name


def test_prom_export_renders_counter_gauge_histogram() -> None:
    exp = PromExporter(ms_buckets=(100, 500))
    exp.inc(PIPE["synthesis_queue_dropped_total"], 2)
    exp.observe(PIPE["cycle_total_ms"], 120)
    exp.observe(PIPE["cycle_total_ms"], 700)
    exp.set(PIPE["sessions_active"], 3)

    text = exp.render()
    assert "# TYPE voxassist_synthesis_queue_dropped_total counter" in text
    assert "voxassist_synthesis_queue_dropped_total 2" in text
    assert "# TYPE voxassist_latency_cycle_total_ms histogram" in text
    assert 'voxassist_latency_cycle_total_ms_bucket{le="100"} 0' in text
    assert 'voxassist_latency_cycle_total_ms_bucket{le="500"} 1' in text
    assert 'voxassist_latency_cycle_total_ms_bucket{le="+Inf"} 2' in text
    assert "voxassist_latency_cycle_total_ms_sum 820" in text
    assert "# TYPE voxassist_session_active gauge" in text
    assert "voxassist_session_active 3" in text


def test_prom_name_sanitizes() -> None:
    assert prom_name("gateway.cache-hit total") == "gateway_cache_hit_total"
    assert prom_name("a.b", namespace="ns") == "ns_a_b"


def test_composite_fans_out_and_reads_primary() -> None:
    primary = Metrics()
    exp = PromExporter(namespace="")
    m = CompositeMetrics(primary, exp)
    m.inc("x.total", 2)
    m.observe("x.ms", 40)
    m.set("x.gauge", 5)

    assert m.get("x.total") == 2
    assert m.get_hist("x.ms") == [40]
    assert m.get_gauge("x.gauge") == 5
    assert m.snapshot()["histograms"]["x.ms"] == {"count": 1, "p50": 40, "p95": 40, "max": 40}
    assert "x_total 2" in exp.render()
