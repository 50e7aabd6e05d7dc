from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import pytest

from voxassist.dialogue_policy import Sentiment
from voxassist.log import log_event, render_event
from voxassist.metrics import PIPE, Metrics
from voxassist.persistence import FireAndForgetWriter, InMemoryPersistence, JsonlPersistence


class _BrokenSink(InMemoryPersistence):
    async def store_turn(self, call_id: str, record: dict[str, Any]) -> None:
        raise OSError("disk full")


def test_writer_runs_in_background_and_drains() -> None:
    async def _run() -> None:
        sink = InMemoryPersistence()
        writer = FireAndForgetWriter(sink, metrics=Metrics())
        writer.store_turn("c1", {"seq": 1})
        writer.store_session_summary("c1", {"reason": "ended"})
        assert writer.pending() == 2
        await writer.drain()
        assert writer.pending() == 0
        assert [k for k, _, _ in sink.records] == ["turn", "summary"]

    asyncio.run(_run())


def test_writer_failures_are_counted_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    metrics = Metrics()

    async def _run() -> None:
        writer = FireAndForgetWriter(_BrokenSink(), metrics=metrics)
        writer.store_turn("c1", {"seq": 1})
        writer.store_synthesis_metrics("c1", {"chunks": 2})
        await writer.drain()

    with caplog.at_level("WARNING"):
        asyncio.run(_run())
    assert metrics.get(PIPE["persistence_failures_total"]) == 1
    assert any('"event":"write_failed"' in r.getMessage() for r in caplog.records)


def test_jsonl_persistence_appends_lines(tmp_path: Path) -> None:
    path = tmp_path / "out" / "records.jsonl"

    async def _run() -> None:
        sink = JsonlPersistence(str(path))
        await sink.store_turn("c1", {"seq": 1, "text": "hello"})
        await sink.store_session_summary("c1", {"reason": "ended"})

    asyncio.run(_run())
    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [l["kind"] for l in lines] == ["turn", "summary"]
    assert lines[0]["record"]["text"] == "hello"


def test_render_event_is_compact_sorted_json() -> None:
    line = render_event("synthesis", "chunk", call_id="c1", data=b"\x00" * 4, sentiment=Sentiment.NEGATIVE)
    assert json.loads(line) == {
        "call_id": "c1",
        "component": "synthesis",
        "data": "<4 bytes>",
        "event": "chunk",
        "sentiment": "negative",
    }
    assert ", " not in line


def test_log_event_respects_level(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("voxassist.test")
    with caplog.at_level("WARNING", logger="voxassist.test"):
        log_event(logger, "x", "quiet")
        log_event(logger, "x", "loud", level=logging.WARNING, n=1)
    msgs = [r.getMessage() for r in caplog.records]
    assert msgs == ['{"component":"x","event":"loud","n":1}']
