from __future__ import annotations

import asyncio
import random
from typing import Any

import pytest

from voxassist.clock import FakeClock, Scheduler
from voxassist.config import PipelineConfig
from voxassist.demo_simulator import TEMPLATES, DemoSimulator
from voxassist.errors import MalformedInput, SessionNotFound
from voxassist.protocol import OutboundEvent, OutboundSentimentUpdate, OutboundTranscriptEntry
from voxassist.session_registry import SessionRegistry, Speaker

from tests.harness.pipeline_harness import settle


class _Rig:
    def __init__(self, **cfg_kw: Any) -> None:
        self.clock = FakeClock()
        self.cfg = PipelineConfig(**cfg_kw)
        self.scheduler = Scheduler(self.clock)
        self.registry = SessionRegistry(self.cfg, scheduler=self.scheduler)
        self.sent: list[tuple[str, OutboundEvent]] = []
        self.demo = DemoSimulator(
            self.cfg,
            registry=self.registry,
            scheduler=self.scheduler,
            broadcast=self._broadcast,
            rng=random.Random(3),
        )

    def _broadcast(self, call_id: str, message: OutboundEvent) -> int:
        self.sent.append((call_id, message))
        return 1

    def entries(self) -> list[OutboundTranscriptEntry]:
        return [m for _, m in self.sent if isinstance(m, OutboundTranscriptEntry)]

    async def advance(self, ms: int, step: int = 100) -> None:
        for _ in range(0, ms, step):
            await settle(5)
            await self.clock.advance(step)
        await settle(5)


def test_script_plays_in_order_with_bounded_delays() -> None:
    async def _run() -> None:
        rig = _Rig()
        rig.registry.initialize_session("demo-1")
        run = rig.demo.start_scripted_session("demo-1", "customer_support")
        assert run.template_id == "CUSTOMER_SUPPORT"

        await rig.advance(400)
        assert rig.entries() == []
        await rig.advance(200)
        assert len(rig.entries()) == 1

        script = TEMPLATES["CUSTOMER_SUPPORT"]
        # Upper bound: initial delay plus the slowest gap for every later line.
        await rig.advance(500 + 3200 * len(script))
        texts = [m.entry.text for m in rig.entries()]
        assert texts == [line.text for line in script]
        assert run.finished is True
        assert rig.demo.active_runs() == []

        turns = rig.registry.require("demo-1").turns
        assert [t.seq for t in turns] == list(range(1, len(script) + 1))
        assert turns[0].speaker is Speaker.AGENT
        assert all(0.85 <= t.confidence <= 0.95 for t in turns)
        assert all(t.metadata["demo"] is True for t in turns)
        await rig.registry.aclose()

    asyncio.run(_run())


def test_gaps_respect_speaker_bounds() -> None:
    async def _run() -> None:
        rig = _Rig(demo_initial_delay_ms=0)
        rig.registry.initialize_session("demo-1")
        rig.demo.start_scripted_session("demo-1")
        await rig.advance(60_000, step=10)
        turns = rig.registry.require("demo-1").turns
        for prev, cur in zip(turns, turns[1:]):
            gap = cur.timestamp_ms - prev.timestamp_ms
            if cur.speaker is Speaker.AGENT:
                assert 800 <= gap <= 1610
            else:
                assert 1800 <= gap <= 3210
        await rig.registry.aclose()

    asyncio.run(_run())


def test_sentiment_updates_track_running_mean() -> None:
    async def _run() -> None:
        rig = _Rig(demo_initial_delay_ms=0)
        rig.registry.initialize_session("demo-1")
        run = rig.demo.start_scripted_session("demo-1", "ESCALATION")
        await rig.advance(30_000)
        updates = [m for _, m in rig.sent if isinstance(m, OutboundSentimentUpdate)]
        scores = [line.score for line in TEMPLATES["ESCALATION"]]
        assert len(updates) == len(scores)
        assert updates[-1].score == pytest.approx(sum(scores) / len(scores), abs=1e-3)
        assert updates[-1].sentiment == "neutral"
        assert run.overall.value == "neutral"
        await rig.registry.aclose()

    asyncio.run(_run())


def test_cancel_stops_further_lines() -> None:
    async def _run() -> None:
        rig = _Rig(demo_initial_delay_ms=0)
        rig.registry.initialize_session("demo-1")
        rig.demo.start_scripted_session("demo-1")
        await rig.advance(100)
        assert len(rig.entries()) == 1

        assert rig.demo.cancel("demo-1") is True
        await rig.advance(30_000)
        assert len(rig.entries()) == 1
        assert rig.demo.cancel("demo-1") is False
        await rig.registry.aclose()

    asyncio.run(_run())


def test_reset_session_stops_the_script() -> None:
    async def _run() -> None:
        rig = _Rig(demo_initial_delay_ms=0)
        rig.registry.initialize_session("demo-1")
        rig.demo.start_scripted_session("demo-1")
        await rig.advance(100)
        rig.registry.reset_session("demo-1")
        await rig.advance(30_000)
        assert rig.registry.require("demo-1").turns == []
        assert rig.demo.active_runs() == []
        await rig.registry.aclose()

    asyncio.run(_run())


def test_unknown_template_and_missing_session() -> None:
    async def _run() -> None:
        rig = _Rig()
        with pytest.raises(MalformedInput):
            rig.demo.start_scripted_session("x", "NOPE")
        with pytest.raises(SessionNotFound):
            rig.demo.start_scripted_session("x", "BILLING_INQUIRY")
        assert rig.demo.templates() == ["BILLING_INQUIRY", "CUSTOMER_SUPPORT", "ESCALATION"]

    asyncio.run(_run())
