from __future__ import annotations

import asyncio
import base64
import itertools

import pytest

from voxassist.errors import MalformedInput, QueueOverflow, SessionNotFound, SynthesisFailure
from voxassist.metrics import PIPE
from voxassist.session_registry import Speaker

from tests.harness.pipeline_harness import PipelineHarness, settle


_LONG_REPLY = (
    "Thanks for waiting. I have pulled up your account and I can see the charge you mentioned. "
    "Let me walk you through it."
)


def _runs(ids: list[str]) -> list[str]:
    return [k for k, _ in itertools.groupby(ids)]


def test_happy_path_cycle() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reply="Hi! How can I help?", reasoning_delay_ms=50)
        try:
            h.orch.start_call("c1")
            t, _ = h.observe("c1")
            result = await h.say("c1", "Hello")

            session = h.orch.registry.require("c1")
            assert session.state.phase.value == "greeting"
            assert [x.speaker for x in session.turns] == [Speaker.PARTICIPANT, Speaker.AGENT]
            assert result.agent_turn is not None and result.agent_turn.text == "Hi! How can I help?"
            assert result.response_source == "provider"
            assert result.latency is not None
            assert result.latency.total_ms < 2000
            assert result.latency.is_optimal is True

            types = t.types()
            assert types[:5] == ["session_joined", "transcript_entry", "voice_status", "transcript_entry", "voice_status"]
            assert types[-1] == "voice_status"
            statuses = [m["status"] for m in t.of_type("voice_status")]
            assert statuses == ["processing", "speaking", "idle"]

            entries = [m["entry"] for m in t.of_type("transcript_entry")]
            assert [e["speaker"] for e in entries] == ["participant", "agent"]
            assert entries[1]["text"] == "Hi! How can I help?"

            audio = t.of_type("audio_stream")
            assert audio, "expected streamed audio"
            assert [m["chunkIndex"] for m in audio] == list(range(len(audio)))
            assert [m["isLast"] for m in audio].count(True) == 1 and audio[-1]["isLast"] is True
            assert all(m["transcriptId"] == entries[1]["id"] for m in audio)
            blob = b"".join(base64.b64decode(m["audioData"]) for m in audio)
            assert len(blob) == sum(len(c.data) for c in result.audio_job.chunks)
        finally:
            await h.stop()

    asyncio.run(_run())


def test_provider_timeout_falls_back_and_still_speaks() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=60_000, provider_timeout_ms=1000)
        try:
            h.orch.start_call("c1")
            t, _ = h.observe("c1")
            result = await h.say("c1", "Hello")

            assert result.response_source == "fallback"
            assert result.fallback_reason == "timeout"
            assert result.agent_turn is not None
            assert result.agent_turn.metadata["fallback_reason"] == "timeout"
            assert t.of_type("audio_stream")
            assert [m["status"] for m in t.of_type("voice_status")][-1] == "idle"
            assert h.metrics.get(PIPE["gateway_timeout_total"]) == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_synthesis_failure_sends_text_only_response() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=0)
        h.synthesis.error = SynthesisFailure("voice offline")
        try:
            h.orch.start_call("c1")
            t, _ = h.observe("c1")
            result = await h.say("c1", "What are your hours?")

            assert result.audio_job is not None and result.audio_job.status == "failed"
            assert t.of_type("audio_stream") == []
            text_only = t.of_type("audio_response")
            assert len(text_only) == 1
            assert "audioData" not in text_only[0]
            assert text_only[0]["text"] == result.agent_turn.text
            assert [m["status"] for m in t.of_type("voice_status")] == ["processing", "idle"]
        finally:
            await h.stop()

    asyncio.run(_run())


def test_batch_voice_setting_sends_single_audio_response() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=0)
        try:
            h.orch.start_call("c1", {"voice": {"streaming": False, "voice_id": "voice-x"}})
            t, _ = h.observe("c1")
            await h.say("c1", "Tell me something")
            responses = t.of_type("audio_response")
            assert len(responses) == 1
            assert responses[0]["contentType"] == "audio/mpeg"
            assert base64.b64decode(responses[0]["audioData"])
            assert h.orch.streamer.voice_settings("c1").voice_id == "voice-x"
        finally:
            await h.stop()

    asyncio.run(_run())


def test_reset_mid_flight_discards_reply() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=500)
        try:
            h.orch.start_call("c1")
            t, _ = h.observe("c1")
            task = asyncio.create_task(h.orch.handle_participant_text("c1", "Tell me about pricing"))
            await settle()
            await h.clock.advance(100)
            h.orch.reset_call("c1")
            result = await h.run_until_done(task)

            assert result.agent_turn is None
            assert h.orch.registry.require("c1").turns == []
            assert len(t.of_type("context_reset")) == 1
            assert [m["entry"]["speaker"] for m in t.of_type("transcript_entry")] == ["participant"]
            assert t.of_type("audio_stream") == []
            assert h.orch.latency.current("c1") is None

            after = await h.say("c1", "hello again")
            assert after.participant_turn.seq == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_overlapping_utterances_run_one_cycle_at_a_time() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reply=_LONG_REPLY, reasoning_delay_ms=50, audio_chunk_pacing_ms=50)
        try:
            h.orch.start_call("c1")
            t, _ = h.observe("c1")
            first = asyncio.create_task(h.orch.handle_participant_text("c1", "Why was I charged twice?"))
            await settle()
            await h.clock.advance(30)
            second = asyncio.create_task(h.orch.handle_participant_text("c1", "Are you still there?"))
            await settle()
            assert h.orch.engine.pending("c1") == 2

            a = await h.run_until_done(first)
            b = await h.run_until_done(second)

            assert [x.seq for x in h.orch.registry.require("c1").turns] == [1, 2, 3, 4]
            assert a.agent_turn is not None and b.agent_turn is not None
            audio = t.of_type("audio_stream")
            assert _runs([m["transcriptId"] for m in audio]) == [a.agent_turn.turn_id, b.agent_turn.turn_id]
            for job in (a.audio_job, b.audio_job):
                assert job is not None
                indexes = [m["chunkIndex"] for m in audio if m["transcriptId"] == job.transcript_id]
                assert indexes == list(range(len(job.chunks)))
            statuses = [m["status"] for m in t.of_type("voice_status")]
            assert statuses == ["processing", "speaking", "idle"] * 2

            for result in (a, b):
                assert result.latency is not None
                assert result.latency.total_ms >= 50
                assert {"ai_processing", "text_to_speech", "audio_transmission"} <= set(result.latency.breakdown)
            assert h.metrics.get(PIPE["cycle_completed_total"]) == 2
            assert h.orch.latency.current("c1") is None
        finally:
            await h.stop()

    asyncio.run(_run())


def test_waiting_utterances_beyond_queue_limit_are_rejected() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=200, turn_queue_max=0)
        try:
            h.orch.start_call("c1")
            t, _ = h.observe("c1")
            first = asyncio.create_task(h.orch.handle_participant_text("c1", "Hello"))
            await settle()
            with pytest.raises(QueueOverflow):
                await h.orch.handle_participant_text("c1", "Hello again")
            await h.run_until_done(first)
            assert [x.seq for x in h.orch.registry.require("c1").turns] == [1, 2]
            assert h.metrics.get(PIPE["turn_requests_rejected_total"]) == 1
            assert [m["status"] for m in t.of_type("voice_status")] == ["processing", "speaking", "idle"]
        finally:
            await h.stop()

    asyncio.run(_run())


def test_many_calls_with_interleaved_cycles_stay_ordered() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reply=_LONG_REPLY, reasoning_delay_ms=40, audio_chunk_pacing_ms=50)
        call_ids = [f"c{i}" for i in range(6)]
        try:
            observers = {}
            for cid in call_ids:
                h.orch.start_call(cid)
                observers[cid] = h.observe(cid)[0]
            tasks = [
                asyncio.create_task(h.orch.handle_participant_text(cid, f"question {n} from {cid}"))
                for n in range(3)
                for cid in call_ids
            ]
            results = await h.run_until_done(asyncio.gather(*tasks))

            assert len(results) == 18
            assert h.metrics.get(PIPE["cycle_completed_total"]) == 18
            for cid in call_ids:
                turns = h.orch.registry.require(cid).turns
                assert [x.seq for x in turns] == list(range(1, 7))
                assert [x.speaker for x in turns] == [Speaker.PARTICIPANT, Speaker.AGENT] * 3

                t = observers[cid]
                agent_ids = [x.turn_id for x in turns if x.speaker is Speaker.AGENT]
                audio = t.of_type("audio_stream")
                assert _runs([m["transcriptId"] for m in audio]) == agent_ids
                for tid in agent_ids:
                    indexes = [m["chunkIndex"] for m in audio if m["transcriptId"] == tid]
                    assert indexes == list(range(len(indexes)))
                assert [m["status"] for m in t.of_type("voice_status")] == ["processing", "speaking", "idle"] * 3
        finally:
            await h.stop()

    asyncio.run(_run())


def test_reset_during_synthesis_speaks_nothing_afterwards() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=0, synthesis_delay_ms=100)
        try:
            h.orch.start_call("c1")
            t, _ = h.observe("c1")
            task = asyncio.create_task(h.orch.handle_participant_text("c1", "Tell me about pricing"))
            await settle()
            await h.clock.advance(50)
            assert len(h.synthesis.calls) == 1
            h.orch.reset_call("c1")
            result = await h.run_until_done(task)

            assert result.audio_job is not None and result.audio_job.status == "discarded"
            types = t.types()
            after = types[types.index("context_reset") + 1 :]
            assert "audio_stream" not in after and "audio_response" not in after
            assert [m["status"] for m in t.of_type("voice_status")] == ["processing", "idle"]
            assert h.metrics.get(PIPE["synthesis_discarded_total"]) == 1
            assert h.orch.streamer.queue_depth("c1") == 0
        finally:
            await h.stop()

    asyncio.run(_run())


def test_escalation_is_broadcast_once() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=0)
        try:
            h.orch.start_call("c1")
            t, _ = h.observe("c1")
            first = await h.say("c1", "I want to speak to a manager")
            await h.say("c1", "a manager, please")
            assert first.escalated is True
            esc = t.of_type("escalation")
            assert len(esc) == 1
            assert esc[0]["reason"] == "participant_request"
        finally:
            await h.stop()

    asyncio.run(_run())


def test_end_call_notifies_observers_and_rejects_new_turns() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=0)
        try:
            h.orch.start_call("c1")
            t, _ = h.observe("c1")
            await h.say("c1", "Hello")
            await h.clock.advance(1500)
            summary = h.orch.end_call("c1", "ended")
            await h.flush()

            assert summary is not None and summary["message_count"] == 2
            ended = t.of_type("call_ended")
            assert len(ended) == 1
            assert ended[0]["reason"] == "ended"
            assert ended[0]["durationMs"] >= 1500
            assert h.orch.hub.connection_count("c1") == 0
            assert h.orch.streamer.is_active("c1") is False

            with pytest.raises(SessionNotFound):
                await h.orch.handle_participant_text("c1", "anyone there?")

            await h.orch.writer.drain()
            kinds = [k for k, cid, _ in h.persistence.records if cid == "c1"]
            assert kinds.count("turn") == 2
            assert "synthesis" in kinds
            assert kinds[-1] == "summary"
        finally:
            await h.stop()

    asyncio.run(_run())


def test_inactivity_timeout_ends_call() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(session_inactivity_timeout_ms=1000)
        try:
            h.orch.start_call("c1")
            t, _ = h.observe("c1")
            for _ in range(12):
                await settle(5)
                await h.clock.advance(100)
            await h.flush()
            assert h.orch.registry.get("c1") is None
            assert t.of_type("call_ended")[0]["reason"] == "inactivity_timeout"
        finally:
            await h.stop()

    asyncio.run(_run())


def test_join_auto_starts_or_rejects() -> None:
    async def _run() -> None:
        h = PipelineHarness.start()
        try:
            t, _ = h.observe("fresh")
            await h.flush()
            assert h.orch.registry.get("fresh") is not None
            assert t.of_type("session_joined")[0]["transcript"] == []
        finally:
            await h.stop()

        strict = PipelineHarness.start(auto_start_on_join=False)
        try:
            with pytest.raises(SessionNotFound):
                strict.observe("ghost")
        finally:
            await strict.stop()

    asyncio.run(_run())


def test_late_observer_receives_transcript_so_far() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=0)
        try:
            h.orch.start_call("c1")
            await h.say("c1", "Hello")
            t, _ = h.observe("c1")
            await h.flush()
            joined = t.of_type("session_joined")[0]
            assert [e["speaker"] for e in joined["transcript"]] == ["participant", "agent"]
            assert joined["callId"] == "c1"
        finally:
            await h.stop()

    asyncio.run(_run())


def test_inbound_socket_messages() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=0)
        try:
            h.orch.start_call("c1")
            t, conn = h.observe("c1")
            await h.orch.handle_inbound("c1", conn, _parse({"type": "ping", "timestamp": 42}))
            await h.orch.handle_inbound("c1", conn, _parse({"type": "participant_message", "text": "Hello"}))
            await h.orch.drain()
            await h.flush()
            assert t.of_type("pong")[0]["timestamp"] == 42
            assert len(t.of_type("transcript_entry")) == 2

            await h.orch.handle_inbound("c1", conn, _parse({"type": "participant_message", "text": "   "}))
            await h.orch.drain()
            await h.flush()
            assert t.of_type("error")[-1]["code"] == "malformed_input"

            await h.orch.handle_inbound("c1", conn, _parse({"type": "reset_context"}))
            await h.orch.handle_inbound("c1", conn, _parse({"type": "end_call"}))
            await h.flush()
            assert t.of_type("call_ended")[0]["reason"] == "ended_by_client"

            with pytest.raises(SessionNotFound):
                await h.orch.handle_inbound("c1", conn, _parse({"type": "end_call"}))
        finally:
            await h.stop()

    asyncio.run(_run())


def test_demo_call_plays_and_cancels() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(demo_initial_delay_ms=0)
        try:
            with pytest.raises(MalformedInput):
                h.orch.start_demo("NOT_A_TEMPLATE")
            assert h.orch.registry.active_count() == 0

            run = h.orch.start_demo("billing_inquiry")
            assert run.call_id.startswith("demo-call-")
            t, _ = h.observe(run.call_id)
            for _ in range(40):
                await settle(5)
                await h.clock.advance(100)
            await h.flush()
            assert len(t.of_type("transcript_entry")) >= 2
            assert t.of_type("sentiment_update")

            assert h.orch.cancel_demo(run.call_id) is True
            await h.flush()
            assert t.of_type("call_ended")[0]["reason"] == "demo_cancelled"
            assert h.metrics.get(PIPE["demo_runs_cancelled_total"]) == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def test_stats_and_performance_report() -> None:
    async def _run() -> None:
        h = PipelineHarness.start(reasoning_delay_ms=20)
        try:
            h.orch.start_call("c1")
            await h.say("c1", "Hello")
            await h.say("c1", "what are your hours")
            stats = h.orch.call_stats("c1")
            assert stats["message_count"] == 4
            assert stats["response_count"] == 2
            assert stats["audio"]["queue_size"] == 0
            report = h.orch.performance_report()
            assert report["summary"]["total_cycles"] == 2
            assert h.orch.stats()["sessions"]["active_calls"] == 1
        finally:
            await h.stop()

    asyncio.run(_run())


def _parse(obj: dict):
    from voxassist.protocol import parse_inbound_obj

    return parse_inbound_obj(obj)
