from __future__ import annotations

from typing import Generator

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from voxassist.config import PipelineConfig
from voxassist.server import create_app


def _config(**overrides) -> PipelineConfig:
    base = dict(audio_chunk_pacing_ms=0, demo_initial_delay_ms=0, log_level="WARNING")
    base.update(overrides)
    return PipelineConfig(**base)


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    with TestClient(create_app(_config())) as c:
        yield c


def _receive_until(ws, msg_type: str, *, status: str | None = None, limit: int = 200) -> list[dict]:
    seen: list[dict] = []
    for _ in range(limit):
        msg = ws.receive_json()
        seen.append(msg)
        if msg["type"] == msg_type and (status is None or msg.get("status") == status):
            return seen
    raise AssertionError(f"no {msg_type} frame within {limit} messages")


def test_healthz(client: TestClient) -> None:
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_call_lifecycle_over_http(client: TestClient) -> None:
    resp = client.post("/api/calls/c1", json={"options": {"voice": {"streaming": False}}})
    assert resp.status_code == 200
    assert resp.json()["call_id"] == "c1"

    resp = client.post("/api/calls/c1/messages", json={"text": "Hello", "sttMs": 120})
    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["participant_turn"]["speaker"] == "participant"
    assert result["agent_turn"]["speaker"] == "agent"
    assert result["response_source"] == "provider"
    assert result["audio_status"] == "completed"
    assert result["audio_chunks"] == 1
    assert result["latency"]["breakdown"]["speech_to_text"]["duration_ms"] == 120

    resp = client.get("/api/calls/c1")
    body = resp.json()
    assert body["stats"]["message_count"] == 2
    assert [e["speaker"] for e in body["transcript"]] == ["participant", "agent"]

    resp = client.post("/api/calls/c1/reset")
    assert resp.status_code == 200
    assert client.get("/api/calls/c1").json()["transcript"] == []

    resp = client.delete("/api/calls/c1")
    assert resp.status_code == 200
    assert resp.json()["summary"]["reason"] == "ended_by_api"

    resp = client.get("/api/calls/c1")
    assert resp.status_code == 404
    assert resp.json()["code"] == "session_not_found"


def test_error_codes(client: TestClient) -> None:
    assert client.delete("/api/calls/nope").status_code == 404
    assert client.post("/api/calls/nope/messages", json={"text": "hi"}).status_code == 404

    client.post("/api/calls/c2")
    resp = client.post("/api/calls/c2/messages", json={"text": "   "})
    assert resp.status_code == 400
    assert resp.json() == {"ok": False, "error": "participant text must be non-empty", "code": "malformed_input"}

    # Body schema violations are FastAPI's own 422.
    assert client.post("/api/calls/c2/messages", json={"text": ""}).status_code == 422
    assert client.post("/api/calls/c2/messages", json={"text": "hi", "confidence": 3}).status_code == 422


def test_voice_settings_update(client: TestClient) -> None:
    client.post("/api/calls/c3")
    resp = client.put("/api/calls/c3/voice", json={"voice_id": "v-2", "stability": 0.8, "bogus": 1})
    assert resp.status_code == 200
    voice = resp.json()["voice"]
    assert voice["voice_id"] == "v-2"
    assert voice["stability"] == pytest.approx(0.8)

    assert client.put("/api/calls/c3/voice", json=["not", "an", "object"]).status_code == 400
    assert client.put("/api/calls/missing/voice", json={"speed": 1.1}).status_code == 404


def test_demo_endpoints(client: TestClient) -> None:
    resp = client.post("/api/demo-calls", json={"templateId": "escalation"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["template_id"] == "ESCALATION"
    assert body["lines"] == 5
    call_id = body["call_id"]

    stats = client.get("/api/stats").json()["stats"]
    assert call_id in stats["sessions"]["call_ids"]

    assert client.delete(f"/api/demo-calls/{call_id}").status_code == 200
    assert client.delete(f"/api/demo-calls/{call_id}").status_code == 404
    assert client.post("/api/demo-calls", json={"templateId": "KARAOKE"}).status_code == 400


def test_metrics_and_performance(client: TestClient) -> None:
    client.post("/api/calls/c4")
    client.post("/api/calls/c4/messages", json={"text": "what are your hours"})
    text = client.get("/metrics").text
    assert "# TYPE voxassist_gateway_requests_total counter" in text
    assert "voxassist_gateway_requests_total 1" in text
    assert "voxassist_latency_cycle_total_ms_count 1" in text
    snapshot = client.get("/api/metrics").json()["metrics"]
    assert snapshot["counters"]["session.started_total"] == 1
    report = client.get("/api/performance").json()["report"]
    assert report["summary"]["total_cycles"] == 1


def test_websocket_conversation(client: TestClient) -> None:
    with client.websocket_connect("/ws/calls/w1") as ws:
        joined = ws.receive_json()
        assert joined == {"type": "session_joined", "callId": "w1", "transcript": []}

        ws.send_json({"type": "ping", "timestamp": 5})
        assert ws.receive_json() == {"type": "pong", "timestamp": 5}

        ws.send_text("{nope")
        err = ws.receive_json()
        assert err["type"] == "error" and err["code"] == "bad_json"

        ws.send_json({"type": "participant_message", "text": "Hello"})
        frames = _receive_until(ws, "voice_status", status="idle")
        types = [f["type"] for f in frames]
        assert types[0] == "transcript_entry"
        assert "audio_stream" in types
        assert [f["status"] for f in frames if f["type"] == "voice_status"] == ["processing", "speaking", "idle"]

        ws.send_json({"type": "end_call"})
        ended = _receive_until(ws, "call_ended")[-1]
        assert ended["reason"] == "ended_by_client"


def test_websocket_rejected_without_auto_start() -> None:
    with TestClient(create_app(_config(auto_start_on_join=False))) as c:
        with pytest.raises(WebSocketDisconnect) as info:
            with c.websocket_connect("/ws/calls/ghost") as ws:
                ws.receive_json()
        assert info.value.code == 1008
