from __future__ import annotations

import pytest

from voxassist.config import PipelineConfig


def test_defaults() -> None:
    cfg = PipelineConfig()
    assert cfg.latency_budget_ms == 2000
    assert cfg.audio_queue_max == 10
    assert cfg.session_inactivity_timeout_ms == 30 * 60 * 1000
    assert cfg.stage_targets_ms() == {
        "speech_to_text": 500,
        "ai_processing": 1000,
        "text_to_speech": 1000,
        "audio_transmission": 300,
    }


def test_from_env_reads_and_clamps(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REASONING_PROVIDER", "OpenAI")
    monkeypatch.setenv("SYNTHESIS_PROVIDER", "elevenlabs")
    monkeypatch.setenv("AUDIO_QUEUE_MAX", "0")
    monkeypatch.setenv("LATENCY_BUDGET_MS", "1500")
    monkeypatch.setenv("SPEECH_MARKUP_MODE", "dash_pause")
    monkeypatch.setenv("SYNTHESIS_STREAMING", "off")
    monkeypatch.setenv("WEBSOCKET_STRUCTURED_LOGGING", "yes")
    monkeypatch.setenv("PROVIDER_TIMEOUT_MS", "not-a-number")
    monkeypatch.setenv("LOG_LEVEL", "verbose")

    cfg = PipelineConfig.from_env()
    assert cfg.reasoning_provider == "openai"
    assert cfg.synthesis_provider == "elevenlabs"
    assert cfg.audio_queue_max == 1
    assert cfg.latency_budget_ms == 1500
    assert cfg.speech_markup_mode == "DASH_PAUSE"
    assert cfg.synthesis_streaming is False
    assert cfg.ws_structured_logging is True
    assert cfg.provider_timeout_ms == 30_000
    assert cfg.log_level == "INFO"


def test_unknown_provider_falls_back_to_fake(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REASONING_PROVIDER", "mystery")
    monkeypatch.setenv("SYNTHESIS_PROVIDER", "")
    cfg = PipelineConfig.from_env()
    assert cfg.reasoning_provider == "fake"
    assert cfg.synthesis_provider == "fake"
