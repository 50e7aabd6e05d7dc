from __future__ import annotations

import os
from dataclasses import dataclass


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _getenv_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _getenv_choice(name: str, default: str, choices: set[str], *, upper: bool = False) -> str:
    raw = _getenv_str(name, default).strip()
    raw = raw.upper() if upper else raw.lower()
    return raw if raw in choices else default


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    # Session registry
    session_inactivity_timeout_ms: int = 30 * 60 * 1000
    context_max_turns: int = 10
    turn_queue_max: int = 4
    auto_start_on_join: bool = True
    escalation_negative_run: int = 3

    # Response generation gateway
    reasoning_provider: str = "fake"  # fake | gemini | openai
    provider_timeout_ms: int = 30_000
    response_cache_ttl_ms: int = 5 * 60 * 1000
    response_cache_max_entries: int = 100
    prompt_history_turns: int = 3
    agent_name: str = "VoxAssist"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_max_output_tokens: int = 60
    openai_api_key: str = ""
    openai_model: str = "gpt-5-mini"

    # Speech synthesis streamer
    synthesis_provider: str = "fake"  # fake | elevenlabs
    synthesis_timeout_ms: int = 15_000
    synthesis_streaming: bool = True
    audio_chunk_bytes: int = 1024
    audio_chunk_pacing_ms: int = 50
    audio_queue_max: int = 10
    audio_delivery_timeout_ms: int = 10_000
    # - SSML: inserts <break time="..."/> tags at sentence boundaries.
    # - DASH_PAUSE: spaced dashes (" - ") as the pause primitive.
    # - RAW_TEXT: no pauses inserted.
    speech_markup_mode: str = "SSML"  # SSML | DASH_PAUSE | RAW_TEXT
    sentence_pause_ms: int = 500
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "pNInz6obpgDQGcFmaJgB"
    elevenlabs_model: str = "eleven_turbo_v2_5"
    elevenlabs_output_format: str = "mp3_22050_32"
    elevenlabs_base_url: str = "https://api.elevenlabs.io/v1"

    # Real-time transport
    ws_max_frame_bytes: int = 262_144
    connection_queue_max: int = 256
    ws_write_timeout_ms: int = 400
    ws_structured_logging: bool = False

    # Latency instrumentation
    latency_budget_ms: int = 2000
    latency_window: int = 100
    stt_target_ms: int = 500
    ai_target_ms: int = 1000
    tts_target_ms: int = 1000
    transmission_target_ms: int = 300
    latency_stale_cycle_ms: int = 5 * 60 * 1000

    # Demo simulator
    demo_initial_delay_ms: int = 500
    demo_agent_delay_min_ms: int = 800
    demo_agent_delay_max_ms: int = 1600
    demo_participant_delay_min_ms: int = 1800
    demo_participant_delay_max_ms: int = 3200
    demo_seed: int = 0  # 0 -> unseeded

    # Persistence collaborator
    persistence_jsonl_path: str = ""  # empty -> no persistence

    # Logging
    log_level: str = "INFO"

    def stage_targets_ms(self) -> dict[str, int]:
        return {
            "speech_to_text": int(self.stt_target_ms),
            "ai_processing": int(self.ai_target_ms),
            "text_to_speech": int(self.tts_target_ms),
            "audio_transmission": int(self.transmission_target_ms),
        }

    @staticmethod
    def from_env() -> "PipelineConfig":
        return PipelineConfig(
            session_inactivity_timeout_ms=_getenv_int(
                "SESSION_INACTIVITY_TIMEOUT_MS", 30 * 60 * 1000
            ),
            context_max_turns=max(1, _getenv_int("CONTEXT_MAX_TURNS", 10)),
            turn_queue_max=max(0, _getenv_int("TURN_QUEUE_MAX", 4)),
            auto_start_on_join=_getenv_bool("AUTO_START_ON_JOIN", True),
            escalation_negative_run=max(1, _getenv_int("ESCALATION_NEGATIVE_RUN", 3)),
            reasoning_provider=_getenv_choice(
                "REASONING_PROVIDER", "fake", {"fake", "gemini", "openai"}
            ),
            provider_timeout_ms=_getenv_int("PROVIDER_TIMEOUT_MS", 30_000),
            response_cache_ttl_ms=_getenv_int("RESPONSE_CACHE_TTL_MS", 5 * 60 * 1000),
            response_cache_max_entries=max(1, _getenv_int("RESPONSE_CACHE_MAX_ENTRIES", 100)),
            prompt_history_turns=max(0, _getenv_int("PROMPT_HISTORY_TURNS", 3)),
            agent_name=_getenv_str("AGENT_NAME", "VoxAssist"),
            gemini_api_key=_getenv_str("GEMINI_API_KEY", ""),
            gemini_model=_getenv_str("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_max_output_tokens=_getenv_int("GEMINI_MAX_OUTPUT_TOKENS", 60),
            openai_api_key=_getenv_str("OPENAI_API_KEY", ""),
            openai_model=_getenv_str("OPENAI_MODEL", "gpt-5-mini"),
            synthesis_provider=_getenv_choice(
                "SYNTHESIS_PROVIDER", "fake", {"fake", "elevenlabs"}
            ),
            synthesis_timeout_ms=_getenv_int("SYNTHESIS_TIMEOUT_MS", 15_000),
            synthesis_streaming=_getenv_bool("SYNTHESIS_STREAMING", True),
            audio_chunk_bytes=max(1, _getenv_int("AUDIO_CHUNK_BYTES", 1024)),
            audio_chunk_pacing_ms=max(0, _getenv_int("AUDIO_CHUNK_PACING_MS", 50)),
            audio_queue_max=max(1, _getenv_int("AUDIO_QUEUE_MAX", 10)),
            audio_delivery_timeout_ms=_getenv_int("AUDIO_DELIVERY_TIMEOUT_MS", 10_000),
            speech_markup_mode=_getenv_choice(
                "SPEECH_MARKUP_MODE", "SSML", {"SSML", "DASH_PAUSE", "RAW_TEXT"}, upper=True
            ),
            sentence_pause_ms=max(0, _getenv_int("SENTENCE_PAUSE_MS", 500)),
            elevenlabs_api_key=_getenv_str("ELEVENLABS_API_KEY", ""),
            elevenlabs_voice_id=_getenv_str("ELEVENLABS_VOICE_ID", "pNInz6obpgDQGcFmaJgB"),
            elevenlabs_model=_getenv_str("ELEVENLABS_MODEL", "eleven_turbo_v2_5"),
            elevenlabs_output_format=_getenv_str("ELEVENLABS_OUTPUT_FORMAT", "mp3_22050_32"),
            elevenlabs_base_url=_getenv_str("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io/v1"),
            ws_max_frame_bytes=_getenv_int("WS_MAX_FRAME_BYTES", 262_144),
            connection_queue_max=max(1, _getenv_int("CONNECTION_QUEUE_MAX", 256)),
            ws_write_timeout_ms=_getenv_int("WS_WRITE_TIMEOUT_MS", 400),
            ws_structured_logging=_getenv_bool("WEBSOCKET_STRUCTURED_LOGGING", False),
            latency_budget_ms=_getenv_int("LATENCY_BUDGET_MS", 2000),
            latency_window=max(1, _getenv_int("LATENCY_WINDOW", 100)),
            stt_target_ms=_getenv_int("STT_TARGET_MS", 500),
            ai_target_ms=_getenv_int("AI_TARGET_MS", 1000),
            tts_target_ms=_getenv_int("TTS_TARGET_MS", 1000),
            transmission_target_ms=_getenv_int("TRANSMISSION_TARGET_MS", 300),
            latency_stale_cycle_ms=_getenv_int("LATENCY_STALE_CYCLE_MS", 5 * 60 * 1000),
            demo_initial_delay_ms=max(0, _getenv_int("DEMO_INITIAL_DELAY_MS", 500)),
            demo_agent_delay_min_ms=max(0, _getenv_int("DEMO_AGENT_DELAY_MIN_MS", 800)),
            demo_agent_delay_max_ms=max(0, _getenv_int("DEMO_AGENT_DELAY_MAX_MS", 1600)),
            demo_participant_delay_min_ms=max(0, _getenv_int("DEMO_PARTICIPANT_DELAY_MIN_MS", 1800)),
            demo_participant_delay_max_ms=max(0, _getenv_int("DEMO_PARTICIPANT_DELAY_MAX_MS", 3200)),
            demo_seed=_getenv_int("DEMO_SEED", 0),
            persistence_jsonl_path=_getenv_str("PERSISTENCE_JSONL_PATH", ""),
            log_level=_getenv_choice(
                "LOG_LEVEL", "INFO", {"DEBUG", "INFO", "WARNING", "ERROR"}, upper=True
            ),
        )
