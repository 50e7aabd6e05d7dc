from __future__ import annotations

import os

from .clock import Clock
from .config import PipelineConfig
from .llm_client import (
    FakeReasoningProvider,
    GeminiReasoningProvider,
    OpenAIReasoningProvider,
    ReasoningProvider,
)
from .persistence import JsonlPersistence, NullPersistence, PersistenceSink
from .tts_client import ElevenLabsSynthesisProvider, FakeSynthesisProvider, SynthesisProvider


def build_reasoning_provider(cfg: PipelineConfig, *, clock: Clock) -> ReasoningProvider:
    if cfg.reasoning_provider == "gemini":
        return GeminiReasoningProvider(
            api_key=cfg.gemini_api_key or os.getenv("GEMINI_API_KEY", ""),
            model=cfg.gemini_model,
            max_output_tokens=cfg.gemini_max_output_tokens,
        )
    if cfg.reasoning_provider == "openai":
        return OpenAIReasoningProvider(
            api_key=cfg.openai_api_key or os.getenv("OPENAI_API_KEY", ""),
            model=cfg.openai_model,
            timeout_ms=cfg.provider_timeout_ms,
        )
    return FakeReasoningProvider(clock=clock)


def build_synthesis_provider(cfg: PipelineConfig, *, clock: Clock) -> SynthesisProvider:
    if cfg.synthesis_provider == "elevenlabs":
        return ElevenLabsSynthesisProvider(
            api_key=cfg.elevenlabs_api_key or os.getenv("ELEVENLABS_API_KEY", ""),
            model=cfg.elevenlabs_model,
            output_format=cfg.elevenlabs_output_format,
            base_url=cfg.elevenlabs_base_url,
            timeout_s=max(1.0, cfg.synthesis_timeout_ms / 1000.0),
        )
    return FakeSynthesisProvider(clock=clock)


def build_persistence(cfg: PipelineConfig) -> PersistenceSink:
    if cfg.persistence_jsonl_path:
        return JsonlPersistence(cfg.persistence_jsonl_path)
    return NullPersistence()
