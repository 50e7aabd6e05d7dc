from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from voxassist.clock import FakeClock
from voxassist.config import PipelineConfig
from voxassist.errors import ProviderRejected, ProviderTimeout, ProviderUnavailable, SynthesisFailure
from voxassist.persistence import JsonlPersistence, NullPersistence
from voxassist.provider import build_persistence, build_reasoning_provider, build_synthesis_provider
from voxassist.tts_client import ElevenLabsSynthesisProvider, VoiceSettings


def test_provider_selection_defaults_to_fakes() -> None:
    clock = FakeClock()
    cfg = PipelineConfig()
    assert build_reasoning_provider(cfg, clock=clock).__class__.__name__ == "FakeReasoningProvider"
    assert build_synthesis_provider(cfg, clock=clock).__class__.__name__ == "FakeSynthesisProvider"


def test_provider_selection_gemini() -> None:
    cfg = PipelineConfig(reasoning_provider="gemini", gemini_model="gemini-2.5-flash")
    client = build_reasoning_provider(cfg, clock=FakeClock())
    assert client.__class__.__name__ == "GeminiReasoningProvider"


def test_provider_selection_openai() -> None:
    cfg = PipelineConfig(reasoning_provider="openai", openai_model="gpt-5-mini")
    client = build_reasoning_provider(cfg, clock=FakeClock())
    assert client.__class__.__name__ == "OpenAIReasoningProvider"


def test_provider_selection_elevenlabs() -> None:
    cfg = PipelineConfig(synthesis_provider="elevenlabs", elevenlabs_api_key="k")
    assert isinstance(build_synthesis_provider(cfg, clock=FakeClock()), ElevenLabsSynthesisProvider)


def test_build_persistence(tmp_path) -> None:
    assert isinstance(build_persistence(PipelineConfig()), NullPersistence)
    path = tmp_path / "records.jsonl"
    sink = build_persistence(PipelineConfig(persistence_jsonl_path=str(path)))
    assert isinstance(sink, JsonlPersistence)
    assert sink.path == str(path)


def _elevenlabs(handler) -> ElevenLabsSynthesisProvider:
    provider = ElevenLabsSynthesisProvider(api_key="secret", base_url="https://tts.test/v1")
    provider._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return provider


def test_elevenlabs_request_shape() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"\x01\x02\x03", headers={"content-type": "audio/mpeg; charset=binary"})

    async def _run() -> None:
        provider = _elevenlabs(handler)
        try:
            result = await provider.call("Hello there", "voice-1", VoiceSettings(stability=0.3, speed=1.2))
        finally:
            await provider.aclose()
        assert result.audio == b"\x01\x02\x03"
        assert result.content_type == "audio/mpeg"

    asyncio.run(_run())

    req = seen[0]
    assert req.url.path == "/v1/text-to-speech/voice-1"
    assert req.url.params["output_format"] == "mp3_22050_32"
    assert req.headers["xi-api-key"] == "secret"
    body = json.loads(req.content)
    assert body["text"] == "Hello there"
    assert body["voice_settings"]["stability"] == pytest.approx(0.3)
    assert body["speed"] == pytest.approx(1.2)


@pytest.mark.parametrize(
    "status, exc",
    [
        (429, ProviderUnavailable),
        (422, ProviderRejected),
        (500, SynthesisFailure),
    ],
)
def test_elevenlabs_error_mapping(status: int, exc: type) -> None:
    async def _run() -> None:
        provider = _elevenlabs(lambda request: httpx.Response(status))
        try:
            with pytest.raises(exc):
                await provider.call("hi", "voice-1", VoiceSettings())
        finally:
            await provider.aclose()

    asyncio.run(_run())


def test_elevenlabs_without_key_is_unavailable() -> None:
    async def _run() -> None:
        provider = ElevenLabsSynthesisProvider(api_key="")
        with pytest.raises(ProviderUnavailable):
            await provider.call("hi", "voice-1", VoiceSettings())

    asyncio.run(_run())


def test_elevenlabs_timeout_maps_to_provider_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow voice", request=request)

    async def _run() -> None:
        provider = _elevenlabs(handler)
        try:
            with pytest.raises(ProviderTimeout):
                await provider.call("hi", "voice-1", VoiceSettings())
        finally:
            await provider.aclose()

    asyncio.run(_run())


def test_elevenlabs_rate_limit_carries_retry_after() -> None:
    async def _run() -> None:
        provider = _elevenlabs(lambda request: httpx.Response(429, headers={"retry-after": "1.5"}))
        try:
            with pytest.raises(ProviderUnavailable) as info:
                await provider.call("hi", "voice-1", VoiceSettings())
        finally:
            await provider.aclose()
        assert info.value.retry_after_ms == 1500

    asyncio.run(_run())
