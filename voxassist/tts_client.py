from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Protocol

import httpx

from .clock import Clock
from .errors import ProviderRejected, ProviderTimeout, ProviderUnavailable, SynthesisFailure


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class VoiceSettings:
    voice_id: str = "pNInz6obpgDQGcFmaJgB"
    stability: float = 0.5
    similarity_boost: float = 0.5
    style: float = 0.0
    use_speaker_boost: bool = True
    streaming: bool = True
    language: str = "en"
    speed: float = 1.0

    def merged(self, **updates: Any) -> "VoiceSettings":
        known = {k: v for k, v in updates.items() if k in self.__dataclass_fields__ and v is not None}
        return replace(self, **known)

    def provider_payload(self) -> dict[str, Any]:
        return {
            "stability": float(self.stability),
            "similarity_boost": float(self.similarity_boost),
            "style": float(self.style),
            "use_speaker_boost": bool(self.use_speaker_boost),
        }


@dataclass(frozen=True, slots=True)
class SynthesisResult:
    audio: bytes
    content_type: str = "audio/mpeg"


class SynthesisProvider(Protocol):
    async def call(self, text: str, voice_id: str, voice_settings: VoiceSettings) -> SynthesisResult:
        ...

    async def aclose(self) -> None:
        ...


def fake_audio_for(text: str, *, bytes_per_char: int = 64) -> bytes:
    """Deterministic pseudo-audio whose length scales with the text."""
    size = max(1, len(text or "")) * max(1, int(bytes_per_char))
    seed = hashlib.sha256((text or "").encode("utf-8")).digest()
    reps = size // len(seed) + 1
    return (seed * reps)[:size]


@dataclass(slots=True)
class FakeSynthesisProvider:
    clock: Clock
    audio: Optional[bytes] = None
    bytes_per_char: int = 64
    delay_ms: int = 0
    error: Optional[BaseException] = None
    content_type: str = "audio/mpeg"
    calls: list[str] = field(default_factory=list)

    async def call(self, text: str, voice_id: str, voice_settings: VoiceSettings) -> SynthesisResult:
        self.calls.append(text)
        if self.delay_ms > 0:
            await self.clock.sleep_ms(self.delay_ms)
        if self.error is not None:
            raise self.error
        data = self.audio if self.audio is not None else fake_audio_for(text, bytes_per_char=self.bytes_per_char)
        return SynthesisResult(audio=data, content_type=self.content_type)

    async def aclose(self) -> None:
        return


def _retry_after_ms(response: httpx.Response) -> Optional[int]:
    raw = response.headers.get("retry-after", "")
    try:
        return max(0, int(float(raw) * 1000))
    except (ValueError, OverflowError):
        return None


class ElevenLabsSynthesisProvider:
    """
    ElevenLabs text-to-speech over REST.

    One pooled httpx.AsyncClient per provider; close it with aclose() on shutdown.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "eleven_turbo_v2_5",
        output_format: str = "mp3_22050_32",
        base_url: str = "https://api.elevenlabs.io/v1",
        timeout_s: float = 15.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._output_format = output_format
        self._base_url = base_url.rstrip("/")
        self._timeout_s = float(timeout_s)
        self._http: Optional[httpx.AsyncClient] = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout_s)
        return self._http

    async def call(self, text: str, voice_id: str, voice_settings: VoiceSettings) -> SynthesisResult:
        if not self._api_key:
            raise ProviderUnavailable("ELEVENLABS_API_KEY is not configured")

        payload: dict[str, Any] = {
            "text": text,
            "model_id": self._model,
            "voice_settings": voice_settings.provider_payload(),
        }
        if voice_settings.speed != 1.0:
            payload["speed"] = float(voice_settings.speed)

        try:
            response = await self._client().post(
                f"{self._base_url}/text-to-speech/{voice_id}",
                params={"output_format": self._output_format},
                headers={"xi-api-key": self._api_key, "Content-Type": "application/json"},
                json=payload,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"elevenlabs request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"elevenlabs request failed: {e}") from e

        if response.status_code == 429:
            raise ProviderUnavailable("elevenlabs rate limited", retry_after_ms=_retry_after_ms(response))
        if response.status_code in (400, 422):
            raise ProviderRejected(reason=f"elevenlabs_{response.status_code}")
        if response.status_code >= 400:
            raise SynthesisFailure(f"elevenlabs returned HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "audio/mpeg").split(";")[0].strip()
        logger.debug("elevenlabs synthesized %d bytes", len(response.content))
        return SynthesisResult(audio=response.content, content_type=content_type or "audio/mpeg")

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
