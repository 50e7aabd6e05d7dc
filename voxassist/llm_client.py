from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol

from .clock import Clock
from .errors import ProviderRejected, ProviderTimeout, ProviderUnavailable


@dataclass(frozen=True, slots=True)
class ProviderReply:
    text: str
    raw: Any = None


class ReasoningProvider(Protocol):
    async def call(self, prompt_text: str, context: Mapping[str, Any]) -> ProviderReply:
        ...

    async def aclose(self) -> None:
        ...


@dataclass(slots=True)
class FakeReasoningProvider:
    """
    Deterministic provider for tests and the offline demo.

    - reply_fn(prompt, context) wins over the fixed reply.
    - delay_ms is slept on the injected clock, so FakeClock controls timeouts.
    - error, when set, is raised after the delay.
    """

    clock: Clock
    reply: str = "Thanks for reaching out. How can I help you today?"
    reply_fn: Optional[Callable[[str, Mapping[str, Any]], str]] = None
    delay_ms: int = 0
    error: Optional[BaseException] = None
    calls: list[str] = field(default_factory=list)

    async def call(self, prompt_text: str, context: Mapping[str, Any]) -> ProviderReply:
        self.calls.append(prompt_text)
        if self.delay_ms > 0:
            await self.clock.sleep_ms(self.delay_ms)
        if self.error is not None:
            raise self.error
        text = self.reply_fn(prompt_text, context) if self.reply_fn is not None else self.reply
        return ProviderReply(text=text, raw={"provider": "fake"})

    async def aclose(self) -> None:
        return


def _status_code(e: BaseException) -> Optional[int]:
    for attr in ("code", "status_code", "status"):
        v = getattr(e, attr, None)
        if isinstance(v, int):
            return v
    return None


class GeminiReasoningProvider:
    """
    Gemini adapter using the official Google Gen AI SDK (google-genai).

    Lazily imports `google-genai` so tests do not require credentials or the dependency.
    Safety blocks surface as ProviderRejected, rate limits as ProviderUnavailable.
    """

    def __init__(
        self,
        *,
        api_key: str = "",
        model: str = "gemini-2.5-flash",
        max_output_tokens: int = 60,
        temperature: float = 0.7,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._max_output_tokens = int(max_output_tokens)
        self._temperature = float(temperature)

        self._client: Any = None
        self._aclient: Any = None
        self._types: Any = None

    def _ensure_client(self) -> tuple[Any, Any]:
        if self._aclient is not None:
            return (self._aclient, self._types)

        try:
            from google import genai  # type: ignore[import-not-found]
            from google.genai import types  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "GeminiReasoningProvider requires the optional dependency 'google-genai'. "
                "Install with: python3 -m pip install -e '.[gemini]'"
            ) from e

        if not self._api_key:
            raise ProviderUnavailable("GEMINI_API_KEY is not configured")

        self._client = genai.Client(api_key=self._api_key)
        self._aclient = self._client.aio
        self._types = types
        return (self._aclient, self._types)

    @staticmethod
    def _check_safety(response: Any) -> None:
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None)
        if block_reason:
            raise ProviderRejected(reason=f"prompt_blocked:{block_reason}")
        candidates = getattr(response, "candidates", None) or []
        if candidates:
            finish = str(getattr(candidates[0], "finish_reason", "") or "")
            if finish.upper().endswith("SAFETY"):
                raise ProviderRejected(reason="response_blocked:SAFETY")

    async def call(self, prompt_text: str, context: Mapping[str, Any]) -> ProviderReply:
        aclient, types_mod = self._ensure_client()
        cfg = types_mod.GenerateContentConfig(
            max_output_tokens=self._max_output_tokens,
            temperature=self._temperature,
        )
        try:
            response = await aclient.models.generate_content(
                model=self._model,
                contents=prompt_text,
                config=cfg,
            )
        except Exception as e:
            if _status_code(e) == 429:
                raise ProviderUnavailable("gemini rate limited") from e
            raise

        self._check_safety(response)
        return ProviderReply(text=str(getattr(response, "text", "") or ""), raw=response)

    async def aclose(self) -> None:
        if self._aclient is not None:
            try:
                await self._aclient.aclose()
            finally:
                self._aclient = None
                self._client = None
                self._types = None


class OpenAIReasoningProvider:
    """
    OpenAI Responses adapter.

    Lazy-imports the `openai` package so deterministic tests can run without credentials.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = "gpt-5-mini",
        reasoning_effort: str = "minimal",
        timeout_ms: int = 30_000,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.reasoning_effort = (reasoning_effort or "minimal").strip().lower()
        self.timeout_ms = int(timeout_ms)
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "OpenAIReasoningProvider requires the optional dependency 'openai'. "
                "Install with: python3 -m pip install -e '.[openai]'"
            ) from e
        self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def call(self, prompt_text: str, context: Mapping[str, Any]) -> ProviderReply:
        client = self._ensure_client()
        try:
            response = await client.responses.create(
                model=self.model,
                input=prompt_text,
                reasoning={"effort": self.reasoning_effort},
                timeout=max(1.0, self.timeout_ms / 1000.0),
            )
        except Exception as e:
            if e.__class__.__name__ == "APITimeoutError":
                raise ProviderTimeout("openai request timed out") from e
            code = _status_code(e)
            if code == 429:
                raise ProviderUnavailable("openai rate limited") from e
            if code == 400 and "content" in str(e).lower():
                raise ProviderRejected(reason="content_policy") from e
            raise
        return ProviderReply(text=str(getattr(response, "output_text", "") or ""), raw=response)

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res
            self._client = None
        return
