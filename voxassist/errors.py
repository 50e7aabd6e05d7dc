from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for conversation pipeline failures."""

    code = "pipeline_error"


class ProviderTimeout(PipelineError):
    code = "provider_timeout"


class ProviderRejected(PipelineError):
    """The provider refused the request or its output (content safety)."""

    code = "provider_rejected"

    def __init__(self, message: str = "", *, reason: str = "") -> None:
        super().__init__(message or f"provider rejected request: {reason or 'unspecified'}")
        self.reason = reason


class ProviderUnavailable(PipelineError):
    """Rate limited, unreachable, or misconfigured provider."""

    code = "provider_unavailable"

    def __init__(self, message: str = "", *, retry_after_ms: Optional[int] = None) -> None:
        super().__init__(message or "provider unavailable")
        self.retry_after_ms = retry_after_ms


class SynthesisFailure(PipelineError):
    code = "synthesis_failure"


class SessionNotFound(PipelineError):
    code = "session_not_found"

    def __init__(self, call_id: str) -> None:
        super().__init__(f"Session not found: {call_id}")
        self.call_id = call_id


class MalformedInput(PipelineError):
    code = "malformed_input"


class QueueOverflow(PipelineError):
    code = "queue_overflow"


class TransportDeliveryFailure(PipelineError):
    code = "transport_delivery_failure"


# Only these reach callers; everything else is absorbed at a component boundary.
CLIENT_ERRORS = (SessionNotFound, MalformedInput, QueueOverflow)
