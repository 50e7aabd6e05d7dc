from __future__ import annotations
import json
from typing import Annotated, Any, Iterable, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .session_registry import Sentiment, Speaker, Turn

# Wire keys are camelCase; Python attributes stay snake_case.
_WIRE = dict(alias_generator=to_camel, populate_by_name=True)

class TranscriptEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", **_WIRE)
    id: str
    speaker: Literal["participant", "agent"]
    text: str
    timestamp: int
    confidence: float = 1.0
    sentiment: Literal["positive", "neutral", "negative"] = "neutral"

class InboundParticipantMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", **_WIRE)
    type: Literal["participant_message"]
    text: str
    confidence: Optional[float] = None
    stt_ms: Optional[int] = None
    metadata: Optional[dict[str, Any]] = None

class InboundResetContext(BaseModel):
    model_config = ConfigDict(extra="ignore", **_WIRE)
    type: Literal["reset_context"]

class InboundEndCall(BaseModel):
    model_config = ConfigDict(extra="ignore", **_WIRE)
    type: Literal["end_call"]

class InboundPing(BaseModel):
    model_config = ConfigDict(extra="ignore", **_WIRE)
    type: Literal["ping"]
    timestamp: Optional[int] = None

InboundEvent = Annotated[
    Union[
        InboundParticipantMessage,
        InboundResetContext,
        InboundEndCall,
        InboundPing,
    ],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundEvent)

class OutboundTranscriptEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["transcript_entry"] = "transcript_entry"
    entry: TranscriptEntry

class OutboundAudioResponse(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["audio_response"] = "audio_response"
    transcript_id: str
    text: str
    audio_data: Optional[str] = None
    content_type: Optional[str] = None

class OutboundAudioStream(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["audio_stream"] = "audio_stream"
    transcript_id: str
    text: str
    audio_data: str
    chunk_index: int
    total_chunks: int
    content_type: str
    is_last: bool

class OutboundVoiceStatus(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["voice_status"] = "voice_status"
    status: Literal["listening", "processing", "speaking", "idle"]

class OutboundError(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["error"] = "error"
    message: str
    code: Optional[str] = None

class OutboundSessionJoined(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["session_joined"] = "session_joined"
    call_id: str
    transcript: list[TranscriptEntry] = Field(default_factory=list)

class OutboundCallEnded(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["call_ended"] = "call_ended"
    call_id: str
    reason: str
    duration_ms: int

class OutboundContextReset(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["context_reset"] = "context_reset"
    call_id: str

class OutboundSentimentUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["sentiment_update"] = "sentiment_update"
    sentiment: Literal["positive", "neutral", "negative"]
    score: float

class OutboundEscalation(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["escalation"] = "escalation"
    call_id: str
    reason: str

class OutboundPong(BaseModel):
    model_config = ConfigDict(extra="forbid", **_WIRE)
    type: Literal["pong"] = "pong"
    timestamp: Optional[int] = None

OutboundEvent = Annotated[
    Union[
        OutboundTranscriptEntry,
        OutboundAudioResponse,
        OutboundAudioStream,
        OutboundVoiceStatus,
        OutboundError,
        OutboundSessionJoined,
        OutboundCallEnded,
        OutboundContextReset,
        OutboundSentimentUpdate,
        OutboundEscalation,
        OutboundPong,
    ],
    Field(discriminator="type"),
]

_outbound_adapter = TypeAdapter(OutboundEvent)

def parse_inbound_json(raw_text: str) -> InboundEvent:
    return parse_inbound_obj(json.loads(raw_text))

def parse_inbound_obj(obj: Any) -> InboundEvent:
    return _inbound_adapter.validate_python(obj)

def parse_outbound_json(raw_text: str) -> OutboundEvent:
    return _outbound_adapter.validate_python(json.loads(raw_text))

def dumps_outbound(event: OutboundEvent) -> str:
    return json.dumps(
        event.model_dump(by_alias=True, exclude_none=True),
        separators=(",", ":"),
        sort_keys=True,
    )

def entry_from_turn(turn: Turn) -> TranscriptEntry:
    return TranscriptEntry(
        id=turn.turn_id,
        speaker=turn.speaker.value,
        text=turn.text,
        timestamp=int(turn.timestamp_ms),
        confidence=float(turn.confidence),
        sentiment=turn.sentiment.value,
    )

def transcript_from_turns(turns: Iterable[Turn]) -> list[TranscriptEntry]:
    return [entry_from_turn(t) for t in turns]

def turns_from_transcript(entries: Iterable[TranscriptEntry]) -> list[Turn]:
    """Rebuild Turns from wire entries; sequence numbers are reassigned from 1."""
    out: list[Turn] = []
    for seq, e in enumerate(entries, start=1):
        out.append(
            Turn(
                seq=seq,
                speaker=Speaker(e.speaker),
                text=e.text,
                timestamp_ms=int(e.timestamp),
                confidence=float(e.confidence),
                sentiment=Sentiment(e.sentiment),
                turn_id=e.id,
            )
        )
    return out
