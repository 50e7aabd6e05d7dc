from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .clock import Clock
from .config import PipelineConfig
from .errors import ProviderTimeout, SynthesisFailure
from .log import log_event
from .metrics import PIPE, Metrics
from .persistence import FireAndForgetWriter
from .speech_markup import normalize_for_speech
from .tts_client import SynthesisProvider, VoiceSettings


logger = logging.getLogger(__name__)


JobStatus = Literal["generating", "completed", "failed", "discarded"]
DeliveryMode = Literal["batch", "streaming"]


@dataclass(frozen=True, slots=True)
class AudioChunk:
    job_id: str
    call_id: str
    index: int
    data: bytes
    content_type: str
    is_last: bool
    total_chunks: int
    text: str = ""
    transcript_id: str = ""
    mode: DeliveryMode = "streaming"


@dataclass(slots=True)
class SynthesisJob:
    job_id: str
    call_id: str
    source_text: str
    spoken_text: str
    created_ms: int
    transcript_id: str = ""
    mode: DeliveryMode = "streaming"
    status: JobStatus = "generating"
    chunks: list[AudioChunk] = field(default_factory=list)
    content_type: str = ""
    error: Optional[str] = None
    completed_ms: Optional[int] = None
    delivered: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def ok(self) -> bool:
        return self.status == "completed" and bool(self.chunks)

    @property
    def audio_bytes(self) -> int:
        return sum(len(c.data) for c in self.chunks)


def split_chunks(data: bytes, chunk_bytes: int) -> list[bytes]:
    size = max(1, int(chunk_bytes))
    return [data[i : i + size] for i in range(0, len(data), size)]


class SynthesisStreamer:
    """
    Turns agent text into ordered audio for one or more calls.

    Each call owns a bounded audio queue drained by a single consumer through
    next_audio(). Producers never block: on overflow the oldest queued chunk is
    dropped and a warning logged. Clearing a call's queue starts a new epoch;
    jobs begun in an earlier epoch are discarded instead of enqueued.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        provider: SynthesisProvider,
        clock: Clock,
        metrics: Optional[Metrics] = None,
        writer: Optional[FireAndForgetWriter] = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._clock = clock
        self._metrics = metrics if metrics is not None else Metrics()
        self._writer = writer
        self._default_settings = VoiceSettings(
            voice_id=config.elevenlabs_voice_id,
            streaming=bool(config.synthesis_streaming),
        )
        self._settings: dict[str, VoiceSettings] = {}
        self._queues: dict[str, BoundedDequeQueue[AudioChunk]] = {}
        self._jobs: dict[str, dict[str, SynthesisJob]] = {}
        self._job_seq = itertools.count(1)
        self._dropped: dict[str, int] = {}
        self._epochs: dict[str, int] = {}

    def initialize_call(self, call_id: str, voice_settings: Optional[VoiceSettings] = None) -> VoiceSettings:
        settings = voice_settings or self._settings.get(call_id) or self._default_settings
        self._settings[call_id] = settings
        if call_id not in self._queues:
            self._queues[call_id] = BoundedDequeQueue(self._config.audio_queue_max)
            self._jobs[call_id] = {}
            self._dropped[call_id] = 0
        return settings

    def is_active(self, call_id: str) -> bool:
        return call_id in self._queues

    def epoch(self, call_id: str) -> int:
        return self._epochs.get(call_id, 0)

    def voice_settings(self, call_id: str) -> VoiceSettings:
        return self._settings.get(call_id, self._default_settings)

    def update_voice_settings(self, call_id: str, **updates: Any) -> VoiceSettings:
        settings = self.voice_settings(call_id).merged(**updates)
        self._settings[call_id] = settings
        log_event(logger, "synthesis_streamer", "voice_settings_updated", call_id=call_id,
                  voice_id=settings.voice_id, streaming=settings.streaming)
        return settings

    async def synthesize(
        self,
        call_id: str,
        text: str,
        voice_settings: Optional[VoiceSettings] = None,
        *,
        transcript_id: str = "",
        mode: Optional[DeliveryMode] = None,
    ) -> SynthesisJob:
        if not self.is_active(call_id):
            self.initialize_call(call_id)
        settings = voice_settings or self.voice_settings(call_id)
        delivery: DeliveryMode = mode or ("streaming" if settings.streaming else "batch")
        spoken = normalize_for_speech(
            text,
            mode=self._config.speech_markup_mode,  # type: ignore[arg-type]
            pause_ms=self._config.sentence_pause_ms,
        )
        job = SynthesisJob(
            job_id=f"{call_id}-tts-{next(self._job_seq)}",
            call_id=call_id,
            source_text=text,
            spoken_text=spoken,
            created_ms=self._clock.now_ms(),
            transcript_id=transcript_id,
            mode=delivery,
        )
        queue, epoch = self._queues.get(call_id), self.epoch(call_id)
        self._jobs.setdefault(call_id, {})[job.job_id] = job
        self._metrics.inc(PIPE["synthesis_jobs_total"], 1)

        try:
            if not spoken:
                raise SynthesisFailure("nothing to synthesize")
            result = await self._clock.run_with_timeout(
                self._provider.call(spoken, settings.voice_id, settings),
                self._config.synthesis_timeout_ms,
            )
            if not result.audio:
                raise SynthesisFailure("provider returned empty audio")
        except asyncio.CancelledError:
            self._fail(job, "cancelled")
            raise
        except Exception as e:
            reason = "timeout" if isinstance(e, (TimeoutError, ProviderTimeout)) else str(e) or e.__class__.__name__
            self._fail(job, reason)
            log_event(logger, "synthesis_streamer", "synthesis_failed", level=logging.WARNING,
                      call_id=call_id, job_id=job.job_id, error=reason)
            return job

        if self._stale(call_id, queue, epoch):
            self._discard(job)
            return job

        elapsed = self._clock.now_ms() - job.created_ms
        self._metrics.observe(PIPE["synthesis_ms"], elapsed)
        job.content_type = result.content_type

        pieces = [result.audio] if delivery == "batch" else split_chunks(result.audio, self._config.audio_chunk_bytes)
        total = len(pieces)
        for idx, data in enumerate(pieces):
            if self._stale(call_id, queue, epoch):
                self._discard(job)
                return job
            chunk = AudioChunk(
                job_id=job.job_id,
                call_id=call_id,
                index=idx,
                data=data,
                content_type=result.content_type,
                is_last=idx == total - 1,
                total_chunks=total,
                text=text,
                transcript_id=transcript_id,
                mode=delivery,
            )
            job.chunks.append(chunk)
            self.enqueue_audio(call_id, chunk)
            self._metrics.inc(PIPE["synthesis_chunks_total"], 1)
            if delivery == "streaming" and not chunk.is_last and self._config.audio_chunk_pacing_ms > 0:
                await self._clock.sleep_ms(self._config.audio_chunk_pacing_ms)

        job.status = "completed"
        job.completed_ms = self._clock.now_ms()
        if self._writer is not None:
            self._writer.store_synthesis_metrics(
                call_id,
                {
                    "job_id": job.job_id,
                    "transcript_id": transcript_id,
                    "mode": delivery,
                    "chunks": total,
                    "audio_bytes": job.audio_bytes,
                    "duration_ms": job.completed_ms - job.created_ms,
                },
            )
        return job

    def _fail(self, job: SynthesisJob, reason: str) -> None:
        job.status = "failed"
        job.error = reason
        job.chunks = []
        job.completed_ms = self._clock.now_ms()
        self._metrics.inc(PIPE["synthesis_failed_total"], 1)
        self._jobs.get(job.call_id, {}).pop(job.job_id, None)

    def _stale(self, call_id: str, queue: Optional[BoundedDequeQueue[AudioChunk]], epoch: int) -> bool:
        return self._queues.get(call_id) is not queue or self.epoch(call_id) != epoch

    def _discard(self, job: SynthesisJob) -> None:
        job.status = "discarded"
        job.completed_ms = self._clock.now_ms()
        self._metrics.inc(PIPE["synthesis_discarded_total"], 1)
        self._jobs.get(job.call_id, {}).pop(job.job_id, None)
        job.delivered.set()
        log_event(logger, "synthesis_streamer", "stale_job_discarded", call_id=job.call_id,
                  job_id=job.job_id, chunks_sent=len(job.chunks))

    def enqueue_audio(self, call_id: str, chunk: AudioChunk) -> list[AudioChunk]:
        """Queue a chunk for delivery; returns whatever was dropped to make room."""
        q = self._queues.get(call_id)
        if q is None or q.closed():
            return []
        dropped = q.push_drop_oldest(chunk)
        if dropped:
            self._dropped[call_id] = self._dropped.get(call_id, 0) + len(dropped)
            self._metrics.inc(PIPE["synthesis_queue_dropped_total"], len(dropped))
            logger.warning(
                "audio queue full for call %s: dropped %d oldest chunk(s) (depth=%d)",
                call_id,
                len(dropped),
                q.maxsize,
            )
            for lost in dropped:
                if lost.is_last:
                    self.mark_delivered(call_id, lost.job_id)
        return dropped

    async def next_audio(self, call_id: str) -> AudioChunk:
        """Await the next chunk; raises QueueClosed once the call is cleaned up."""
        q = self._queues.get(call_id)
        if q is None:
            raise QueueClosed()
        return await q.get()

    def mark_delivered(self, call_id: str, job_id: str) -> None:
        job = self._jobs.get(call_id, {}).pop(job_id, None)
        if job is not None:
            job.delivered.set()

    def clear_queue(self, call_id: str) -> int:
        self._epochs[call_id] = self.epoch(call_id) + 1
        q = self._queues.get(call_id)
        n = q.clear() if q is not None else 0
        jobs = self._jobs.get(call_id)
        if jobs:
            for job in jobs.values():
                job.delivered.set()
            jobs.clear()
        return n

    def queue_depth(self, call_id: str) -> int:
        q = self._queues.get(call_id)
        return q.qsize() if q is not None else 0

    def cleanup(self, call_id: str) -> None:
        q = self._queues.pop(call_id, None)
        if q is not None:
            q.clear()
            q.close()
        for job in self._jobs.pop(call_id, {}).values():
            job.delivered.set()
        self._settings.pop(call_id, None)
        self._dropped.pop(call_id, None)
        self._epochs.pop(call_id, None)

    def stats(self, call_id: str) -> dict[str, Any]:
        jobs = self._jobs.get(call_id, {})
        settings = self.voice_settings(call_id)
        return {
            "call_id": call_id,
            "queue_size": self.queue_depth(call_id),
            "active_jobs": sum(1 for j in jobs.values() if j.status == "generating"),
            "undelivered_jobs": len(jobs),
            "dropped_chunks": self._dropped.get(call_id, 0),
            "voice_id": settings.voice_id,
            "streaming": settings.streaming,
        }

    def global_stats(self) -> dict[str, Any]:
        return {
            "active_calls": len(self._queues),
            "queued_chunks": sum(q.qsize() for q in self._queues.values()),
            "undelivered_jobs": sum(len(j) for j in self._jobs.values()),
            "dropped_chunks": self._metrics.get(PIPE["synthesis_queue_dropped_total"]),
        }

    async def aclose(self) -> None:
        for call_id in list(self._queues.keys()):
            self.cleanup(call_id)
        close_fn = getattr(self._provider, "aclose", None)
        if callable(close_fn):
            await close_fn()
