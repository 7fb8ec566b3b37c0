from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Literal

from readtube.app.services.errors import EmptyResultError
from readtube.app.services.video_ref import VideoRef

SpeechEngineHint = Literal["auto", "local", "remote"]
DEFAULT_MAX_DURATION_SECONDS = 3_600


class SourceStrategy(StrEnum):
    CAPTIONS = "captions"
    LOCAL_SPEECH = "local-speech"
    REMOTE_SPEECH = "remote-speech"
    CLIENT_FALLBACK = "client-fallback"
    CACHE = "cache"


@dataclass(frozen=True)
class StrategyHints:
    speech_engine: SpeechEngineHint = "auto"
    model_size: str | None = None


@dataclass(frozen=True)
class TranscriptionRequest:
    video: VideoRef
    preferred_language: str | None = None
    max_duration_seconds: int = DEFAULT_MAX_DURATION_SECONDS
    hints: StrategyHints = field(default_factory=StrategyHints)
    client_transcript: str | None = None


@dataclass(frozen=True)
class TranscriptionResult:
    video_id: str
    transcript_text: str
    source_strategy: SourceStrategy
    processing_time_ms: int
    model_or_method: str
    cost_estimate: int
    duration_seconds: int | None = None

    def __post_init__(self) -> None:
        if not self.transcript_text.strip():
            raise EmptyResultError(f"Refusing to build an empty transcript for {self.video_id}.")

    @property
    def length_chars(self) -> int:
        return len(self.transcript_text)

    def from_cache(self, *, processing_time_ms: int) -> TranscriptionResult:
        return replace(
            self,
            source_strategy=SourceStrategy.CACHE,
            processing_time_ms=processing_time_ms,
            cost_estimate=0,
        )

    def as_summary(self) -> dict[str, Any]:
        return {
            "video_id": self.video_id,
            "source": self.source_strategy.value,
            "length_chars": self.length_chars,
            "processing_time_ms": self.processing_time_ms,
            "model_or_method": self.model_or_method,
            "cost_minutes": self.cost_estimate,
        }
