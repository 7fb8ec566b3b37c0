from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from readtube.app.services.audio_extractor import AudioPayload
from readtube.app.services.errors import EmptyResultError


@dataclass(frozen=True)
class SpeechTranscript:
    text: str
    engine: str
    model: str | None = None

    @property
    def method(self) -> str:
        if self.model:
            return f"{self.engine}:{self.model}"
        return self.engine


@dataclass(frozen=True)
class TranscriberStatus:
    available: bool
    detail: str
    warnings: tuple[str, ...] = ()


class SpeechTranscriber(Protocol):
    """Audio-to-text engine used by the speech stages of the cascade.

    `status()` must be cheap and side-effect free; a transcriber that is not
    available is skipped as misconfigured instead of being called.
    """

    engine: str

    def status(self) -> TranscriberStatus:
        ...

    def transcribe(
        self,
        audio: AudioPayload,
        *,
        language: str | None = None,
        model_size: str | None = None,
        deadline: float | None = None,
    ) -> SpeechTranscript:
        ...


def require_text(text: str | None, *, engine: str, video_id: str) -> str:
    normalized = " ".join((text or "").split())
    if not normalized:
        raise EmptyResultError(f"{engine} finished without any text for {video_id}.")
    return normalized
