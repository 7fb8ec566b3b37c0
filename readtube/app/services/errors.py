from __future__ import annotations

from enum import StrEnum


class TranscriptErrorKind(StrEnum):
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    BOT_DETECTED = "bot_detected"
    TIMEOUT = "timeout"
    EMPTY_RESULT = "empty_result"
    QUOTA_EXCEEDED = "quota_exceeded"
    MISCONFIGURED = "misconfigured"
    TOO_LONG = "too_long"
    TRANSPORT = "transport"
    EXHAUSTED = "exhausted"
    INVALID_INPUT = "invalid_input"
    INTERNAL = "internal"


# Kinds after which no other strategy can succeed for the same video.
FATAL_ERROR_KINDS: frozenset[TranscriptErrorKind] = frozenset({TranscriptErrorKind.UNAVAILABLE})


class TranscriptPipelineError(Exception):
    kind: TranscriptErrorKind = TranscriptErrorKind.TRANSPORT
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        kind: TranscriptErrorKind | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        if retryable is not None:
            self.retryable = retryable

    @property
    def is_fatal(self) -> bool:
        return self.kind in FATAL_ERROR_KINDS


class InvalidVideoError(TranscriptPipelineError):
    kind = TranscriptErrorKind.INVALID_INPUT


class NotFoundError(TranscriptPipelineError):
    kind = TranscriptErrorKind.NOT_FOUND


class NoAudioFormatsError(NotFoundError):
    pass


class VideoUnavailableError(TranscriptPipelineError):
    kind = TranscriptErrorKind.UNAVAILABLE


class TransportError(TranscriptPipelineError):
    kind = TranscriptErrorKind.TRANSPORT
    retryable = True


class RateLimitedError(TranscriptPipelineError):
    kind = TranscriptErrorKind.RATE_LIMITED
    retryable = True


class BotDetectedError(TranscriptPipelineError):
    kind = TranscriptErrorKind.BOT_DETECTED
    retryable = True


class StageTimeoutError(TranscriptPipelineError):
    kind = TranscriptErrorKind.TIMEOUT
    retryable = True


class EmptyResultError(TranscriptPipelineError):
    kind = TranscriptErrorKind.EMPTY_RESULT
    retryable = True


class MisconfigurationError(TranscriptPipelineError):
    kind = TranscriptErrorKind.MISCONFIGURED


class TooLongError(TranscriptPipelineError):
    kind = TranscriptErrorKind.TOO_LONG

    def __init__(self, message: str, *, duration_seconds: int, max_duration_seconds: int) -> None:
        super().__init__(message)
        self.duration_seconds = duration_seconds
        self.max_duration_seconds = max_duration_seconds


class QuotaExceededError(TranscriptPipelineError):
    kind = TranscriptErrorKind.QUOTA_EXCEEDED

    def __init__(
        self,
        message: str,
        *,
        required_minutes: int,
        remaining_minutes: int,
    ) -> None:
        super().__init__(message)
        self.required_minutes = required_minutes
        self.remaining_minutes = remaining_minutes


class RemoteTranscriptionError(TranscriptPipelineError):
    """Upstream job finished in its `error` state."""

    kind = TranscriptErrorKind.TRANSPORT
    retryable = True
