from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SourceName = Literal["captions", "local-speech", "remote-speech", "client-fallback", "cache"]


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


class TranscriptRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video: str = Field(min_length=1, max_length=2048, description="Video id or YouTube URL.")
    language: str | None = Field(default=None, max_length=16)
    max_duration_seconds: int | None = Field(default=None, ge=1, le=6 * 3_600)
    speech_engine: Literal["auto", "local", "remote"] = "auto"
    model_size: str | None = Field(default=None, max_length=32)
    client_transcript: str | None = Field(default=None, max_length=2_000_000)

    @field_validator("video")
    @classmethod
    def _validate_video(cls, value: str) -> str:
        normalized = value.strip()
        if any(ord(character) < 32 for character in normalized):
            raise ValueError("video contains control characters")
        return normalized

    @field_validator("language", "model_size", "client_transcript", mode="before")
    @classmethod
    def _normalize_optional_fields(cls, value: object) -> str | None:
        return _normalize_optional_text(value)


class TranscriptResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    transcript: str
    source: SourceName
    cached: bool
    length_chars: int
    processing_time_ms: int
    model_or_method: str
    cost_minutes: int


class StrategyAttemptReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: str
    outcome: Literal["succeeded", "not_found", "skipped", "timeout", "failed"]
    error_kind: str | None = None
    retryable: bool = False
    message: str | None = None
    elapsed_ms: int = 0


class Troubleshooting(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategies_tried: list[StrategyAttemptReport] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class TranscriptErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    error_kind: str
    retryable: bool = False
    client_fallback_requested: bool = False
    troubleshooting: Troubleshooting = Field(default_factory=Troubleshooting)
    details: dict[str, Any] = Field(default_factory=dict)


class CachedTranscriptResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    transcript: str
    source: str
    model_or_method: str | None = None
    updated_at: str
    is_fresh: bool


class UsageResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    caller_id: str
    minutes_used: int
    minutes_granted: int
    remaining_minutes: int
    acquisitions: int
    percent_used: float
    enforced: bool


class SpeechStrategyStatus(BaseModel):
    model_config = ConfigDict(extra="forbid")

    available: bool
    engine: str
    detail: str
    warnings: list[str] = Field(default_factory=list)


class StrategyToggle(BaseModel):
    model_config = ConfigDict(extra="forbid")

    available: bool


class TranscriptionConfigResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy_order: list[str]
    captions: StrategyToggle
    speech: dict[str, SpeechStrategyStatus]
    client_fallback: StrategyToggle
    cache_ttl_seconds: int
    usage_enforced: bool
    warnings: list[str] = Field(default_factory=list)
