from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from readtube.app.config import AppSettings
from readtube.app.dependencies import get_rate_limiter, get_settings, get_transcript_service
from readtube.app.models.transcript_contracts import (
    CachedTranscriptResponse,
    TranscriptErrorResponse,
    TranscriptionConfigResponse,
    TranscriptRequest,
    TranscriptResponse,
    Troubleshooting,
    UsageResponse,
)
from readtube.app.services.errors import (
    InvalidVideoError,
    QuotaExceededError,
    TranscriptErrorKind,
    TranscriptPipelineError,
)
from readtube.app.services.orchestrator import TranscriptionFailedError
from readtube.app.services.rate_limiter import CallerRateLimiter
from readtube.app.services.transcript_service import TranscriptService
from readtube.app.services.transcription_models import StrategyHints, TranscriptionRequest
from readtube.app.services.video_ref import parse_video_id, parse_video_ref

router = APIRouter()

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status_code: {"model": TranscriptErrorResponse}
    for status_code in (400, 401, 402, 404, 422, 429, 500)
}
_MAX_CALLER_ID_LENGTH = 128


def _error_response(
    status_code: int,
    *,
    error: str,
    error_kind: TranscriptErrorKind,
    retryable: bool = False,
    troubleshooting: Troubleshooting | None = None,
    client_fallback_requested: bool = False,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = TranscriptErrorResponse(
        error=error,
        error_kind=error_kind.value,
        retryable=retryable,
        client_fallback_requested=client_fallback_requested,
        troubleshooting=troubleshooting or Troubleshooting(),
        details=details or {},
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _failed_acquisition_response(exc: TranscriptionFailedError) -> JSONResponse:
    status_code = 404 if exc.kind == TranscriptErrorKind.UNAVAILABLE else 422
    return _error_response(
        status_code,
        error=str(exc),
        error_kind=exc.kind,
        retryable=exc.retryable,
        troubleshooting=Troubleshooting.model_validate(exc.troubleshooting()),
        client_fallback_requested=exc.client_fallback_requested,
    )


def _normalize_caller_id(raw_value: str | None) -> str | None:
    if raw_value is None:
        return None
    normalized = raw_value.strip()
    if not normalized or len(normalized) > _MAX_CALLER_ID_LENGTH:
        return None
    return normalized


@router.post(
    "/transcripts",
    response_model=TranscriptResponse,
    responses=_ERROR_RESPONSES,
    tags=["transcripts"],
    operation_id="acquire_transcript",
)
def acquire_transcript(
    payload: TranscriptRequest,
    service: Annotated[TranscriptService, Depends(get_transcript_service)],
    rate_limiter: Annotated[CallerRateLimiter, Depends(get_rate_limiter)],
    settings: Annotated[AppSettings, Depends(get_settings)],
    x_caller_id: Annotated[str | None, Header(alias="X-Caller-ID")] = None,
) -> TranscriptResponse | JSONResponse:
    caller_id = _normalize_caller_id(x_caller_id)
    if caller_id is None:
        return _error_response(
            401,
            error="The X-Caller-ID header is required.",
            error_kind=TranscriptErrorKind.INVALID_INPUT,
        )

    decision = rate_limiter.take(caller_id)
    if not decision.allowed:
        return _error_response(
            429,
            error="Too many transcript requests; slow down.",
            error_kind=TranscriptErrorKind.RATE_LIMITED,
            retryable=True,
            details={"limit": decision.limit},
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )

    try:
        video = parse_video_ref(payload.video)
    except InvalidVideoError as exc:
        return _error_response(400, error=str(exc), error_kind=exc.kind)

    request = TranscriptionRequest(
        video=video,
        preferred_language=payload.language,
        max_duration_seconds=payload.max_duration_seconds or settings.max_duration_seconds,
        hints=StrategyHints(speech_engine=payload.speech_engine, model_size=payload.model_size),
        client_transcript=payload.client_transcript,
    )

    context_tokens = bind_contextvars(caller_id=caller_id, video_id=video.video_id)
    try:
        outcome = service.acquire(caller_id, request)
    except QuotaExceededError as exc:
        return _error_response(
            402,
            error=str(exc),
            error_kind=exc.kind,
            details={
                "required_minutes": exc.required_minutes,
                "remaining_minutes": exc.remaining_minutes,
            },
        )
    except TranscriptionFailedError as exc:
        return _failed_acquisition_response(exc)
    except TranscriptPipelineError as exc:
        return _error_response(500, error=str(exc), error_kind=exc.kind, retryable=exc.retryable)
    finally:
        reset_contextvars(**context_tokens)

    result = outcome.result
    return TranscriptResponse(
        video_id=result.video_id,
        transcript=result.transcript_text,
        source=result.source_strategy.value,
        cached=outcome.cached,
        length_chars=result.length_chars,
        processing_time_ms=result.processing_time_ms,
        model_or_method=result.model_or_method,
        cost_minutes=result.cost_estimate,
    )


@router.get(
    "/transcripts/{video_id}",
    response_model=CachedTranscriptResponse,
    tags=["transcripts"],
    operation_id="get_cached_transcript",
)
def get_cached_transcript(
    video_id: str,
    service: Annotated[TranscriptService, Depends(get_transcript_service)],
) -> CachedTranscriptResponse:
    try:
        normalized_id = parse_video_id(video_id)
    except InvalidVideoError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    entry = service.cached_transcript(normalized_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No cached transcript for {normalized_id}.")
    return CachedTranscriptResponse(
        video_id=entry.video_id,
        transcript=entry.transcript_text,
        source=entry.source_strategy,
        model_or_method=entry.model_or_method,
        updated_at=entry.updated_at.isoformat(),
        is_fresh=entry.is_fresh,
    )


@router.get(
    "/usage/{caller_id}",
    response_model=UsageResponse,
    tags=["usage"],
    operation_id="get_usage",
)
def get_usage(
    caller_id: str,
    service: Annotated[TranscriptService, Depends(get_transcript_service)],
) -> UsageResponse:
    normalized = _normalize_caller_id(caller_id)
    if normalized is None:
        raise HTTPException(status_code=400, detail="caller_id is invalid")
    summary = service.usage_summary(normalized)
    return UsageResponse(
        caller_id=summary.caller_id,
        minutes_used=summary.minutes_used,
        minutes_granted=summary.minutes_granted,
        remaining_minutes=summary.remaining_minutes,
        acquisitions=summary.acquisitions,
        percent_used=summary.percent_used,
        enforced=summary.enforced,
    )


@router.get(
    "/transcription/config",
    response_model=TranscriptionConfigResponse,
    tags=["system"],
    operation_id="transcription_config",
)
def transcription_config(
    service: Annotated[TranscriptService, Depends(get_transcript_service)],
) -> TranscriptionConfigResponse:
    return TranscriptionConfigResponse.model_validate(service.diagnostics())
