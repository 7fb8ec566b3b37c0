from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from time import perf_counter
from typing import Any

from readtube.app.repositories.video_ref_repository import VideoRefRepository
from readtube.app.services.audio_extractor import AudioExtractor
from readtube.app.services.errors import (
    QuotaExceededError,
    TranscriptErrorKind,
    TranscriptPipelineError,
)
from readtube.app.services.orchestrator import (
    STAGE_CAPTIONS,
    STAGE_CLIENT_FALLBACK,
    TranscriptionFailedError,
    TranscriptionOrchestrator,
)
from readtube.app.services.result_cache import CacheEntry, ResultCache
from readtube.app.services.transcription_models import (
    SourceStrategy,
    TranscriptionRequest,
    TranscriptionResult,
)
from readtube.app.services.usage_guard import QuotaDecision, UsageGuard, UsageSummary
from readtube.app.services.video_ref import VideoRef
from readtube.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("readtube.transcripts")


@dataclass(frozen=True)
class AcquisitionOutcome:
    result: TranscriptionResult
    cached: bool


class TranscriptService:
    """Acquisition flow: quota check, cache, cascade, cache store, usage commit."""

    def __init__(
        self,
        *,
        orchestrator: TranscriptionOrchestrator,
        audio_extractor: AudioExtractor,
        result_cache: ResultCache,
        usage_guard: UsageGuard,
        video_refs: VideoRefRepository,
        telemetry: TelemetryClient,
        metadata_timeout_seconds: float = 30.0,
        cache_client_fallback_results: bool = True,
    ) -> None:
        self._orchestrator = orchestrator
        self._audio_extractor = audio_extractor
        self._result_cache = result_cache
        self._usage_guard = usage_guard
        self._video_refs = video_refs
        self._telemetry = telemetry
        self._metadata_timeout_seconds = max(1.0, metadata_timeout_seconds)
        self._cache_client_fallback_results = cache_client_fallback_results

    @property
    def usage_guard(self) -> UsageGuard:
        return self._usage_guard

    def acquire(self, caller_id: str, request: TranscriptionRequest) -> AcquisitionOutcome:
        started_at = perf_counter()
        with self._telemetry.span(
            "transcript.acquire",
            video_id=request.video.video_id,
            caller_id=caller_id,
        ) as span:
            request_deadline = self._orchestrator.request_deadline()
            video = self.resolve_video(request.video, request_deadline=request_deadline)
            request = replace(request, video=video)

            decision = self._usage_guard.check_quota(caller_id, video.duration_minutes)
            if not decision.allowed:
                span.set(error_kind=TranscriptErrorKind.QUOTA_EXCEEDED.value)
                raise _quota_error(decision)

            cached = self._result_cache.lookup(video.video_id)
            if cached is not None:
                result = _result_from_cache(cached, started_at=started_at)
                span.set(source=result.source_strategy.value, cached=True, cost_minutes=0)
                LOGGER.info(
                    "acquire cache_hit caller_id=%s video_id=%s original_source=%s",
                    caller_id,
                    video.video_id,
                    cached.source_strategy,
                )
                return AcquisitionOutcome(result=result, cached=True)

            try:
                result = self._orchestrator.run(request, deadline=request_deadline)
            except TranscriptionFailedError as exc:
                span.set(error_kind=exc.kind.value)
                LOGGER.warning(
                    "acquire failed caller_id=%s video_id=%s error_kind=%s attempts=%s",
                    caller_id,
                    video.video_id,
                    exc.kind,
                    len(exc.attempts),
                )
                raise

            if video.duration_seconds is None and result.duration_seconds is not None:
                self._video_refs.upsert(
                    replace(video, duration_seconds=result.duration_seconds)
                )

            # Cost is settled against the duration the stage learned, not the pre-flight one.
            settled = self._usage_guard.check_quota(caller_id, result.cost_estimate)
            if not settled.allowed:
                span.set(error_kind=TranscriptErrorKind.QUOTA_EXCEEDED.value)
                LOGGER.warning(
                    "acquire over_quota caller_id=%s video_id=%s cost_minutes=%s "
                    "remaining_minutes=%s",
                    caller_id,
                    video.video_id,
                    result.cost_estimate,
                    settled.remaining_minutes,
                )
                raise _quota_error(settled)

            if (
                result.source_strategy != SourceStrategy.CLIENT_FALLBACK
                or self._cache_client_fallback_results
            ):
                self._result_cache.store(
                    result.video_id,
                    result.transcript_text,
                    result.source_strategy.value,
                    result.model_or_method,
                )
            self._usage_guard.commit(caller_id, result.cost_estimate)
            span.set(
                source=result.source_strategy.value,
                cached=False,
                cost_minutes=result.cost_estimate,
                length_chars=result.length_chars,
            )
            return AcquisitionOutcome(result=result, cached=False)

    def resolve_video(
        self,
        video: VideoRef,
        *,
        request_deadline: float | None = None,
    ) -> VideoRef:
        if video.duration_seconds is not None:
            return video
        persisted = self._video_refs.get(video.video_id)
        if persisted is not None and persisted.duration_seconds is not None:
            return persisted

        if request_deadline is None:
            request_deadline = self._orchestrator.request_deadline()
        try:
            described = self._orchestrator.call_with_deadline(
                "metadata",
                lambda deadline: self._audio_extractor.describe(video.video_id, deadline=deadline),
                budget=self._metadata_timeout_seconds,
                request_deadline=request_deadline,
            )
        except TranscriptPipelineError as exc:
            if exc.is_fatal:
                raise TranscriptionFailedError(
                    str(exc),
                    video_id=video.video_id,
                    attempts=[],
                    suggestions=[
                        "The video is private, removed or region locked; no strategy can read it."
                    ],
                    kind=exc.kind,
                ) from exc
            LOGGER.info(
                "acquire metadata_unknown video_id=%s error_kind=%s", video.video_id, exc.kind
            )
            return persisted or video

        self._video_refs.upsert(described)
        return described

    def shutdown(self) -> None:
        self._orchestrator.shutdown()

    def cached_transcript(self, video_id: str) -> CacheEntry | None:
        return self._result_cache.peek(video_id)

    def usage_summary(self, caller_id: str) -> UsageSummary:
        return self._usage_guard.summary(caller_id)

    def diagnostics(self) -> dict[str, Any]:
        speech = self._orchestrator.speech_status()
        strategy_order = list(self._orchestrator.policy.strategy_order)
        warnings: list[str] = []
        for details in speech.values():
            warnings.extend(details["warnings"])

        enabled_speech = [
            stage for stage, details in speech.items()
            if stage in strategy_order and details["available"]
        ]
        if not enabled_speech:
            warnings.append(
                "No speech strategy is available; videos without captions need a "
                "client_transcript."
            )
        if STAGE_CAPTIONS not in strategy_order:
            warnings.append("Caption scraping is disabled; every request needs audio.")

        return {
            "strategy_order": strategy_order,
            "captions": {"available": STAGE_CAPTIONS in strategy_order},
            "speech": speech,
            "client_fallback": {"available": STAGE_CLIENT_FALLBACK in strategy_order},
            "cache_ttl_seconds": self._result_cache.ttl_seconds,
            "usage_enforced": self._usage_guard.enforcement_enabled,
            "warnings": warnings,
        }


def _result_from_cache(entry: CacheEntry, *, started_at: float) -> TranscriptionResult:
    stored = TranscriptionResult(
        video_id=entry.video_id,
        transcript_text=entry.transcript_text,
        source_strategy=SourceStrategy(entry.source_strategy),
        processing_time_ms=0,
        model_or_method=entry.model_or_method or entry.source_strategy,
        cost_estimate=0,
    )
    return stored.from_cache(processing_time_ms=int((perf_counter() - started_at) * 1000))


def _quota_error(decision: QuotaDecision) -> QuotaExceededError:
    return QuotaExceededError(
        decision.reason or "Usage quota exceeded.",
        required_minutes=decision.required_minutes,
        remaining_minutes=decision.remaining_minutes,
    )
