from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextvars import copy_context
from dataclasses import dataclass
from threading import Event, Lock
from time import perf_counter
from typing import Any, TypeVar

from readtube.app.services.audio_extractor import AudioExtractor, AudioPayload
from readtube.app.services.caption_fetcher import CaptionFetcher
from readtube.app.services.errors import (
    MisconfigurationError,
    StageTimeoutError,
    TranscriptErrorKind,
    TranscriptPipelineError,
)
from readtube.app.services.speech_transcriber import SpeechTranscriber
from readtube.app.services.transcription_models import (
    SourceStrategy,
    TranscriptionRequest,
    TranscriptionResult,
)
from readtube.app.services.video_ref import minutes_for_duration
from readtube.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("readtube.orchestrator")

STAGE_CAPTIONS = "captions"
STAGE_REMOTE_SPEECH = "remote_speech"
STAGE_LOCAL_SPEECH = "local_speech"
STAGE_CLIENT_FALLBACK = "client_fallback"
DEFAULT_STAGE_ORDER: tuple[str, ...] = (
    STAGE_CAPTIONS,
    STAGE_REMOTE_SPEECH,
    STAGE_LOCAL_SPEECH,
    STAGE_CLIENT_FALLBACK,
)
DEFAULT_STAGE_BUDGETS: Mapping[str, float] = {
    STAGE_CAPTIONS: 45.0,
    STAGE_REMOTE_SPEECH: 330.0,
    STAGE_LOCAL_SPEECH: 540.0,
}

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_SKIPPED = "skipped"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_FAILED = "failed"

_T = TypeVar("_T")


@dataclass(frozen=True)
class StageAttempt:
    stage: str
    outcome: str
    elapsed_ms: int
    error_kind: TranscriptErrorKind | None = None
    retryable: bool = False
    message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.stage,
            "outcome": self.outcome,
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
            "retryable": self.retryable,
            "message": self.message,
            "elapsed_ms": self.elapsed_ms,
        }


class TranscriptionFailedError(TranscriptPipelineError):
    kind = TranscriptErrorKind.EXHAUSTED

    def __init__(
        self,
        message: str,
        *,
        video_id: str,
        attempts: Sequence[StageAttempt],
        suggestions: Sequence[str],
        kind: TranscriptErrorKind = TranscriptErrorKind.EXHAUSTED,
        retryable: bool = False,
        client_fallback_requested: bool = False,
    ) -> None:
        super().__init__(message, kind=kind, retryable=retryable)
        self.video_id = video_id
        self.attempts = tuple(attempts)
        self.suggestions = tuple(suggestions)
        self.client_fallback_requested = client_fallback_requested

    def troubleshooting(self) -> dict[str, Any]:
        return {
            "strategies_tried": [attempt.as_dict() for attempt in self.attempts],
            "suggestions": list(self.suggestions),
        }


@dataclass(frozen=True)
class _StageSuccess:
    text: str
    source: SourceStrategy
    method: str
    duration_seconds: int | None


class CascadePolicy:
    """Chooses which stages run for a request, and in what order."""

    def __init__(
        self,
        *,
        strategy_order: Sequence[str] = DEFAULT_STAGE_ORDER,
        prefer_local_max_duration_seconds: int = 0,
    ) -> None:
        unknown = [stage for stage in strategy_order if stage not in DEFAULT_STAGE_ORDER]
        if unknown:
            raise ValueError(f"unknown cascade stages: {', '.join(unknown)}")
        self._strategy_order = tuple(strategy_order)
        self._prefer_local_max_duration_seconds = max(0, prefer_local_max_duration_seconds)

    @property
    def strategy_order(self) -> tuple[str, ...]:
        return self._strategy_order

    def plan(self, request: TranscriptionRequest) -> list[str]:
        stages = list(self._strategy_order)
        engine_hint = request.hints.speech_engine
        if engine_hint == "local":
            stages = [stage for stage in stages if stage != STAGE_REMOTE_SPEECH]
        elif engine_hint == "remote":
            stages = [stage for stage in stages if stage != STAGE_LOCAL_SPEECH]

        if self._prefers_local(request) and _both_present(stages):
            remote_index = stages.index(STAGE_REMOTE_SPEECH)
            local_index = stages.index(STAGE_LOCAL_SPEECH)
            if remote_index < local_index:
                stages[remote_index], stages[local_index] = (
                    stages[local_index],
                    stages[remote_index],
                )
        return stages

    def _prefers_local(self, request: TranscriptionRequest) -> bool:
        duration = request.video.duration_seconds
        return (
            self._prefer_local_max_duration_seconds > 0
            and duration is not None
            and duration <= self._prefer_local_max_duration_seconds
        )


class _RequestAudio:
    """Audio for one request, downloaded at most once and shared by speech stages."""

    def __init__(
        self,
        *,
        extractor: AudioExtractor,
        request: TranscriptionRequest,
        max_bytes: int,
    ) -> None:
        self._extractor = extractor
        self._request = request
        self._max_bytes = max_bytes
        self._lock = Lock()
        self._payload: AudioPayload | None = None
        self._error: TranscriptPipelineError | None = None

    def get(self, deadline: float) -> AudioPayload:
        with self._lock:
            if self._payload is not None:
                return self._payload
            if self._error is not None:
                raise self._error
            try:
                stream = self._extractor.get_audio_stream(
                    self._request.video.video_id,
                    self._request.max_duration_seconds,
                    deadline=deadline,
                )
                self._payload = stream.read(max_bytes=self._max_bytes, deadline=deadline)
            except TranscriptPipelineError as exc:
                # A timeout belongs to the stage budget; a later stage may try again.
                if exc.kind != TranscriptErrorKind.TIMEOUT:
                    self._error = exc
                raise
            return self._payload


class TranscriptionOrchestrator:
    def __init__(
        self,
        *,
        caption_fetcher: CaptionFetcher,
        audio_extractor: AudioExtractor,
        remote_transcriber: SpeechTranscriber,
        local_transcriber: SpeechTranscriber,
        telemetry: TelemetryClient,
        policy: CascadePolicy | None = None,
        preferred_languages: Sequence[str] = ("en",),
        stage_budgets: Mapping[str, float] | None = None,
        request_timeout_seconds: float = 600.0,
        audio_max_bytes: int = 200 * 1024 * 1024,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._caption_fetcher = caption_fetcher
        self._audio_extractor = audio_extractor
        self._transcribers: dict[str, tuple[SpeechTranscriber, SourceStrategy]] = {
            STAGE_REMOTE_SPEECH: (remote_transcriber, SourceStrategy.REMOTE_SPEECH),
            STAGE_LOCAL_SPEECH: (local_transcriber, SourceStrategy.LOCAL_SPEECH),
        }
        self._telemetry = telemetry
        self._policy = policy or CascadePolicy()
        self._preferred_languages = tuple(preferred_languages)
        self._stage_budgets = dict(DEFAULT_STAGE_BUDGETS)
        if stage_budgets:
            self._stage_budgets.update(stage_budgets)
        self._request_timeout_seconds = max(1.0, request_timeout_seconds)
        self._audio_max_bytes = audio_max_bytes
        self._executor = executor or ThreadPoolExecutor(
            max_workers=8,
            thread_name_prefix="readtube-stage",
        )

    @property
    def policy(self) -> CascadePolicy:
        return self._policy

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def caption_languages(self, preferred_language: str | None) -> list[str]:
        languages: list[str] = []
        for language in (preferred_language, *self._preferred_languages):
            if language and language not in languages:
                languages.append(language)
        return languages

    def speech_status(self) -> dict[str, Any]:
        report: dict[str, Any] = {}
        for stage, (transcriber, _) in self._transcribers.items():
            status = transcriber.status()
            report[stage] = {
                "available": status.available,
                "engine": transcriber.engine,
                "detail": status.detail,
                "warnings": list(status.warnings),
            }
        return report

    def request_deadline(self) -> float:
        return time.monotonic() + self._request_timeout_seconds

    def call_with_deadline(
        self,
        label: str,
        operation: Callable[[float], _T],
        *,
        budget: float,
        request_deadline: float,
    ) -> _T:
        """Run `operation(deadline)` on a stage worker, bounded by both budgets."""
        return self._with_timeout(
            label,
            operation,
            budget=budget,
            request_deadline=request_deadline,
        )

    def run(
        self,
        request: TranscriptionRequest,
        *,
        deadline: float | None = None,
    ) -> TranscriptionResult:
        video_id = request.video.video_id
        started_at = perf_counter()
        request_deadline = deadline if deadline is not None else self.request_deadline()
        request_audio = _RequestAudio(
            extractor=self._audio_extractor,
            request=request,
            max_bytes=self._audio_max_bytes,
        )
        plan = self._policy.plan(request)
        attempts: list[StageAttempt] = []
        LOGGER.info("cascade start video_id=%s plan=%s", video_id, ",".join(plan))

        for stage in plan:
            stage_started_at = perf_counter()
            success: _StageSuccess | None = None
            fatal: TranscriptPipelineError | None = None
            with self._telemetry.span("transcript.stage", video_id=video_id, stage=stage) as span:
                try:
                    success = self._run_stage(stage, request, request_audio, request_deadline)
                except TranscriptPipelineError as exc:
                    attempt = _failed_attempt(stage, exc, _elapsed_ms(stage_started_at))
                    if exc.is_fatal:
                        fatal = exc
                except Exception as exc:
                    LOGGER.exception(
                        "cascade stage_crashed video_id=%s stage=%s", video_id, stage
                    )
                    attempt = StageAttempt(
                        stage=stage,
                        outcome=OUTCOME_FAILED,
                        elapsed_ms=_elapsed_ms(stage_started_at),
                        error_kind=TranscriptErrorKind.TRANSPORT,
                        message=f"Unexpected {type(exc).__name__}: {exc}",
                    )
                else:
                    attempt = StageAttempt(
                        stage=stage,
                        outcome=OUTCOME_SUCCEEDED if success is not None else OUTCOME_NOT_FOUND,
                        elapsed_ms=_elapsed_ms(stage_started_at),
                        error_kind=None if success is not None else TranscriptErrorKind.NOT_FOUND,
                        message=None if success is not None else _not_found_message(stage),
                    )
                span.outcome = attempt.outcome
                if attempt.error_kind is not None:
                    span.set(error_kind=attempt.error_kind.value)

            attempts.append(attempt)
            LOGGER.info(
                "cascade stage_finished video_id=%s stage=%s outcome=%s error_kind=%s "
                "elapsed_ms=%s",
                video_id,
                stage,
                attempt.outcome,
                attempt.error_kind,
                attempt.elapsed_ms,
            )

            if success is not None:
                return self._build_result(request, success, started_at)
            if fatal is not None:
                raise TranscriptionFailedError(
                    str(fatal),
                    video_id=video_id,
                    attempts=attempts,
                    suggestions=build_suggestions(attempts),
                    kind=fatal.kind,
                    retryable=False,
                )

        raise TranscriptionFailedError(
            f"All transcript strategies failed for {video_id}.",
            video_id=video_id,
            attempts=attempts,
            suggestions=build_suggestions(attempts),
            retryable=any(attempt.retryable for attempt in attempts),
            client_fallback_requested=STAGE_CLIENT_FALLBACK in plan,
        )

    def _run_stage(
        self,
        stage: str,
        request: TranscriptionRequest,
        request_audio: _RequestAudio,
        request_deadline: float,
    ) -> _StageSuccess | None:
        budget = self._stage_budgets.get(stage, self._request_timeout_seconds)
        if stage == STAGE_CAPTIONS:
            return self._with_timeout(
                stage,
                lambda deadline: self._captions_stage(request, deadline),
                budget=budget,
                request_deadline=request_deadline,
            )
        if stage == STAGE_CLIENT_FALLBACK:
            return _client_fallback_stage(request)

        transcriber, source = self._transcribers[stage]
        status = transcriber.status()
        if not status.available:
            raise MisconfigurationError(status.detail)
        return self._with_timeout(
            stage,
            lambda deadline: self._speech_stage(
                transcriber, source, request, request_audio, deadline
            ),
            budget=budget,
            request_deadline=request_deadline,
        )

    def _captions_stage(
        self,
        request: TranscriptionRequest,
        deadline: float,
    ) -> _StageSuccess | None:
        captions = self._caption_fetcher.fetch(
            request.video.video_id,
            self.caption_languages(request.preferred_language),
            deadline=deadline,
        )
        if captions is None:
            return None
        return _StageSuccess(
            text=captions.text,
            source=SourceStrategy.CAPTIONS,
            method=captions.method,
            duration_seconds=request.video.duration_seconds or captions.duration_seconds,
        )

    def _speech_stage(
        self,
        transcriber: SpeechTranscriber,
        source: SourceStrategy,
        request: TranscriptionRequest,
        request_audio: _RequestAudio,
        deadline: float,
    ) -> _StageSuccess:
        audio = request_audio.get(deadline)
        transcript = transcriber.transcribe(
            audio,
            language=request.preferred_language,
            model_size=request.hints.model_size,
            deadline=deadline,
        )
        return _StageSuccess(
            text=transcript.text,
            source=source,
            method=transcript.method,
            duration_seconds=audio.duration_seconds or request.video.duration_seconds,
        )

    def _with_timeout(
        self,
        label: str,
        operation: Callable[[float], _T],
        *,
        budget: float,
        request_deadline: float,
    ) -> _T:
        if request_deadline - time.monotonic() <= 0:
            raise StageTimeoutError(f"No request budget left to run {label}.")

        # The stage clock starts when a worker picks the stage up, not at submit.
        started = Event()
        stage_deadlines: list[float] = []

        def _start() -> _T:
            stage_deadlines.append(min(time.monotonic() + budget, request_deadline))
            started.set()
            return operation(stage_deadlines[0])

        context = copy_context()
        future: Future[_T] = self._executor.submit(context.run, _start)
        if not started.wait(timeout=max(0.0, request_deadline - time.monotonic())):
            future.cancel()
            LOGGER.warning("cascade worker_starved stage=%s", label)
            raise StageTimeoutError(f"No stage worker became free to run {label}.")

        try:
            return future.result(timeout=max(0.0, stage_deadlines[0] - time.monotonic()))
        except FutureTimeoutError as exc:
            # The worker may keep running; it checks the same deadline cooperatively.
            raise StageTimeoutError(
                f"{label} ran out of time (stage budget {budget:.1f}s)."
            ) from exc

    def _build_result(
        self,
        request: TranscriptionRequest,
        success: _StageSuccess,
        started_at: float,
    ) -> TranscriptionResult:
        if success.source == SourceStrategy.CLIENT_FALLBACK:
            cost = 0
        else:
            cost = minutes_for_duration(success.duration_seconds) or 1
        result = TranscriptionResult(
            video_id=request.video.video_id,
            transcript_text=success.text,
            source_strategy=success.source,
            processing_time_ms=_elapsed_ms(started_at),
            model_or_method=success.method,
            cost_estimate=cost,
            duration_seconds=success.duration_seconds,
        )
        LOGGER.info(
            "cascade done video_id=%s source=%s method=%s length_chars=%s cost_minutes=%s "
            "processing_time_ms=%s",
            result.video_id,
            result.source_strategy,
            result.model_or_method,
            result.length_chars,
            result.cost_estimate,
            result.processing_time_ms,
        )
        return result


def build_suggestions(attempts: Sequence[StageAttempt]) -> list[str]:
    suggestions: list[str] = []

    def _add(message: str) -> None:
        if message not in suggestions:
            suggestions.append(message)

    for attempt in attempts:
        kind = attempt.error_kind
        if kind == TranscriptErrorKind.UNAVAILABLE:
            _add("The video is private, removed or region locked; no strategy can read it.")
        elif attempt.stage == STAGE_CAPTIONS and kind == TranscriptErrorKind.NOT_FOUND:
            _add("The video has no usable captions; an audio based strategy is required.")
        elif kind == TranscriptErrorKind.MISCONFIGURED and attempt.stage == STAGE_REMOTE_SPEECH:
            _add("Set READTUBE_GLADIA_API_KEY to enable remote speech transcription.")
        elif kind == TranscriptErrorKind.MISCONFIGURED and attempt.stage == STAGE_LOCAL_SPEECH:
            _add("Install ffmpeg and the `local` extra (openai-whisper) to enable local speech.")
        elif kind == TranscriptErrorKind.TOO_LONG:
            _add("The video is longer than the allowed maximum; try a shorter video.")
        elif kind in {TranscriptErrorKind.BOT_DETECTED, TranscriptErrorKind.RATE_LIMITED}:
            _add("YouTube or the speech provider is throttling this server; retry in a few minutes.")
        elif kind == TranscriptErrorKind.TIMEOUT:
            _add("A strategy ran out of time; retrying later may succeed.")
        elif kind == TranscriptErrorKind.EMPTY_RESULT:
            _add("Speech recognition produced no text; the video may have no spoken content.")
        elif attempt.stage == STAGE_CLIENT_FALLBACK and kind == TranscriptErrorKind.NOT_FOUND:
            _add("Extract the captions in the client and resubmit them as client_transcript.")
        elif kind == TranscriptErrorKind.TRANSPORT and attempt.retryable:
            _add("A network error interrupted a strategy; retrying is reasonable.")
    return suggestions


def _client_fallback_stage(request: TranscriptionRequest) -> _StageSuccess | None:
    text = " ".join((request.client_transcript or "").split())
    if not text:
        return None
    return _StageSuccess(
        text=text,
        source=SourceStrategy.CLIENT_FALLBACK,
        method="client-supplied",
        duration_seconds=request.video.duration_seconds,
    )


def _failed_attempt(stage: str, exc: TranscriptPipelineError, elapsed_ms: int) -> StageAttempt:
    if exc.kind == TranscriptErrorKind.MISCONFIGURED:
        outcome = OUTCOME_SKIPPED
    elif exc.kind == TranscriptErrorKind.TIMEOUT:
        outcome = OUTCOME_TIMEOUT
    elif exc.kind == TranscriptErrorKind.NOT_FOUND:
        outcome = OUTCOME_NOT_FOUND
    else:
        outcome = OUTCOME_FAILED
    return StageAttempt(
        stage=stage,
        outcome=outcome,
        elapsed_ms=elapsed_ms,
        error_kind=exc.kind,
        retryable=exc.retryable,
        message=str(exc),
    )


def _not_found_message(stage: str) -> str:
    if stage == STAGE_CLIENT_FALLBACK:
        return "No client extracted transcript was supplied."
    if stage == STAGE_CAPTIONS:
        return "No caption track with text was found."
    return "The stage produced no transcript."


def _both_present(stages: Sequence[str]) -> bool:
    return STAGE_REMOTE_SPEECH in stages and STAGE_LOCAL_SPEECH in stages


def _elapsed_ms(started_at: float) -> int:
    return int((perf_counter() - started_at) * 1000)
