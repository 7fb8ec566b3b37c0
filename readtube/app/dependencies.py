from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache

from readtube.app.config import AppSettings, load_settings
from readtube.app.repositories.database import Database
from readtube.app.repositories.transcript_cache_repository import TranscriptCacheRepository
from readtube.app.repositories.usage_ledger_repository import UsageLedgerRepository
from readtube.app.repositories.video_ref_repository import VideoRefRepository
from readtube.app.services.audio_extractor import AudioExtractor
from readtube.app.services.caption_fetcher import CaptionFetcher
from readtube.app.services.local_transcriber import (
    LocalSpeechTranscriber,
    ModelSizePolicy,
    WhisperSpeechEngine,
)
from readtube.app.services.orchestrator import (
    STAGE_CAPTIONS,
    STAGE_LOCAL_SPEECH,
    STAGE_REMOTE_SPEECH,
    CascadePolicy,
    TranscriptionOrchestrator,
)
from readtube.app.services.rate_limiter import CallerRateLimiter
from readtube.app.services.remote_transcriber import GladiaSpeechTranscriber
from readtube.app.services.result_cache import ResultCache
from readtube.app.services.transcript_service import TranscriptService
from readtube.app.services.usage_guard import UsageGuard
from readtube.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_transcript_service() -> TranscriptService:
    settings = get_settings()
    database = get_database()
    telemetry = get_telemetry()
    audio_extractor = AudioExtractor(
        player_clients=settings.audio_player_clients,
        bot_retry_attempts=settings.audio_bot_retry_attempts,
        bot_backoff_seconds=settings.audio_bot_backoff_seconds,
        socket_timeout_seconds=settings.audio_socket_timeout_seconds,
        chunk_bytes=settings.audio_chunk_bytes,
    )

    orchestrator = TranscriptionOrchestrator(
        caption_fetcher=CaptionFetcher(
            max_attempts=settings.caption_max_attempts,
            backoff_base_seconds=settings.caption_backoff_base_seconds,
            backoff_max_seconds=settings.caption_backoff_max_seconds,
        ),
        audio_extractor=audio_extractor,
        remote_transcriber=GladiaSpeechTranscriber(
            api_key=settings.gladia_api_key,
            base_url=settings.gladia_base_url,
            http_timeout_seconds=settings.gladia_http_timeout_seconds,
            poll_timeout_seconds=settings.remote_poll_timeout_seconds,
            poll_base_interval_seconds=settings.remote_poll_base_interval_seconds,
            poll_max_interval_seconds=settings.remote_poll_max_interval_seconds,
        ),
        local_transcriber=LocalSpeechTranscriber(
            engine=WhisperSpeechEngine(device=settings.local_device),
            enabled=settings.local_speech_enabled,
            model_policy=ModelSizePolicy(
                short_model=settings.local_model_short,
                medium_model=settings.local_model_medium,
                long_model=settings.local_model_long,
                short_threshold_seconds=settings.local_short_threshold_seconds,
                long_threshold_seconds=settings.local_long_threshold_seconds,
            ),
            window_seconds=settings.local_window_seconds,
            overlap_seconds=settings.local_overlap_seconds,
            max_duration_seconds=settings.local_max_duration_seconds,
            ffmpeg_path=settings.ffmpeg_path,
            ffmpeg_timeout_seconds=settings.ffmpeg_timeout_seconds,
        ),
        telemetry=telemetry,
        policy=CascadePolicy(
            strategy_order=settings.strategy_order,
            prefer_local_max_duration_seconds=settings.prefer_local_max_duration_seconds,
        ),
        preferred_languages=settings.preferred_languages,
        stage_budgets={
            STAGE_CAPTIONS: settings.caption_timeout_seconds,
            STAGE_REMOTE_SPEECH: settings.remote_speech_timeout_seconds,
            STAGE_LOCAL_SPEECH: settings.local_speech_timeout_seconds,
        },
        request_timeout_seconds=settings.request_timeout_seconds,
        audio_max_bytes=settings.audio_max_bytes,
        executor=ThreadPoolExecutor(
            max_workers=max(1, settings.stage_workers),
            thread_name_prefix="readtube-stage",
        ),
    )

    return TranscriptService(
        orchestrator=orchestrator,
        audio_extractor=audio_extractor,
        result_cache=ResultCache(
            TranscriptCacheRepository(database),
            ttl_seconds=settings.transcript_cache_ttl_seconds,
        ),
        usage_guard=UsageGuard(
            ledger=UsageLedgerRepository(
                database,
                default_granted_minutes=settings.usage_default_granted_minutes,
            ),
            telemetry=telemetry,
            enforcement_enabled=settings.usage_enforcement_enabled,
        ),
        video_refs=VideoRefRepository(database),
        telemetry=telemetry,
        metadata_timeout_seconds=settings.audio_socket_timeout_seconds,
        cache_client_fallback_results=settings.cache_client_fallback_results,
    )


@lru_cache(maxsize=1)
def get_rate_limiter() -> CallerRateLimiter:
    settings = get_settings()
    return CallerRateLimiter(
        max_requests=settings.api_rate_limit_max_requests,
        window_seconds=settings.api_rate_limit_window_seconds,
    )


def shutdown_transcript_service() -> None:
    if get_transcript_service.cache_info().currsize:
        get_transcript_service().shutdown()
    get_transcript_service.cache_clear()


def reset_cached_dependencies() -> None:
    shutdown_transcript_service()
    get_rate_limiter.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
