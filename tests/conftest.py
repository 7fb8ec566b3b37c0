from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from readtube.app.dependencies import get_transcript_service, reset_cached_dependencies
from readtube.app.main import create_app
from readtube.app.repositories.database import Database
from readtube.app.repositories.transcript_cache_repository import TranscriptCacheRepository
from readtube.app.repositories.usage_ledger_repository import UsageLedgerRepository
from readtube.app.repositories.video_ref_repository import VideoRefRepository
from readtube.app.services.audio_extractor import AudioPayload
from readtube.app.services.caption_fetcher import CaptionTrack, CaptionTranscript
from readtube.app.services.errors import VideoUnavailableError
from readtube.app.services.orchestrator import CascadePolicy, TranscriptionOrchestrator
from readtube.app.services.result_cache import ResultCache
from readtube.app.services.speech_transcriber import SpeechTranscript, TranscriberStatus
from readtube.app.services.transcript_service import TranscriptService
from readtube.app.services.usage_guard import UsageGuard
from readtube.app.services.video_ref import VideoRef
from readtube.app.telemetry import TelemetryClient

ServiceFactory = Callable[..., TranscriptService]


class FakeYouTube:
    """Scripted captions, metadata and audio keyed by video id."""

    def __init__(self) -> None:
        self.captions: dict[str, str | Exception] = {}
        self.durations: dict[str, int] = {}
        self.unavailable: set[str] = set()
        self.speech_text: str | None = None
        self.describe_error: Exception | None = None
        self.describe_block: threading.Event | None = None
        self.caption_calls: list[str] = []
        self.describe_calls: list[str] = []
        self.audio_calls: list[str] = []

    def fetch(
        self,
        video_id: str,
        preferred_languages: Sequence[str],
        *,
        deadline: float | None = None,
    ) -> CaptionTranscript | None:
        _ = deadline
        self.caption_calls.append(video_id)
        if video_id in self.unavailable:
            raise VideoUnavailableError(f"Video {video_id} is private.")
        scripted = self.captions.get(video_id)
        if isinstance(scripted, Exception):
            raise scripted
        if scripted is None:
            return None
        return CaptionTranscript(
            video_id=video_id,
            text=scripted,
            track=CaptionTrack(
                language_code=preferred_languages[0],
                is_auto_generated=True,
            ),
            title=None,
            duration_seconds=self.durations.get(video_id),
        )

    def describe(self, video_id: str, *, deadline: float | None = None) -> VideoRef:
        _ = deadline
        self.describe_calls.append(video_id)
        if self.describe_block is not None:
            self.describe_block.wait(timeout=5)
        if self.describe_error is not None:
            raise self.describe_error
        if video_id in self.unavailable:
            raise VideoUnavailableError(f"Video {video_id} is private.")
        return VideoRef(
            video_id=video_id,
            title=f"Video {video_id}",
            duration_seconds=self.durations.get(video_id),
        )

    def get_audio_stream(
        self,
        video_id: str,
        max_duration_seconds: int,
        *,
        deadline: float | None = None,
    ) -> _FakeAudioStream:
        _ = (max_duration_seconds, deadline)
        self.audio_calls.append(video_id)
        return _FakeAudioStream(
            AudioPayload(
                video_id=video_id,
                data=b"audio",
                container="m4a",
                codec="mp4a.40.2",
                duration_seconds=self.durations.get(video_id),
            )
        )


class _FakeAudioStream:
    def __init__(self, payload: AudioPayload) -> None:
        self._payload = payload

    def read(self, *, max_bytes: int, deadline: float | None = None) -> AudioPayload:
        _ = (max_bytes, deadline)
        return self._payload


class FakeSpeech:
    engine = "fake-speech"

    def __init__(self, youtube: FakeYouTube) -> None:
        self._youtube = youtube
        self.calls = 0

    def status(self) -> TranscriberStatus:
        if self._youtube.speech_text is None:
            return TranscriberStatus(available=False, detail="fake speech is switched off")
        return TranscriberStatus(available=True, detail="fake speech")

    def transcribe(
        self,
        audio: AudioPayload,
        *,
        language: str | None = None,
        model_size: str | None = None,
        deadline: float | None = None,
    ) -> SpeechTranscript:
        _ = (audio, language, model_size, deadline)
        self.calls += 1
        assert self._youtube.speech_text is not None
        return SpeechTranscript(text=self._youtube.speech_text, engine=self.engine)


@pytest.fixture(autouse=True)
def _restore_readtube_loggers() -> Iterator[None]:
    loggers = [logging.getLogger(name) for name in ("readtube", "readtube.telemetry")]
    saved = [(list(logger.handlers), logger.level, logger.propagate) for logger in loggers]
    yield
    for logger, (handlers, level, propagate) in zip(loggers, saved, strict=True):
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers[:] = handlers
        logger.setLevel(level)
        logger.propagate = propagate


@pytest.fixture
def youtube() -> FakeYouTube:
    return FakeYouTube()


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "readtube-test.db")
    db.initialize()
    return db


@pytest.fixture
def service_factory(database: Database, youtube: FakeYouTube) -> Iterator[ServiceFactory]:
    built: list[TranscriptService] = []

    def _build(
        *,
        default_granted_minutes: int = 60,
        enforcement_enabled: bool = True,
        cache_ttl_seconds: int = 7 * 24 * 3_600,
        cache_client_fallback_results: bool = True,
        strategy_order: Sequence[str] | None = None,
        telemetry: TelemetryClient | None = None,
        request_timeout_seconds: float = 600.0,
        metadata_timeout_seconds: float = 30.0,
    ) -> TranscriptService:
        telemetry = telemetry or TelemetryClient.disabled()
        speech = FakeSpeech(youtube)
        orchestrator = TranscriptionOrchestrator(
            caption_fetcher=youtube,  # pyright: ignore[reportArgumentType]
            audio_extractor=youtube,  # pyright: ignore[reportArgumentType]
            remote_transcriber=speech,
            local_transcriber=FakeSpeech(FakeYouTube()),
            telemetry=telemetry,
            policy=CascadePolicy(
                strategy_order=strategy_order
                or ("captions", "remote_speech", "local_speech", "client_fallback")
            ),
            preferred_languages=("en",),
            request_timeout_seconds=request_timeout_seconds,
        )
        service = TranscriptService(
            orchestrator=orchestrator,
            audio_extractor=youtube,  # pyright: ignore[reportArgumentType]
            result_cache=ResultCache(
                TranscriptCacheRepository(database),
                ttl_seconds=cache_ttl_seconds,
            ),
            usage_guard=UsageGuard(
                ledger=UsageLedgerRepository(
                    database,
                    default_granted_minutes=default_granted_minutes,
                ),
                telemetry=telemetry,
                enforcement_enabled=enforcement_enabled,
            ),
            video_refs=VideoRefRepository(database),
            telemetry=telemetry,
            metadata_timeout_seconds=metadata_timeout_seconds,
            cache_client_fallback_results=cache_client_fallback_results,
        )
        built.append(service)
        return service

    yield _build

    for service in built:
        service.shutdown()


@pytest.fixture
def client(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    service_factory: ServiceFactory,
) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("READTUBE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("READTUBE_API_RATE_LIMIT_MAX_REQUESTS", "5")
    monkeypatch.setenv("READTUBE_GLADIA_API_KEY", "")
    reset_cached_dependencies()

    service = service_factory()
    app = create_app()
    app.dependency_overrides[get_transcript_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
