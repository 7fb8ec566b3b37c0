from __future__ import annotations

import importlib.util
import logging
import shutil
import subprocess
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from dataclasses import dataclass
from importlib import import_module
from threading import Lock
from typing import Any, Protocol

from readtube.app.services.audio_extractor import AudioPayload
from readtube.app.services.errors import (
    MisconfigurationError,
    StageTimeoutError,
    TooLongError,
    TransportError,
)
from readtube.app.services.json_payloads import as_dict
from readtube.app.services.speech_transcriber import (
    SpeechTranscript,
    TranscriberStatus,
    require_text,
)

LOGGER = logging.getLogger("readtube.local_speech")

WHISPER_ENGINE = "whisper"
SAMPLE_RATE = 16_000
BYTES_PER_SAMPLE = 2


@dataclass(frozen=True)
class ModelSizePolicy:
    """Step function from audio duration to whisper model size.

    Long audio deliberately drops back to a fast model to bound wall-clock time.
    """

    short_model: str = "tiny"
    medium_model: str = "base"
    long_model: str = "tiny"
    short_threshold_seconds: int = 180
    long_threshold_seconds: int = 600

    def select(self, duration_seconds: float | None) -> str:
        if duration_seconds is None:
            return self.long_model
        if duration_seconds < self.short_threshold_seconds:
            return self.short_model
        if duration_seconds <= self.long_threshold_seconds:
            return self.medium_model
        return self.long_model


@dataclass(frozen=True)
class PcmAudio:
    samples: bytes
    sample_rate: int = SAMPLE_RATE

    @property
    def sample_count(self) -> int:
        return len(self.samples) // BYTES_PER_SAMPLE

    @property
    def duration_seconds(self) -> float:
        return self.sample_count / self.sample_rate

    def window(self, start_sample: int, end_sample: int) -> bytes:
        return self.samples[start_sample * BYTES_PER_SAMPLE : end_sample * BYTES_PER_SAMPLE]


class LocalSpeechEngine(Protocol):
    name: str

    def is_installed(self) -> bool:
        ...

    def transcribe(
        self,
        samples: bytes,
        sample_rate: int,
        model_size: str,
        language: str | None,
    ) -> str:
        ...


class ModelRegistry:
    """Loaded models keyed by size; each size is loaded at most once.

    The first caller for a size runs the loader; concurrent callers block on the
    same in-flight future. A failed load is forgotten so a later call can retry.
    """

    def __init__(self, loader: Callable[[str], Any]) -> None:
        self._loader = loader
        self._lock = Lock()
        self._models: dict[str, Future[Any]] = {}

    def get(self, model_size: str) -> Any:
        with self._lock:
            future = self._models.get(model_size)
            is_owner = future is None
            if future is None:
                future = Future()
                self._models[model_size] = future

        if not is_owner:
            return future.result()

        started_at = time.perf_counter()
        try:
            model = self._loader(model_size)
        except BaseException as exc:
            with self._lock:
                self._models.pop(model_size, None)
            future.set_exception(exc)
            raise
        future.set_result(model)
        LOGGER.info(
            "local_speech model_loaded model_size=%s elapsed_ms=%s",
            model_size,
            int((time.perf_counter() - started_at) * 1000),
        )
        return model

    def loaded_sizes(self) -> list[str]:
        with self._lock:
            return sorted(
                size
                for size, future in self._models.items()
                if future.done() and future.exception() is None
            )


class WhisperSpeechEngine:
    name = WHISPER_ENGINE

    def __init__(self, *, device: str | None = None, registry: ModelRegistry | None = None) -> None:
        self._device = device
        self.registry = registry or ModelRegistry(self._load_model)

    def is_installed(self) -> bool:
        return (
            importlib.util.find_spec("whisper") is not None
            and importlib.util.find_spec("numpy") is not None
        )

    def transcribe(
        self,
        samples: bytes,
        sample_rate: int,
        model_size: str,
        language: str | None,
    ) -> str:
        if sample_rate != SAMPLE_RATE:
            raise ValueError(f"whisper expects {SAMPLE_RATE} Hz audio, got {sample_rate}")
        numpy = _import_optional("numpy")
        model = self.registry.get(model_size)
        audio = numpy.frombuffer(samples, dtype=numpy.int16).astype(numpy.float32) / 32768.0
        result = model.transcribe(
            audio,
            language=language,
            fp16=False,
            condition_on_previous_text=False,
            verbose=None,
        )
        return str(as_dict(result).get("text") or "")

    def _load_model(self, model_size: str) -> Any:
        whisper = _import_optional("whisper")
        device = self._device or _detect_device()
        LOGGER.info("local_speech loading_model model_size=%s device=%s", model_size, device)
        return whisper.load_model(model_size, device=device)


class LocalSpeechTranscriber:
    engine = WHISPER_ENGINE

    def __init__(
        self,
        *,
        engine: LocalSpeechEngine,
        enabled: bool = True,
        model_policy: ModelSizePolicy | None = None,
        window_seconds: float = 20.0,
        overlap_seconds: float = 3.0,
        max_duration_seconds: int = 3_600,
        ffmpeg_path: str = "ffmpeg",
        ffmpeg_timeout_seconds: float = 120.0,
    ) -> None:
        self._engine = engine
        self._enabled = enabled
        self._model_policy = model_policy or ModelSizePolicy()
        self._window_seconds = max(1.0, window_seconds)
        self._overlap_seconds = min(max(0.0, overlap_seconds), self._window_seconds / 2)
        self._max_duration_seconds = max(1, max_duration_seconds)
        self._ffmpeg_path = ffmpeg_path
        self._ffmpeg_timeout_seconds = max(1.0, ffmpeg_timeout_seconds)

    @property
    def model_policy(self) -> ModelSizePolicy:
        return self._model_policy

    def status(self) -> TranscriberStatus:
        if not self._enabled:
            return TranscriberStatus(
                available=False,
                detail="Local speech is disabled (READTUBE_LOCAL_SPEECH_ENABLED=0).",
            )
        if shutil.which(self._ffmpeg_path) is None:
            return TranscriberStatus(
                available=False,
                detail=f"ffmpeg executable not found: {self._ffmpeg_path}",
            )
        if not self._engine.is_installed():
            return TranscriberStatus(
                available=False,
                detail="openai-whisper is not installed (pip install 'readtube-transcripts[local]').",
            )
        warnings: list[str] = []
        if self._max_duration_seconds > 3_600:
            warnings.append("Local transcription of audio over an hour can take very long.")
        return TranscriberStatus(
            available=True,
            detail=f"{self._engine.name} via {self._ffmpeg_path}.",
            warnings=tuple(warnings),
        )

    def transcribe(
        self,
        audio: AudioPayload,
        *,
        language: str | None = None,
        model_size: str | None = None,
        deadline: float | None = None,
    ) -> SpeechTranscript:
        status = self.status()
        if not status.available:
            raise MisconfigurationError(status.detail)

        if audio.duration_seconds is not None:
            self._check_duration(audio.duration_seconds)
        pcm = decode_to_pcm(
            audio.data,
            ffmpeg_path=self._ffmpeg_path,
            timeout_seconds=self._ffmpeg_timeout_seconds,
        )
        self._check_duration(pcm.duration_seconds)

        selected_model = model_size or self._model_policy.select(pcm.duration_seconds)
        windows = plan_windows(
            pcm.sample_count,
            sample_rate=pcm.sample_rate,
            window_seconds=self._window_seconds,
            overlap_seconds=self._overlap_seconds,
        )
        LOGGER.info(
            "local_speech start video_id=%s duration_seconds=%.1f model_size=%s windows=%s",
            audio.video_id,
            pcm.duration_seconds,
            selected_model,
            len(windows),
        )

        texts: list[str] = []
        for start_sample, end_sample in windows:
            if deadline is not None and time.monotonic() >= deadline:
                raise StageTimeoutError(
                    f"Local transcription of {audio.video_id} ran past its deadline "
                    f"after {len(texts)}/{len(windows)} windows."
                )
            texts.append(
                self._engine.transcribe(
                    pcm.window(start_sample, end_sample),
                    pcm.sample_rate,
                    selected_model,
                    language,
                )
            )

        return SpeechTranscript(
            text=require_text(
                merge_window_texts(texts),
                engine=WHISPER_ENGINE,
                video_id=audio.video_id,
            ),
            engine=WHISPER_ENGINE,
            model=selected_model,
        )

    def _check_duration(self, duration_seconds: float) -> None:
        if duration_seconds > self._max_duration_seconds:
            raise TooLongError(
                f"Audio is {duration_seconds:.0f}s long; local transcription accepts at most "
                f"{self._max_duration_seconds}s.",
                duration_seconds=int(duration_seconds),
                max_duration_seconds=self._max_duration_seconds,
            )


def plan_windows(
    sample_count: int,
    *,
    sample_rate: int,
    window_seconds: float,
    overlap_seconds: float,
) -> list[tuple[int, int]]:
    window = max(1, int(window_seconds * sample_rate))
    step = max(1, window - int(overlap_seconds * sample_rate))
    if sample_count <= 0:
        return []

    windows: list[tuple[int, int]] = []
    start = 0
    while True:
        end = min(start + window, sample_count)
        windows.append((start, end))
        if end >= sample_count:
            return windows
        start += step


def dedupe_overlap(
    text_a: str,
    text_b: str,
    *,
    overlap_words: int = 30,
    min_overlap_words: int = 2,
) -> str:
    words_a = text_a.split()
    words_b = text_b.split()
    if not words_a:
        return " ".join(words_b)
    if not words_b:
        return " ".join(words_a)

    check_len = min(overlap_words, len(words_a), len(words_b))
    best_overlap = 0
    for size in range(check_len, 0, -1):
        if _normalized_words(words_a[-size:]) == _normalized_words(words_b[:size]):
            best_overlap = size
            break

    if best_overlap >= min_overlap_words:
        return " ".join(words_a + words_b[best_overlap:])
    return " ".join(words_a + words_b)


def merge_window_texts(texts: Sequence[str]) -> str:
    merged = ""
    for text in texts:
        if not text.strip():
            continue
        merged = dedupe_overlap(merged, text) if merged else " ".join(text.split())
    return merged


def decode_to_pcm(data: bytes, *, ffmpeg_path: str, timeout_seconds: float) -> PcmAudio:
    args = [
        ffmpeg_path,
        "-nostdin",
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        "pipe:0",
        "-ac",
        "1",
        "-ar",
        str(SAMPLE_RATE),
        "-f",
        "s16le",
        "pipe:1",
    ]
    return PcmAudio(samples=_run_ffmpeg(args, data, timeout_seconds=timeout_seconds))


def _run_ffmpeg(args: list[str], data: bytes, *, timeout_seconds: float) -> bytes:
    try:
        result = subprocess.run(
            args,
            input=data,
            capture_output=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise MisconfigurationError(f"ffmpeg executable not found: {args[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise StageTimeoutError(f"ffmpeg decode exceeded {timeout_seconds:.0f}s.") from exc

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise TransportError(
            f"ffmpeg decode failed (rc={result.returncode}): {stderr[:300]}",
            retryable=False,
        )
    return result.stdout


def _normalized_words(words: Sequence[str]) -> list[str]:
    return [word.strip(".,!?;:\"'").lower() for word in words]


def _detect_device() -> str:
    try:
        torch = import_module("torch")
    except ImportError:
        return "cpu"
    return "cuda" if torch.cuda.is_available() else "cpu"


def _import_optional(module_name: str) -> Any:
    try:
        return import_module(module_name)
    except ImportError as exc:
        raise MisconfigurationError(
            f"{module_name} is not installed; install the `local` extra for local speech."
        ) from exc
