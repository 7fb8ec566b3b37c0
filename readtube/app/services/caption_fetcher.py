from __future__ import annotations

import html
import logging
import math
import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from youtube_transcript_api import (
    AgeRestricted,
    CouldNotRetrieveTranscript,
    InvalidVideoId,
    NoTranscriptFound,
    RequestBlocked,
    TranscriptsDisabled,
    VideoUnavailable,
    VideoUnplayable,
    YouTubeTranscriptApi,
)

from readtube.app.services.errors import (
    BotDetectedError,
    TranscriptPipelineError,
    TransportError,
    VideoUnavailableError,
)

LOGGER = logging.getLogger("readtube.captions")

_ANNOTATION_PATTERN = re.compile(r"\[[^\]]*\]|\([^)]*\)")
_UNAVAILABLE_ERRORS: tuple[type[CouldNotRetrieveTranscript], ...] = (
    VideoUnavailable,
    VideoUnplayable,
    AgeRestricted,
    InvalidVideoId,
)

_T = TypeVar("_T")


class TranscriptListingApi(Protocol):
    def list(self, video_id: str) -> Iterable[Any]: ...


@dataclass(frozen=True)
class CaptionTrack:
    language_code: str
    is_auto_generated: bool
    name: str | None = None


@dataclass(frozen=True)
class CaptionTranscript:
    video_id: str
    text: str
    track: CaptionTrack
    title: str | None
    duration_seconds: int | None

    @property
    def method(self) -> str:
        kind = "auto" if self.track.is_auto_generated else "manual"
        return f"captions:{self.track.language_code}:{kind}"


class CaptionFetcher:
    def __init__(
        self,
        *,
        api: TranscriptListingApi | None = None,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 5.0,
    ) -> None:
        self._api = api if api is not None else YouTubeTranscriptApi()
        self._max_attempts = max(1, max_attempts)
        self._backoff_base_seconds = max(0.0, backoff_base_seconds)
        self._backoff_max_seconds = max(self._backoff_base_seconds, backoff_max_seconds)

    def fetch(
        self,
        video_id: str,
        preferred_languages: Sequence[str],
        *,
        deadline: float | None = None,
    ) -> CaptionTranscript | None:
        """Return the best caption track as plain text, or None when there is none.

        None means captions structurally do not exist (disabled, no tracks, or
        nothing left after cleaning) and is never retried. Transport failures and
        request blocks are retried with exponential backoff and re-raised once
        attempts or the deadline run out.
        """
        listed = self._with_retries(
            lambda: self._list_tracks(video_id),
            video_id=video_id,
            step="list",
            deadline=deadline,
        )
        if not listed:
            LOGGER.info("captions not_found video_id=%s reason=no_tracks", video_id)
            return None

        track = select_caption_track([track for track, _ in listed], preferred_languages)
        handle = next(handle for candidate, handle in listed if candidate == track)
        snippets = self._with_retries(
            lambda: self._fetch_snippets(video_id, handle),
            video_id=video_id,
            step="track",
            deadline=deadline,
        )
        text = clean_caption_text(" ".join(str(snippet.text) for snippet in snippets))
        if not text:
            LOGGER.info(
                "captions not_found video_id=%s reason=empty_track language=%s auto=%s",
                video_id,
                track.language_code,
                track.is_auto_generated,
            )
            return None

        LOGGER.info(
            "captions found video_id=%s language=%s auto=%s length_chars=%s",
            video_id,
            track.language_code,
            track.is_auto_generated,
            len(text),
        )
        return CaptionTranscript(
            video_id=video_id,
            text=text,
            track=track,
            title=None,
            duration_seconds=caption_span_seconds(snippets),
        )

    def _list_tracks(self, video_id: str) -> list[tuple[CaptionTrack, Any]]:
        try:
            transcripts = list(self._api.list(video_id))
        except (TranscriptsDisabled, NoTranscriptFound):
            return []
        except CouldNotRetrieveTranscript as exc:
            raise _translate_error(exc, video_id=video_id) from exc
        except OSError as exc:
            raise TransportError(f"YouTube caption listing failed: {exc}") from exc

        return [
            (
                CaptionTrack(
                    language_code=str(transcript.language_code),
                    is_auto_generated=bool(transcript.is_generated),
                    name=getattr(transcript, "language", None) or None,
                ),
                transcript,
            )
            for transcript in transcripts
        ]

    def _fetch_snippets(self, video_id: str, handle: Any) -> list[Any]:
        try:
            fetched = handle.fetch()
        except (TranscriptsDisabled, NoTranscriptFound):
            return []
        except CouldNotRetrieveTranscript as exc:
            raise _translate_error(exc, video_id=video_id) from exc
        except OSError as exc:
            raise TransportError(f"YouTube timed text request failed: {exc}") from exc
        return list(fetched.snippets)

    def _with_retries(
        self,
        operation: Callable[[], _T],
        *,
        video_id: str,
        step: str,
        deadline: float | None,
    ) -> _T:
        attempt = 1
        while True:
            try:
                return operation()
            except TranscriptPipelineError as exc:
                if not exc.retryable or attempt >= self._max_attempts:
                    raise
                delay = self.backoff_delay(attempt)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    LOGGER.info(
                        "captions retry_abandoned video_id=%s step=%s reason=deadline",
                        video_id,
                        step,
                    )
                    raise
                LOGGER.info(
                    "captions retry video_id=%s step=%s attempt=%s max_attempts=%s "
                    "delay_seconds=%.1f error_kind=%s",
                    video_id,
                    step,
                    attempt,
                    self._max_attempts,
                    delay,
                    exc.kind,
                )
                time.sleep(delay)
                attempt += 1

    def backoff_delay(self, attempt: int) -> float:
        return min(self._backoff_base_seconds * (2 ** (attempt - 1)), self._backoff_max_seconds)


def select_caption_track(
    tracks: Sequence[CaptionTrack],
    preferred_languages: Sequence[str],
) -> CaptionTrack:
    if not tracks:
        raise ValueError("select_caption_track requires at least one track")

    for language in preferred_languages:
        normalized = language.strip().lower()
        exact = [track for track in tracks if track.language_code.lower() == normalized]
        manual = next((track for track in exact if not track.is_auto_generated), None)
        if manual is not None:
            return manual
        if exact:
            return exact[0]

    auto = next((track for track in tracks if track.is_auto_generated), None)
    if auto is not None:
        return auto
    return tracks[0]


def clean_caption_text(text: str) -> str:
    # Timed text is often escaped twice (`&amp;#39;`).
    decoded = html.unescape(html.unescape(text))
    without_annotations = _ANNOTATION_PATTERN.sub(" ", decoded)
    return " ".join(without_annotations.split())


def caption_span_seconds(snippets: Sequence[Any]) -> int | None:
    """Seconds from the start of the video to the end of the last caption."""
    ends = [float(snippet.start) + float(snippet.duration) for snippet in snippets]
    if not ends:
        return None
    return max(1, math.ceil(max(ends)))


def _translate_error(exc: CouldNotRetrieveTranscript, *, video_id: str) -> TranscriptPipelineError:
    if isinstance(exc, _UNAVAILABLE_ERRORS):
        return VideoUnavailableError(f"Video {video_id} is not playable: {type(exc).__name__}")
    if isinstance(exc, RequestBlocked):
        return BotDetectedError(f"YouTube blocked the caption request for {video_id}.")
    return TransportError(f"Caption retrieval failed for {video_id}: {type(exc).__name__}")
