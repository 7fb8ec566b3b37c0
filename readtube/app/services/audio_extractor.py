from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import IO, Any, cast
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import yt_dlp

from readtube.app.services.errors import (
    BotDetectedError,
    NoAudioFormatsError,
    NotFoundError,
    StageTimeoutError,
    TooLongError,
    TranscriptErrorKind,
    TranscriptPipelineError,
    TransportError,
    VideoUnavailableError,
)
from readtube.app.services.json_payloads import (
    as_dict,
    as_list,
    coerce_int,
    coerce_nonempty_string,
)
from readtube.app.services.video_ref import VideoRef

LOGGER = logging.getLogger("readtube.audio")

DEFAULT_CHUNK_BYTES = 1024 * 1024
# Byte span requested per HTTP range; googlevideo throttles unbounded reads.
RANGE_REQUEST_BYTES = 10 * 1024 * 1024
_AAC_CONTAINERS: frozenset[str] = frozenset({"m4a", "mp4"})
_STREAMABLE_PROTOCOLS: frozenset[str] = frozenset({"http", "https"})
_BOT_MARKERS: tuple[str, ...] = (
    "not a bot",
    "http error 429",
    "too many requests",
)
_UNAVAILABLE_MARKERS: tuple[str, ...] = (
    "private video",
    "video unavailable",
    "has been removed",
    "no longer available",
    "not available in your country",
    "blocked it in your country",
    "members-only",
    "join this channel",
    "confirm your age",
    "account associated with this video has been terminated",
    "copyright claim",
    "requires payment",
)


@dataclass(frozen=True)
class AudioRendition:
    format_id: str
    url: str
    container: str
    codec: str
    bitrate_kbps: float | None = None
    filesize_bytes: int | None = None
    http_headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamManifest:
    video: VideoRef
    renditions: tuple[AudioRendition, ...]
    player_client: str
    is_live: bool = False


@dataclass(frozen=True)
class AudioPayload:
    video_id: str
    data: bytes
    container: str
    codec: str
    duration_seconds: int | None

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def size_mb(self) -> float:
        return len(self.data) / (1024 * 1024)


class AudioAccumulator:
    """Collects streamed chunks into one buffer with a hard byte ceiling."""

    def __init__(self, *, max_bytes: int, expected_bytes: int | None = None) -> None:
        self._max_bytes = max(1, max_bytes)
        self._expected_bytes = expected_bytes if expected_bytes and expected_bytes > 0 else None
        self._chunks: list[bytes] = []
        self._received = 0
        self._finished = False

    @property
    def bytes_received(self) -> int:
        return self._received

    def add_chunk(self, chunk: bytes) -> None:
        if self._finished:
            raise RuntimeError("cannot add audio chunks after the stream finished")
        if not chunk:
            return
        if self._received + len(chunk) > self._max_bytes:
            raise TranscriptPipelineError(
                f"Audio exceeds the {self._max_bytes} byte buffer limit.",
                kind=TranscriptErrorKind.TOO_LONG,
            )
        self._chunks.append(chunk)
        self._received += len(chunk)

    def finish(self) -> None:
        self._finished = True

    def is_complete(self) -> bool:
        if self._expected_bytes is not None:
            return self._received >= self._expected_bytes
        return self._finished and self._received > 0

    def get_result(self) -> bytes:
        if not self.is_complete():
            raise TransportError(
                "Audio stream ended early "
                f"(received={self._received} expected={self._expected_bytes})."
            )
        return b"".join(self._chunks)


class AudioStream:
    def __init__(
        self,
        *,
        video: VideoRef,
        rendition: AudioRendition,
        chunk_bytes: int,
        socket_timeout_seconds: float,
    ) -> None:
        self.video = video
        self.rendition = rendition
        self._chunk_bytes = max(16 * 1024, chunk_bytes)
        self._socket_timeout_seconds = socket_timeout_seconds

    @property
    def container(self) -> str:
        return self.rendition.container

    @property
    def codec(self) -> str:
        return self.rendition.codec

    @property
    def duration_seconds(self) -> int | None:
        return self.video.duration_seconds

    def iter_chunks(self, *, deadline: float | None = None) -> Iterator[bytes]:
        total = self.rendition.filesize_bytes
        if total is None:
            yield from self._read_response(byte_range=None, deadline=deadline)
            return

        start = 0
        while start < total:
            end = min(start + RANGE_REQUEST_BYTES, total) - 1
            yield from self._read_response(byte_range=(start, end), deadline=deadline)
            start = end + 1

    def read(self, *, max_bytes: int, deadline: float | None = None) -> AudioPayload:
        accumulator = AudioAccumulator(
            max_bytes=max_bytes,
            expected_bytes=self.rendition.filesize_bytes,
        )
        for chunk in self.iter_chunks(deadline=deadline):
            accumulator.add_chunk(chunk)
        accumulator.finish()
        data = accumulator.get_result()
        LOGGER.info(
            "audio downloaded video_id=%s format_id=%s container=%s codec=%s bytes=%s",
            self.video.video_id,
            self.rendition.format_id,
            self.container,
            self.codec,
            len(data),
        )
        return AudioPayload(
            video_id=self.video.video_id,
            data=data,
            container=self.container,
            codec=self.codec,
            duration_seconds=self.duration_seconds,
        )

    def _read_response(
        self,
        *,
        byte_range: tuple[int, int] | None,
        deadline: float | None,
    ) -> Iterator[bytes]:
        headers = dict(self.rendition.http_headers)
        if byte_range is not None:
            headers["range"] = f"bytes={byte_range[0]}-{byte_range[1]}"
        with _open_stream(
            self.rendition.url,
            headers=headers,
            timeout_seconds=self._socket_timeout_seconds,
        ) as response:
            while True:
                if deadline is not None and time.monotonic() >= deadline:
                    raise StageTimeoutError(
                        f"Audio download for {self.video.video_id} ran past its deadline."
                    )
                try:
                    chunk = response.read(self._chunk_bytes)
                except (TimeoutError, OSError) as exc:
                    raise TransportError(f"Audio stream read failed: {exc}") from exc
                if not chunk:
                    return
                yield chunk


class AudioExtractor:
    def __init__(
        self,
        *,
        player_clients: Sequence[str] = ("web", "android", "ios", "tv"),
        bot_retry_attempts: int = 3,
        bot_backoff_seconds: float = 2.0,
        socket_timeout_seconds: float = 20.0,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
    ) -> None:
        self._player_clients = tuple(player_clients) or ("web",)
        self._bot_retry_attempts = max(1, bot_retry_attempts)
        self._bot_backoff_seconds = max(0.0, bot_backoff_seconds)
        self._socket_timeout_seconds = max(1.0, socket_timeout_seconds)
        self._chunk_bytes = chunk_bytes

    def describe(self, video_id: str, *, deadline: float | None = None) -> VideoRef:
        return self.probe(video_id, deadline=deadline).video

    def get_audio_stream(
        self,
        video_id: str,
        max_duration_seconds: int,
        *,
        deadline: float | None = None,
    ) -> AudioStream:
        manifest = self.probe(video_id, deadline=deadline)
        duration = manifest.video.duration_seconds
        if duration is not None and duration > max_duration_seconds:
            raise TooLongError(
                f"Video {video_id} is {duration}s long; the limit is {max_duration_seconds}s.",
                duration_seconds=duration,
                max_duration_seconds=max_duration_seconds,
            )
        if manifest.is_live:
            raise NotFoundError(f"Video {video_id} is a live stream without a fixed audio track.")
        if not manifest.renditions:
            raise NoAudioFormatsError(f"No audio-only formats are available for {video_id}.")

        rendition = select_audio_rendition(manifest.renditions)
        LOGGER.info(
            "audio rendition_selected video_id=%s format_id=%s container=%s codec=%s "
            "bitrate_kbps=%s player_client=%s",
            video_id,
            rendition.format_id,
            rendition.container,
            rendition.codec,
            rendition.bitrate_kbps,
            manifest.player_client,
        )
        return AudioStream(
            video=manifest.video,
            rendition=rendition,
            chunk_bytes=self._chunk_bytes,
            socket_timeout_seconds=self._socket_timeout_seconds,
        )

    def probe(self, video_id: str, *, deadline: float | None = None) -> StreamManifest:
        attempts = min(self._bot_retry_attempts, len(self._player_clients))
        for attempt in range(attempts):
            player_client = self._player_clients[attempt]
            try:
                info = _extract_info(
                    video_id,
                    player_client=player_client,
                    socket_timeout_seconds=self._socket_timeout_seconds,
                )
            except BotDetectedError:
                if attempt >= attempts - 1:
                    raise
                delay = self._bot_backoff_seconds * (2**attempt)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    raise
                LOGGER.warning(
                    "audio bot_detected video_id=%s player_client=%s next_client=%s "
                    "delay_seconds=%.1f",
                    video_id,
                    player_client,
                    self._player_clients[attempt + 1],
                    delay,
                )
                time.sleep(delay)
                continue
            return build_stream_manifest(video_id, info, player_client=player_client)

        raise BotDetectedError(f"Every player client was challenged for {video_id}.")


def build_stream_manifest(
    video_id: str,
    info: Mapping[str, Any],
    *,
    player_client: str,
) -> StreamManifest:
    video = VideoRef(
        video_id=video_id,
        title=coerce_nonempty_string(info.get("title")),
        duration_seconds=coerce_int(info.get("duration")),
    )
    return StreamManifest(
        video=video,
        renditions=parse_audio_renditions(info),
        player_client=player_client,
        is_live=bool(info.get("is_live")),
    )


def parse_audio_renditions(info: Mapping[str, Any]) -> tuple[AudioRendition, ...]:
    renditions: list[AudioRendition] = []
    for raw_format in as_list(info.get("formats")):
        fmt = as_dict(raw_format)
        if fmt.get("vcodec") != "none":
            continue
        codec = coerce_nonempty_string(fmt.get("acodec"))
        url = coerce_nonempty_string(fmt.get("url"))
        if codec is None or codec == "none" or url is None:
            continue
        protocol = coerce_nonempty_string(fmt.get("protocol")) or "https"
        if protocol not in _STREAMABLE_PROTOCOLS:
            continue
        bitrate = fmt.get("abr") if fmt.get("abr") is not None else fmt.get("tbr")
        headers = {
            str(key): str(value) for key, value in as_dict(fmt.get("http_headers")).items()
        }
        renditions.append(
            AudioRendition(
                format_id=str(fmt.get("format_id") or "unknown"),
                url=url,
                container=(coerce_nonempty_string(fmt.get("ext")) or "unknown").lower(),
                codec=codec.lower(),
                bitrate_kbps=float(bitrate) if isinstance(bitrate, int | float) else None,
                filesize_bytes=coerce_int(fmt.get("filesize")),
                http_headers=headers,
            )
        )
    return tuple(renditions)


def select_audio_rendition(renditions: Sequence[AudioRendition]) -> AudioRendition:
    if not renditions:
        raise NoAudioFormatsError("No audio renditions to choose from.")

    aac = [
        rendition
        for rendition in renditions
        if rendition.container in _AAC_CONTAINERS and rendition.codec.startswith("mp4a")
    ]
    if aac:
        return max(aac, key=_bitrate_sort_key)
    opus = [
        rendition
        for rendition in renditions
        if rendition.container == "webm" and rendition.codec.startswith("opus")
    ]
    if opus:
        return max(opus, key=_bitrate_sort_key)
    return renditions[0]


def classify_download_error(message: str, *, video_id: str) -> TranscriptPipelineError:
    lowered = message.lower()
    if any(marker in lowered for marker in _BOT_MARKERS):
        return BotDetectedError(f"YouTube challenged the audio probe for {video_id}: {message}")
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        return VideoUnavailableError(f"Video {video_id} is unavailable: {message}")
    return TransportError(f"Audio manifest probe failed for {video_id}: {message}")


def _bitrate_sort_key(rendition: AudioRendition) -> float:
    return rendition.bitrate_kbps or 0.0


def _extract_info(
    video_id: str,
    *,
    player_client: str,
    socket_timeout_seconds: float,
) -> dict[str, Any]:
    params: dict[str, Any] = {
        "quiet": True,
        "no_warnings": True,
        "skip_download": True,
        "noplaylist": True,
        "socket_timeout": socket_timeout_seconds,
        "extractor_args": {"youtube": {"player_client": [player_client]}},
    }
    url = f"https://www.youtube.com/watch?v={video_id}"
    try:
        with yt_dlp.YoutubeDL(params) as ydl:
            info = ydl.extract_info(url, download=False)
            sanitized = ydl.sanitize_info(info)
    except yt_dlp.utils.DownloadError as exc:
        raise classify_download_error(str(exc), video_id=video_id) from exc
    if not sanitized:
        raise TransportError(f"yt-dlp returned no metadata for {video_id}.")
    return as_dict(sanitized)


def _open_stream(url: str, *, headers: Mapping[str, str], timeout_seconds: float) -> IO[bytes]:
    request = Request(url, headers=dict(headers), method="GET")
    try:
        return cast(IO[bytes], urlopen(request, timeout=timeout_seconds))
    except HTTPError as exc:
        if exc.code in {403, 429}:
            raise BotDetectedError(f"Audio stream request was refused (status {exc.code}).") from exc
        raise TransportError(f"Audio stream request failed (status {exc.code}).") from exc
    except (URLError, TimeoutError, OSError) as exc:
        raise TransportError(f"Audio stream request failed: {exc}") from exc
