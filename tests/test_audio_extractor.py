from __future__ import annotations

import io
from collections.abc import Mapping
from typing import Any

import pytest

from readtube.app.services import audio_extractor as audio_module
from readtube.app.services.audio_extractor import (
    AudioAccumulator,
    AudioExtractor,
    classify_download_error,
    parse_audio_renditions,
    select_audio_rendition,
)
from readtube.app.services.errors import (
    BotDetectedError,
    NoAudioFormatsError,
    TooLongError,
    TranscriptErrorKind,
    TranscriptPipelineError,
    TransportError,
    VideoUnavailableError,
)

VIDEO_ID = "aBcDeFgHiJk"


def _info(*, duration: int | None = 120, formats: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    return {
        "id": VIDEO_ID,
        "title": "Talk",
        "duration": duration,
        "formats": formats if formats is not None else _formats(),
    }


def _formats() -> list[dict[str, Any]]:
    return [
        {
            "format_id": "137",
            "url": "https://media.example/video",
            "ext": "mp4",
            "vcodec": "avc1.640028",
            "acodec": "none",
            "protocol": "https",
        },
        {
            "format_id": "251",
            "url": "https://media.example/opus",
            "ext": "webm",
            "vcodec": "none",
            "acodec": "opus",
            "abr": 160.0,
            "protocol": "https",
        },
        {
            "format_id": "139",
            "url": "https://media.example/aac-low",
            "ext": "m4a",
            "vcodec": "none",
            "acodec": "mp4a.40.5",
            "abr": 48.0,
            "protocol": "https",
        },
        {
            "format_id": "140",
            "url": "https://media.example/aac",
            "ext": "m4a",
            "vcodec": "none",
            "acodec": "mp4a.40.2",
            "abr": 129.5,
            "filesize": 10,
            "protocol": "https",
            "http_headers": {"User-Agent": "yt-dlp"},
        },
        {
            "format_id": "hls-audio",
            "url": "https://media.example/playlist.m3u8",
            "ext": "mp4",
            "vcodec": "none",
            "acodec": "mp4a.40.2",
            "protocol": "m3u8_native",
        },
    ]


class _FakeMedia:
    def __init__(self, body: bytes) -> None:
        self.body = body
        self.requests: list[tuple[str, dict[str, str]]] = []

    def open(self, url: str, *, headers: Mapping[str, str], timeout_seconds: float) -> io.BytesIO:
        _ = timeout_seconds
        self.requests.append((url, dict(headers)))
        return io.BytesIO(self.body)


def test_parse_audio_renditions_keeps_only_streamable_audio_formats() -> None:
    renditions = parse_audio_renditions(_info())

    assert [rendition.format_id for rendition in renditions] == ["251", "139", "140"]
    assert renditions[2].http_headers == {"User-Agent": "yt-dlp"}
    assert renditions[2].filesize_bytes == 10


def test_select_audio_rendition_prefers_highest_bitrate_aac() -> None:
    renditions = parse_audio_renditions(_info())
    assert select_audio_rendition(renditions).format_id == "140"

    opus_only = [rendition for rendition in renditions if rendition.codec == "opus"]
    assert select_audio_rendition(opus_only).format_id == "251"


def test_get_audio_stream_reads_full_payload_with_range_request(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    media = _FakeMedia(b"0123456789")
    monkeypatch.setattr(audio_module, "_extract_info", lambda video_id, **_: _info())
    monkeypatch.setattr(audio_module, "_open_stream", media.open)

    stream = AudioExtractor(chunk_bytes=4).get_audio_stream(VIDEO_ID, 600)
    payload = stream.read(max_bytes=1024)

    assert payload.data == b"0123456789"
    assert payload.container == "m4a"
    assert payload.codec == "mp4a.40.2"
    assert payload.duration_seconds == 120
    assert media.requests == [
        ("https://media.example/aac", {"User-Agent": "yt-dlp", "range": "bytes=0-9"})
    ]


def test_truncated_stream_is_a_transport_error(monkeypatch: pytest.MonkeyPatch) -> None:
    media = _FakeMedia(b"01234")
    monkeypatch.setattr(audio_module, "_extract_info", lambda video_id, **_: _info())
    monkeypatch.setattr(audio_module, "_open_stream", media.open)

    stream = AudioExtractor().get_audio_stream(VIDEO_ID, 600)
    with pytest.raises(TransportError, match="ended early"):
        stream.read(max_bytes=1024)


def test_too_long_video_is_rejected_before_streaming(monkeypatch: pytest.MonkeyPatch) -> None:
    media = _FakeMedia(b"unused")
    monkeypatch.setattr(audio_module, "_extract_info", lambda video_id, **_: _info(duration=7200))
    monkeypatch.setattr(audio_module, "_open_stream", media.open)

    with pytest.raises(TooLongError) as exc_info:
        AudioExtractor().get_audio_stream(VIDEO_ID, 3600)

    assert exc_info.value.duration_seconds == 7200
    assert exc_info.value.max_duration_seconds == 3600
    assert media.requests == []


def test_video_without_audio_formats_is_not_found(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        audio_module,
        "_extract_info",
        lambda video_id, **_: _info(formats=[_formats()[0]]),
    )

    with pytest.raises(NoAudioFormatsError):
        AudioExtractor().get_audio_stream(VIDEO_ID, 3600)


def test_probe_rotates_player_clients_after_bot_detection(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    clients: list[str] = []
    sleeps: list[float] = []

    def _fake_extract_info(video_id: str, *, player_client: str, **_: Any) -> dict[str, Any]:
        clients.append(player_client)
        if player_client != "ios":
            raise BotDetectedError("Sign in to confirm you're not a bot")
        return _info()

    monkeypatch.setattr(audio_module, "_extract_info", _fake_extract_info)
    monkeypatch.setattr(audio_module.time, "sleep", sleeps.append)

    extractor = AudioExtractor(
        player_clients=["web", "android", "ios"],
        bot_retry_attempts=3,
        bot_backoff_seconds=2.0,
    )
    manifest = extractor.probe(VIDEO_ID)

    assert clients == ["web", "android", "ios"]
    assert sleeps == [2.0, 4.0]
    assert manifest.player_client == "ios"
    assert manifest.video.duration_seconds == 120


def test_probe_gives_up_after_configured_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    def _always_blocked(video_id: str, **_: Any) -> dict[str, Any]:
        raise BotDetectedError("HTTP Error 429: Too Many Requests")

    monkeypatch.setattr(audio_module, "_extract_info", _always_blocked)
    monkeypatch.setattr(audio_module.time, "sleep", lambda _: None)

    with pytest.raises(BotDetectedError):
        AudioExtractor(player_clients=["web", "android"], bot_retry_attempts=5).probe(VIDEO_ID)


def test_describe_returns_video_metadata(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(audio_module, "_extract_info", lambda video_id, **_: _info(duration=2700))

    video = AudioExtractor().describe(VIDEO_ID)

    assert video.video_id == VIDEO_ID
    assert video.title == "Talk"
    assert video.duration_minutes == 45


def test_accumulator_enforces_byte_ceiling() -> None:
    accumulator = AudioAccumulator(max_bytes=8)
    accumulator.add_chunk(b"12345")

    with pytest.raises(TranscriptPipelineError) as exc_info:
        accumulator.add_chunk(b"6789")

    assert exc_info.value.kind == TranscriptErrorKind.TOO_LONG
    assert accumulator.bytes_received == 5


def test_accumulator_without_expected_size_completes_on_finish() -> None:
    accumulator = AudioAccumulator(max_bytes=64)
    accumulator.add_chunk(b"abc")
    assert accumulator.is_complete() is False

    accumulator.finish()
    assert accumulator.get_result() == b"abc"
    with pytest.raises(RuntimeError):
        accumulator.add_chunk(b"late")


def test_classify_download_error_maps_vendor_messages() -> None:
    private = classify_download_error("ERROR: [youtube] x: Private video", video_id=VIDEO_ID)
    bot = classify_download_error("Sign in to confirm you're not a bot", video_id=VIDEO_ID)
    other = classify_download_error("Unable to download webpage", video_id=VIDEO_ID)

    assert isinstance(private, VideoUnavailableError)
    assert isinstance(bot, BotDetectedError)
    assert isinstance(other, TransportError)
    assert other.retryable is True
