from __future__ import annotations

import json
from typing import Any

import pytest

from readtube.app.services import remote_transcriber as remote_module
from readtube.app.services.audio_extractor import AudioPayload
from readtube.app.services.errors import (
    EmptyResultError,
    MisconfigurationError,
    RateLimitedError,
    RemoteTranscriptionError,
    StageTimeoutError,
    TransportError,
)
from readtube.app.services.remote_transcriber import (
    GladiaSpeechTranscriber,
    compute_poll_interval,
    extract_gladia_transcript,
    max_poll_attempts,
)

BASE_URL = "https://gladia.test/v2"


def _audio(size_bytes: int = 2048) -> AudioPayload:
    return AudioPayload(
        video_id="aBcDeFgHiJk",
        data=b"\x00" * size_bytes,
        container="m4a",
        codec="mp4a.40.2",
        duration_seconds=95,
    )


class _FakeGladia:
    def __init__(self, poll_payloads: list[dict[str, Any]]) -> None:
        self.poll_payloads = poll_payloads
        self.calls: list[tuple[str, str]] = []
        self.submitted: dict[str, Any] | None = None
        self.upload_content_type: str | None = None

    def request(
        self,
        method: str,
        url: str,
        *,
        api_key: str,
        timeout_seconds: float,
        body: bytes | None,
        content_type: str | None,
    ) -> tuple[int, dict[str, Any]]:
        _ = timeout_seconds
        assert api_key == "test-gladia-key"
        self.calls.append((method, url))
        if url.endswith("/upload"):
            self.upload_content_type = content_type
            assert body is not None and b'name="audio"' in body
            return 200, {"audio_url": "https://gladia.test/file/abc"}
        if url.endswith("/pre-recorded"):
            assert body is not None
            self.submitted = json.loads(body)
            return 201, {"id": "job-1"}
        payload = self.poll_payloads.pop(0) if len(self.poll_payloads) > 1 else self.poll_payloads[0]
        return 200, payload


def _install(monkeypatch: pytest.MonkeyPatch, fake: _FakeGladia) -> list[float]:
    sleeps: list[float] = []
    monkeypatch.setattr(remote_module, "_request_json", fake.request)
    monkeypatch.setattr(remote_module.time, "sleep", sleeps.append)
    return sleeps


def _transcriber(**overrides: Any) -> GladiaSpeechTranscriber:
    options: dict[str, Any] = {"api_key": "test-gladia-key", "base_url": BASE_URL}
    options.update(overrides)
    return GladiaSpeechTranscriber(**options)


def test_transcribe_uploads_submits_and_polls_until_done(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGladia(
        [
            {"status": "queued"},
            {"status": "processing"},
            {
                "status": "done",
                "result": {"transcription": {"full_transcript": "  hello   from gladia "}},
            },
        ]
    )
    sleeps = _install(monkeypatch, fake)

    transcript = _transcriber().transcribe(_audio(), language="pl")

    assert transcript.text == "hello from gladia"
    assert transcript.method == "gladia"
    assert fake.submitted == {
        "audio_url": "https://gladia.test/file/abc",
        "language_config": {"languages": ["pl"], "code_switching": False},
    }
    assert fake.upload_content_type is not None
    assert fake.upload_content_type.startswith("multipart/form-data; boundary=")
    assert [call[1] for call in fake.calls] == [
        f"{BASE_URL}/upload",
        f"{BASE_URL}/pre-recorded",
        f"{BASE_URL}/pre-recorded/job-1",
        f"{BASE_URL}/pre-recorded/job-1",
        f"{BASE_URL}/pre-recorded/job-1",
    ]
    assert len(sleeps) == 3


def test_upstream_error_state_surfaces_message(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGladia([{"status": "error", "error": {"message": "unsupported codec"}}])
    _install(monkeypatch, fake)

    with pytest.raises(RemoteTranscriptionError, match="unsupported codec"):
        _transcriber().transcribe(_audio())


def test_polling_timeout_is_distinct_from_upstream_error(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGladia([{"status": "processing"}])
    clock = {"now": 1000.0}

    def _advance(seconds: float) -> None:
        clock["now"] += seconds

    monkeypatch.setattr(remote_module, "_request_json", fake.request)
    monkeypatch.setattr(remote_module.time, "sleep", _advance)
    monkeypatch.setattr(remote_module.time, "monotonic", lambda: clock["now"])

    with pytest.raises(StageTimeoutError, match="did not finish"):
        _transcriber(poll_timeout_seconds=30.0).transcribe(_audio())
    assert clock["now"] <= 1030.0


def test_done_without_text_is_an_empty_result(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeGladia([{"status": "done", "result": {"transcription": {"utterances": []}}}])
    _install(monkeypatch, fake)

    with pytest.raises(EmptyResultError):
        _transcriber().transcribe(_audio())


def test_missing_api_key_reports_unavailable_status() -> None:
    transcriber = GladiaSpeechTranscriber(api_key=None)

    assert transcriber.status().available is False
    with pytest.raises(MisconfigurationError):
        transcriber.transcribe(_audio())


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (401, MisconfigurationError),
        (429, RateLimitedError),
        (502, TransportError),
        (422, RemoteTranscriptionError),
    ],
)
def test_http_status_codes_map_to_error_kinds(
    monkeypatch: pytest.MonkeyPatch,
    status_code: int,
    expected: type[Exception],
) -> None:
    def _reject(method: str, url: str, **_: Any) -> tuple[int, dict[str, Any]]:
        return status_code, {"message": "nope"}

    monkeypatch.setattr(remote_module, "_request_json", _reject)

    with pytest.raises(expected):
        _transcriber().upload(_audio(), api_key="test-gladia-key")


def test_extract_gladia_transcript_falls_back_to_utterances() -> None:
    payload = {
        "result": {
            "transcription": {
                "full_transcript": "",
                "utterances": [{"text": "first part"}, {"text": " "}, {"text": "second part"}],
            }
        }
    }
    assert extract_gladia_transcript(payload) == "first part second part"


def test_poll_interval_scales_with_size_and_attempts() -> None:
    one_mb = 1024 * 1024

    assert compute_poll_interval(payload_bytes=0, attempt=1) == 3.0
    assert compute_poll_interval(payload_bytes=4 * one_mb, attempt=1) == 5.0
    assert compute_poll_interval(payload_bytes=4 * one_mb, attempt=4) == pytest.approx(6.25)
    assert compute_poll_interval(payload_bytes=100 * one_mb, attempt=1) == 10.0
    assert compute_poll_interval(payload_bytes=0, attempt=50) == 10.0


def test_max_poll_attempts_covers_timeout_at_minimum_interval() -> None:
    assert max_poll_attempts(poll_timeout_seconds=300) == 100
    assert max_poll_attempts(poll_timeout_seconds=1) == 1
