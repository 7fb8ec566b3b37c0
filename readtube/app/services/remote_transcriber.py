from __future__ import annotations

import json
import logging
import math
import time
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen
from uuid import uuid4

from readtube.app.services.audio_extractor import AudioPayload
from readtube.app.services.errors import (
    MisconfigurationError,
    RateLimitedError,
    RemoteTranscriptionError,
    StageTimeoutError,
    TransportError,
)
from readtube.app.services.json_payloads import (
    as_dict,
    as_list,
    coerce_nonempty_string,
    parse_json_dict,
)
from readtube.app.services.speech_transcriber import (
    SpeechTranscript,
    TranscriberStatus,
    require_text,
)

LOGGER = logging.getLogger("readtube.remote_speech")

GLADIA_ENGINE = "gladia"
GLADIA_PENDING_STATUSES: frozenset[str] = frozenset({"queued", "processing"})
GLADIA_MIN_POLL_INTERVAL_SECONDS = 3.0
# Poll interval growth factor applied per attempt after the third.
GLADIA_POLL_GROWTH = 1.25
_CONTAINER_CONTENT_TYPES: dict[str, str] = {
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
    "webm": "audio/webm",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
}


def compute_poll_interval(
    *,
    payload_bytes: int,
    attempt: int,
    base_interval_seconds: float = 3.0,
    max_interval_seconds: float = 10.0,
) -> float:
    """Wait before poll `attempt` (1-based): larger uploads and later polls wait longer."""
    size_mb = max(0, payload_bytes) / (1024 * 1024)
    interval = base_interval_seconds + 0.5 * size_mb
    if attempt > 3:
        interval *= GLADIA_POLL_GROWTH ** (attempt - 3)
    upper = max(GLADIA_MIN_POLL_INTERVAL_SECONDS, max_interval_seconds)
    return min(max(interval, GLADIA_MIN_POLL_INTERVAL_SECONDS), upper)


def max_poll_attempts(*, poll_timeout_seconds: float) -> int:
    return max(1, math.ceil(poll_timeout_seconds / GLADIA_MIN_POLL_INTERVAL_SECONDS))


class GladiaSpeechTranscriber:
    engine = GLADIA_ENGINE

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.gladia.io/v2",
        http_timeout_seconds: float = 60.0,
        poll_timeout_seconds: float = 300.0,
        poll_base_interval_seconds: float = 3.0,
        poll_max_interval_seconds: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._http_timeout_seconds = max(1.0, http_timeout_seconds)
        self._poll_timeout_seconds = max(GLADIA_MIN_POLL_INTERVAL_SECONDS, poll_timeout_seconds)
        self._poll_base_interval_seconds = max(0.0, poll_base_interval_seconds)
        self._poll_max_interval_seconds = poll_max_interval_seconds

    def status(self) -> TranscriberStatus:
        if self._api_key is None:
            return TranscriberStatus(
                available=False,
                detail="READTUBE_GLADIA_API_KEY is not set.",
            )
        return TranscriberStatus(available=True, detail=f"Gladia at {self._base_url}.")

    def transcribe(
        self,
        audio: AudioPayload,
        *,
        language: str | None = None,
        model_size: str | None = None,
        deadline: float | None = None,
    ) -> SpeechTranscript:
        _ = model_size
        api_key = self._require_api_key()
        audio_url = self.upload(audio, api_key=api_key)
        job_id = self.submit(audio_url, language=language, api_key=api_key)
        LOGGER.info(
            "remote_speech submitted video_id=%s job_id=%s size_mb=%.2f",
            audio.video_id,
            job_id,
            audio.size_mb,
        )
        text = self.wait_for_result(
            job_id,
            payload_bytes=audio.size_bytes,
            api_key=api_key,
            deadline=deadline,
        )
        return SpeechTranscript(
            text=require_text(text, engine=GLADIA_ENGINE, video_id=audio.video_id),
            engine=GLADIA_ENGINE,
        )

    def upload(self, audio: AudioPayload, *, api_key: str) -> str:
        body, content_type = _encode_multipart(
            field_name="audio",
            filename=f"{audio.video_id}.{audio.container}",
            file_content_type=_CONTAINER_CONTENT_TYPES.get(
                audio.container, "application/octet-stream"
            ),
            data=audio.data,
        )
        status_code, payload = _request_json(
            "POST",
            f"{self._base_url}/upload",
            api_key=api_key,
            timeout_seconds=self._http_timeout_seconds,
            body=body,
            content_type=content_type,
        )
        _raise_for_status(status_code, payload, operation="upload")
        audio_url = coerce_nonempty_string(payload.get("audio_url"))
        if audio_url is None:
            raise TransportError("Gladia upload response did not include an audio_url.")
        return audio_url

    def submit(self, audio_url: str, *, language: str | None, api_key: str) -> str:
        request_body: dict[str, Any] = {"audio_url": audio_url}
        if language:
            request_body["language_config"] = {"languages": [language], "code_switching": False}
        status_code, payload = _request_json(
            "POST",
            f"{self._base_url}/pre-recorded",
            api_key=api_key,
            timeout_seconds=self._http_timeout_seconds,
            body=json.dumps(request_body).encode("utf-8"),
            content_type="application/json",
        )
        _raise_for_status(status_code, payload, operation="submit")
        job_id = coerce_nonempty_string(payload.get("id"))
        if job_id is None:
            raise TransportError("Gladia accepted the job but returned no job id.")
        return job_id

    def poll_status(self, job_id: str, *, api_key: str) -> dict[str, Any]:
        status_code, payload = _request_json(
            "GET",
            f"{self._base_url}/pre-recorded/{job_id}",
            api_key=api_key,
            timeout_seconds=self._http_timeout_seconds,
            body=None,
            content_type=None,
        )
        _raise_for_status(status_code, payload, operation="poll")
        return payload

    def wait_for_result(
        self,
        job_id: str,
        *,
        payload_bytes: int,
        api_key: str,
        deadline: float | None = None,
    ) -> str:
        poll_deadline = time.monotonic() + self._poll_timeout_seconds
        if deadline is not None:
            poll_deadline = min(poll_deadline, deadline)
        attempts = max_poll_attempts(poll_timeout_seconds=self._poll_timeout_seconds)

        for attempt in range(1, attempts + 1):
            interval = compute_poll_interval(
                payload_bytes=payload_bytes,
                attempt=attempt,
                base_interval_seconds=self._poll_base_interval_seconds,
                max_interval_seconds=self._poll_max_interval_seconds,
            )
            if time.monotonic() + interval > poll_deadline:
                break
            time.sleep(interval)

            payload = self.poll_status(job_id, api_key=api_key)
            job_status = coerce_nonempty_string(payload.get("status"))
            if job_status == "done":
                LOGGER.info(
                    "remote_speech done job_id=%s attempts=%s", job_id, attempt
                )
                return extract_gladia_transcript(payload)
            if job_status == "error":
                message = _extract_gladia_error(payload) or "Gladia reported a failed job."
                raise RemoteTranscriptionError(f"Gladia job {job_id} failed: {message}")
            if job_status not in GLADIA_PENDING_STATUSES:
                LOGGER.warning(
                    "remote_speech unexpected_status job_id=%s status=%s", job_id, job_status
                )
            LOGGER.debug(
                "remote_speech pending job_id=%s status=%s attempt=%s next_interval=%.1f",
                job_id,
                job_status,
                attempt,
                interval,
            )

        raise StageTimeoutError(
            f"Gladia job {job_id} did not finish within {self._poll_timeout_seconds:.0f}s."
        )

    def _require_api_key(self) -> str:
        if self._api_key is None:
            raise MisconfigurationError("Gladia API key is missing. Set READTUBE_GLADIA_API_KEY.")
        return self._api_key


def extract_gladia_transcript(payload: dict[str, Any]) -> str:
    transcription = as_dict(as_dict(payload.get("result")).get("transcription"))
    full_transcript = coerce_nonempty_string(transcription.get("full_transcript"))
    if full_transcript is not None:
        return full_transcript
    utterances = [
        coerce_nonempty_string(as_dict(utterance).get("text"))
        for utterance in as_list(transcription.get("utterances"))
    ]
    return " ".join(text for text in utterances if text)


def _extract_gladia_error(payload: dict[str, Any]) -> str | None:
    for key in ("error", "message", "error_code"):
        value = payload.get(key)
        text = coerce_nonempty_string(value)
        if text is not None:
            return text
        nested = coerce_nonempty_string(as_dict(value).get("message"))
        if nested is not None:
            return nested
    return None


def _raise_for_status(status_code: int, payload: dict[str, Any], *, operation: str) -> None:
    if status_code < 400:
        return
    message = _extract_gladia_error(payload) or f"status {status_code}"
    if status_code in {401, 403}:
        raise MisconfigurationError(f"Gladia rejected the API key during {operation}: {message}")
    if status_code == 429:
        raise RateLimitedError(f"Gladia rate limited the {operation} request: {message}")
    if status_code >= 500:
        raise TransportError(f"Gladia {operation} failed ({status_code}): {message}")
    raise RemoteTranscriptionError(
        f"Gladia {operation} was rejected ({status_code}): {message}",
        retryable=False,
    )


def _encode_multipart(
    *,
    field_name: str,
    filename: str,
    file_content_type: str,
    data: bytes,
) -> tuple[bytes, str]:
    boundary = f"readtube-{uuid4().hex}"
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{field_name}"; filename="{filename}"\r\n'
        f"Content-Type: {file_content_type}\r\n\r\n"
    ).encode()
    tail = f"\r\n--{boundary}--\r\n".encode()
    return head + data + tail, f"multipart/form-data; boundary={boundary}"


def _request_json(
    method: str,
    url: str,
    *,
    api_key: str,
    timeout_seconds: float,
    body: bytes | None,
    content_type: str | None,
) -> tuple[int, dict[str, Any]]:
    headers = {
        "x-gladia-key": api_key,
        "accept": "application/json",
        "user-agent": "readtube/0.1",
    }
    if content_type is not None:
        headers["content-type"] = content_type
    request = Request(url, data=body, headers=headers, method=method)

    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status_code = int(response.getcode() or 0)
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        status_code = int(exc.code)
        raw_body = exc.read().decode("utf-8", errors="replace")
    except (URLError, TimeoutError, OSError) as exc:
        raise TransportError(f"Gladia request failed: {exc}") from exc
    return status_code, parse_json_dict(raw_body)
