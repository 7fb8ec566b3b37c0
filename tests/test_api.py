from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from readtube.app.dependencies import get_transcript_service
from readtube.app.services.usage_guard import UsageSummary
from tests.conftest import FakeYouTube

RICK_ID = "dQw4w9WgXcQ"
LECTURE_ID = "LeCtUrE0045"
ALICE = {"X-Caller-ID": "alice"}


def test_health_echoes_request_id(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-123"

    generated = client.get("/health")
    assert generated.headers["X-Request-ID"]


def test_acquire_returns_captions_then_cached_copy(
    client: TestClient,
    youtube: FakeYouTube,
) -> None:
    youtube.captions[RICK_ID] = "never gonna give you up"
    youtube.durations[RICK_ID] = 213

    first = client.post(
        "/transcripts",
        json={"video": f"https://youtu.be/{RICK_ID}"},
        headers=ALICE,
    )
    second = client.post(
        "/transcripts",
        json={"video": f"https://www.youtube.com/watch?v={RICK_ID}&t=42"},
        headers=ALICE,
    )

    assert first.status_code == 200
    body = first.json()
    assert body["video_id"] == RICK_ID
    assert body["transcript"] == "never gonna give you up"
    assert body["source"] == "captions"
    assert body["cached"] is False
    assert body["cost_minutes"] == 4
    assert body["length_chars"] == len("never gonna give you up")

    assert second.status_code == 200
    assert second.json()["source"] == "cache"
    assert second.json()["cached"] is True
    assert second.json()["cost_minutes"] == 0
    assert youtube.caption_calls == [RICK_ID]


def test_acquire_requires_caller_id(client: TestClient) -> None:
    missing = client.post("/transcripts", json={"video": RICK_ID})
    too_long = client.post(
        "/transcripts",
        json={"video": RICK_ID},
        headers={"X-Caller-ID": "x" * 129},
    )

    assert missing.status_code == 401
    assert missing.json()["error_kind"] == "invalid_input"
    assert too_long.status_code == 401


def test_acquire_rejects_unrecognized_video(client: TestClient, youtube: FakeYouTube) -> None:
    response = client.post(
        "/transcripts",
        json={"video": "https://vimeo.com/123456"},
        headers=ALICE,
    )

    assert response.status_code == 400
    assert response.json()["error_kind"] == "invalid_input"
    assert youtube.caption_calls == []


def test_acquire_rejects_unknown_request_fields(client: TestClient) -> None:
    response = client.post(
        "/transcripts",
        json={"video": RICK_ID, "priority": "high"},
        headers=ALICE,
    )

    assert response.status_code == 422


def test_acquire_reports_quota_shortfall(client: TestClient, youtube: FakeYouTube) -> None:
    youtube.captions[LECTURE_ID] = "two hours of lecture"
    youtube.durations[LECTURE_ID] = 7_200

    response = client.post("/transcripts", json={"video": LECTURE_ID}, headers=ALICE)

    assert response.status_code == 402
    body = response.json()
    assert body["error_kind"] == "quota_exceeded"
    assert body["details"] == {"required_minutes": 120, "remaining_minutes": 60}
    assert youtube.caption_calls == []


def test_acquire_exhaustion_includes_troubleshooting(
    client: TestClient,
    youtube: FakeYouTube,
) -> None:
    youtube.durations[RICK_ID] = 213

    response = client.post("/transcripts", json={"video": RICK_ID}, headers=ALICE)

    assert response.status_code == 422
    body = response.json()
    assert body["error_kind"] == "exhausted"
    assert body["client_fallback_requested"] is True
    strategies = body["troubleshooting"]["strategies_tried"]
    assert [attempt["strategy"] for attempt in strategies] == [
        "captions",
        "remote_speech",
        "local_speech",
        "client_fallback",
    ]
    assert strategies[0]["outcome"] == "not_found"
    assert strategies[1]["outcome"] == "skipped"
    assert body["troubleshooting"]["suggestions"]

    usage = client.get("/usage/alice").json()
    assert usage["minutes_used"] == 0


def test_acquire_accepts_client_transcript(client: TestClient, youtube: FakeYouTube) -> None:
    youtube.durations[RICK_ID] = 213

    response = client.post(
        "/transcripts",
        json={"video": RICK_ID, "client_transcript": "read   off the screen"},
        headers=ALICE,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "client-fallback"
    assert body["transcript"] == "read off the screen"
    assert body["cost_minutes"] == 0
    assert body["model_or_method"] == "client-supplied"


def test_acquire_unavailable_video_is_not_found(client: TestClient, youtube: FakeYouTube) -> None:
    youtube.unavailable.add(RICK_ID)

    response = client.post("/transcripts", json={"video": RICK_ID}, headers=ALICE)

    assert response.status_code == 404
    body = response.json()
    assert body["error_kind"] == "unavailable"
    assert body["retryable"] is False


def test_acquire_is_rate_limited_per_caller(client: TestClient) -> None:
    statuses = [
        client.post("/transcripts", json={"video": "not a video"}, headers=ALICE).status_code
        for _ in range(5)
    ]
    limited = client.post("/transcripts", json={"video": "not a video"}, headers=ALICE)
    other_caller = client.post(
        "/transcripts",
        json={"video": "not a video"},
        headers={"X-Caller-ID": "bob"},
    )

    assert statuses == [400] * 5
    assert limited.status_code == 429
    assert limited.json()["error_kind"] == "rate_limited"
    assert int(limited.headers["Retry-After"]) >= 1
    assert other_caller.status_code == 400


def test_get_cached_transcript(client: TestClient, youtube: FakeYouTube) -> None:
    youtube.captions[RICK_ID] = "never gonna give you up"
    youtube.durations[RICK_ID] = 213

    before = client.get(f"/transcripts/{RICK_ID}")
    client.post("/transcripts", json={"video": RICK_ID}, headers=ALICE)
    after = client.get(f"/transcripts/{RICK_ID}")

    assert before.status_code == 404
    assert after.status_code == 200
    body = after.json()
    assert body["transcript"] == "never gonna give you up"
    assert body["source"] == "captions"
    assert body["model_or_method"] == "captions:en:auto"
    assert body["is_fresh"] is True

    assert client.get("/transcripts/short").status_code == 400


def test_usage_reflects_committed_minutes(client: TestClient, youtube: FakeYouTube) -> None:
    youtube.captions[RICK_ID] = "never gonna give you up"
    youtube.durations[RICK_ID] = 213
    client.post("/transcripts", json={"video": RICK_ID}, headers=ALICE)

    response = client.get("/usage/alice")

    assert response.status_code == 200
    assert response.json() == {
        "caller_id": "alice",
        "minutes_used": 4,
        "minutes_granted": 60,
        "remaining_minutes": 56,
        "acquisitions": 1,
        "percent_used": 6.7,
        "enforced": True,
    }


def test_transcription_config_reports_strategies(client: TestClient) -> None:
    response = client.get("/transcription/config")

    assert response.status_code == 200
    body = response.json()
    assert body["strategy_order"] == [
        "captions",
        "remote_speech",
        "local_speech",
        "client_fallback",
    ]
    assert body["speech"]["remote_speech"]["engine"] == "fake-speech"
    assert body["speech"]["remote_speech"]["available"] is False
    assert body["usage_enforced"] is True
    assert body["warnings"]


def test_openapi_lists_transcript_operations(client: TestClient) -> None:
    schema = client.get("/openapi.json").json()

    assert schema["info"]["title"] == "Readtube Transcripts API"
    operation_ids = {
        operation["operationId"]
        for path in schema["paths"].values()
        for operation in path.values()
    }
    assert {
        "acquire_transcript",
        "get_cached_transcript",
        "get_usage",
        "transcription_config",
        "health_check",
    } <= operation_ids


class _BrokenService:
    def usage_summary(self, caller_id: str) -> UsageSummary:
        raise RuntimeError(f"database is locked for {caller_id}")


def test_unexpected_failure_returns_structured_server_error(client: TestClient) -> None:
    app = client.app
    assert isinstance(app, FastAPI)
    app.dependency_overrides[get_transcript_service] = lambda: _BrokenService()
    raw_client = TestClient(app, raise_server_exceptions=False)

    response = raw_client.get("/usage/alice")

    assert response.status_code == 500
    body = response.json()
    assert body["error_kind"] == "internal"
    assert body["retryable"] is True
    assert body["error"] == "The server failed while handling this request."
    assert "database is locked" not in response.text
