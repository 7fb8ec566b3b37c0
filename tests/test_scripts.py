from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import pytest

from readtube.app.dependencies import reset_cached_dependencies
from readtube.app.scripts import export_openapi, transcribe_video, usage_ledger
from tests.conftest import FakeYouTube, ServiceFactory

RICK_ID = "dQw4w9WgXcQ"
LECTURE_ID = "LeCtUrE0045"


@pytest.fixture
def script_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    data_dir = tmp_path / "script-data"
    monkeypatch.setenv("READTUBE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("READTUBE_USAGE_DEFAULT_GRANTED_MINUTES", "30")
    reset_cached_dependencies()
    yield data_dir
    reset_cached_dependencies()


def test_usage_ledger_show_and_grant(
    script_env: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert usage_ledger.main(["show", "alice"]) == 0
    shown = capsys.readouterr().out.splitlines()
    assert shown[1].split("\t") == ["alice", "0", "30", "30", "0", "0.0%"]

    assert usage_ledger.main(["grant", "alice", "--minutes", "15"]) == 0
    granted = capsys.readouterr().out.splitlines()
    assert granted[0] == "Granted 15 minute(s) to alice."
    assert granted[2].split("\t")[:4] == ["alice", "0", "45", "45"]
    assert (script_env / "readtube.db").exists()


def test_usage_ledger_rejects_non_positive_grant(
    script_env: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _ = script_env
    assert usage_ledger.main(["grant", "alice", "--minutes", "0"]) == 2
    assert "--minutes must be positive" in capsys.readouterr().out


def test_export_openapi_writes_schema(tmp_path: Path, script_env: Path) -> None:
    _ = script_env
    output = tmp_path / "schema" / "openapi.json"

    export_openapi.main(["--output", str(output)])

    schema = json.loads(output.read_text(encoding="utf-8"))
    assert "/transcripts" in schema["paths"]
    assert "/usage/{caller_id}" in schema["paths"]


def test_transcribe_video_prints_transcript_and_writes_file(
    tmp_path: Path,
    script_env: Path,
    monkeypatch: pytest.MonkeyPatch,
    service_factory: ServiceFactory,
    youtube: FakeYouTube,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _ = script_env
    youtube.captions[RICK_ID] = "never gonna give you up"
    youtube.durations[RICK_ID] = 213
    service = service_factory()
    monkeypatch.setattr(transcribe_video, "get_transcript_service", lambda: service)
    output = tmp_path / "out" / "rick.txt"

    assert transcribe_video.main([f"https://youtu.be/{RICK_ID}", "--json"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["source"] == "captions"
    assert summary["cost_minutes"] == 4
    assert summary["cached"] is False

    assert transcribe_video.main([RICK_ID, "--output", str(output)]) == 0
    assert output.read_text(encoding="utf-8") == "never gonna give you up"
    assert "Wrote 23 characters (cache)" in capsys.readouterr().out


def test_transcribe_video_exit_codes(
    tmp_path: Path,
    script_env: Path,
    monkeypatch: pytest.MonkeyPatch,
    service_factory: ServiceFactory,
    youtube: FakeYouTube,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _ = script_env
    youtube.durations[LECTURE_ID] = 7_200
    youtube.durations[RICK_ID] = 60
    service = service_factory(default_granted_minutes=30)
    monkeypatch.setattr(transcribe_video, "get_transcript_service", lambda: service)

    assert transcribe_video.main(["https://vimeo.com/1"]) == 2
    assert transcribe_video.main([LECTURE_ID]) == 3
    assert "quota exceeded" in capsys.readouterr().err

    assert transcribe_video.main([RICK_ID, "--caller-id", "bob"]) == 1
    failure = capsys.readouterr().err
    assert "transcription failed (exhausted)" in failure
    assert '"strategies_tried"' in failure

    transcript_file = tmp_path / "typed.txt"
    transcript_file.write_text("typed by hand\n", encoding="utf-8")
    assert (
        transcribe_video.main(
            [RICK_ID, "--caller-id", "bob", "--client-transcript-file", str(transcript_file)]
        )
        == 0
    )
    assert capsys.readouterr().out.strip() == "typed by hand"
