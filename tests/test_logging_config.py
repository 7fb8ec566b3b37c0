from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from readtube.app.config import load_settings
from readtube.app.logging_config import (
    ROOT_LOGGER_NAME,
    TELEMETRY_LOGGER_NAME,
    TELEMETRY_LOG_FILE_NAME,
    configure_application_logging,
)


@pytest.fixture(autouse=True)
def _restore_loggers() -> Iterator[None]:
    yield
    for name in (ROOT_LOGGER_NAME, TELEMETRY_LOGGER_NAME):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)


def _records(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_application_log_file_is_json_with_record_metadata(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("READTUBE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("READTUBE_LOG_LEVEL", "warning")

    log_file = configure_application_logging(load_settings())
    logging.getLogger("readtube.transcripts").debug("acquire cache_hit video_id=%s", "abc")
    for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
        handler.flush()

    record = _records(log_file)[-1]
    assert record["event"] == "acquire cache_hit video_id=abc"
    assert record["level"] == "debug"
    assert record["logger"] == "readtube.transcripts"
    assert record["module"] == "test_logging_config"
    assert isinstance(record["lineno"], int)
    assert "timestamp" in record
    assert "_record" not in record


def test_telemetry_events_get_their_own_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("READTUBE_DATA_DIR", str(tmp_path))

    log_file = configure_application_logging(load_settings())
    logging.getLogger(TELEMETRY_LOGGER_NAME).info("usage.commit caller_id=alice")
    for name in (ROOT_LOGGER_NAME, TELEMETRY_LOGGER_NAME):
        for handler in logging.getLogger(name).handlers:
            handler.flush()

    telemetry_events = [
        record["event"] for record in _records(log_file.parent / TELEMETRY_LOG_FILE_NAME)
    ]
    application_events = [record["event"] for record in _records(log_file)]
    assert telemetry_events == ["usage.commit caller_id=alice"]
    assert "usage.commit caller_id=alice" not in application_events
