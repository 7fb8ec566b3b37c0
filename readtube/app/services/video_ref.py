from __future__ import annotations

import math
import re
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

from readtube.app.services.errors import InvalidVideoError

VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")
_YOUTUBE_HOSTS: frozenset[str] = frozenset(
    {
        "youtube.com",
        "www.youtube.com",
        "m.youtube.com",
        "music.youtube.com",
        "youtube-nocookie.com",
        "www.youtube-nocookie.com",
    }
)
_PATH_PREFIXES: tuple[str, ...] = ("/shorts/", "/embed/", "/live/", "/v/")


@dataclass(frozen=True)
class VideoRef:
    video_id: str
    title: str | None = None
    duration_seconds: int | None = None

    def __post_init__(self) -> None:
        if not is_valid_video_id(self.video_id):
            raise InvalidVideoError(f"Invalid video id: {self.video_id!r}")

    @property
    def watch_url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"

    @property
    def duration_minutes(self) -> int:
        return minutes_for_duration(self.duration_seconds)


def is_valid_video_id(value: str) -> bool:
    return bool(VIDEO_ID_PATTERN.fullmatch(value))


def minutes_for_duration(duration_seconds: int | float | None) -> int:
    if duration_seconds is None or duration_seconds <= 0:
        return 0
    return max(1, math.ceil(duration_seconds / 60))


def parse_video_id(value: str) -> str:
    candidate = value.strip()
    if is_valid_video_id(candidate):
        return candidate

    if "://" not in candidate and candidate.split("/", 1)[0].lower().endswith(
        ("youtube.com", "youtu.be", "youtube-nocookie.com")
    ):
        candidate = f"https://{candidate}"

    parsed = urlparse(candidate)
    host = (parsed.hostname or "").lower()
    extracted: str | None = None
    if host in {"youtu.be", "www.youtu.be"}:
        extracted = parsed.path.lstrip("/").split("/", 1)[0]
    elif host in _YOUTUBE_HOSTS:
        if parsed.path == "/watch":
            values = parse_qs(parsed.query).get("v")
            extracted = values[0] if values else None
        else:
            for prefix in _PATH_PREFIXES:
                if parsed.path.startswith(prefix):
                    extracted = parsed.path[len(prefix) :].split("/", 1)[0]
                    break

    if extracted is None or not is_valid_video_id(extracted):
        raise InvalidVideoError(f"Could not extract a YouTube video id from {value!r}.")
    return extracted


def parse_video_ref(value: str) -> VideoRef:
    return VideoRef(video_id=parse_video_id(value))
