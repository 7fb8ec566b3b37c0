from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from readtube.app.repositories.common import utc_now
from readtube.app.repositories.transcript_cache_repository import (
    CachedTranscriptRow,
    TranscriptCacheRepository,
)

LOGGER = logging.getLogger("readtube.cache")


@dataclass(frozen=True)
class CacheEntry:
    video_id: str
    transcript_text: str
    source_strategy: str
    model_or_method: str | None
    updated_at: datetime
    is_fresh: bool


class ResultCache:
    """Transcript cache keyed by video id.

    Entries past the TTL are kept and reported as stale; the next successful
    acquisition overwrites them.
    """

    def __init__(
        self,
        repository: TranscriptCacheRepository,
        *,
        ttl_seconds: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._ttl = timedelta(seconds=max(0, ttl_seconds))
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def lookup(self, video_id: str) -> CacheEntry | None:
        entry = self.peek(video_id)
        if entry is None:
            return None
        if not entry.is_fresh:
            LOGGER.debug(
                "cache stale video_id=%s updated_at=%s", video_id, entry.updated_at.isoformat()
            )
            return None
        return entry

    def peek(self, video_id: str) -> CacheEntry | None:
        row = self._repository.get(video_id)
        if row is None or not row.transcript.strip():
            return None
        return self._to_entry(row)

    def store(
        self,
        video_id: str,
        transcript_text: str,
        source_strategy: str,
        model_or_method: str | None = None,
    ) -> None:
        if not transcript_text.strip():
            raise ValueError("refusing to cache an empty transcript")
        self._repository.put(
            video_id=video_id,
            transcript=transcript_text,
            source_strategy=source_strategy,
            model_or_method=model_or_method,
            updated_at=self._clock(),
        )
        LOGGER.info(
            "cache stored video_id=%s source=%s length_chars=%s",
            video_id,
            source_strategy,
            len(transcript_text),
        )

    def _to_entry(self, row: CachedTranscriptRow) -> CacheEntry:
        return CacheEntry(
            video_id=row.video_id,
            transcript_text=row.transcript,
            source_strategy=row.source_strategy,
            model_or_method=row.model_or_method,
            updated_at=row.updated_at,
            is_fresh=self._clock() - row.updated_at < self._ttl,
        )
