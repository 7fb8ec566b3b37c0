from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from readtube.app.repositories.common import parse_utc_timestamp, utc_now
from readtube.app.repositories.database import Database


@dataclass(frozen=True)
class CachedTranscriptRow:
    video_id: str
    transcript: str
    source_strategy: str
    model_or_method: str | None
    updated_at: datetime


class TranscriptCacheRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, video_id: str) -> CachedTranscriptRow | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT video_id, transcript, source_strategy, model_or_method, updated_at
                FROM transcript_cache
                WHERE video_id = ?
                """,
                (video_id,),
            ).fetchone()

        if row is None:
            return None
        updated_at = parse_utc_timestamp(row["updated_at"])
        if updated_at is None:
            return None
        return CachedTranscriptRow(
            video_id=str(row["video_id"]),
            transcript=str(row["transcript"]),
            source_strategy=str(row["source_strategy"]),
            model_or_method=row["model_or_method"],
            updated_at=updated_at,
        )

    def put(
        self,
        *,
        video_id: str,
        transcript: str,
        source_strategy: str,
        model_or_method: str | None,
        updated_at: datetime | None = None,
    ) -> None:
        timestamp = (updated_at or utc_now()).isoformat()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO transcript_cache
                (video_id, transcript, source_strategy, model_or_method, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    transcript = excluded.transcript,
                    source_strategy = excluded.source_strategy,
                    model_or_method = excluded.model_or_method,
                    updated_at = excluded.updated_at
                """,
                (video_id, transcript, source_strategy, model_or_method, timestamp),
            )
