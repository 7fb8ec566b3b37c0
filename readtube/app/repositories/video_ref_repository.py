from __future__ import annotations

from readtube.app.repositories.common import utc_now_iso
from readtube.app.repositories.database import Database
from readtube.app.services.video_ref import VideoRef


class VideoRefRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, video_id: str) -> VideoRef | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT video_id, title, duration_seconds FROM video_refs WHERE video_id = ?",
                (video_id,),
            ).fetchone()
        if row is None:
            return None
        duration = row["duration_seconds"]
        return VideoRef(
            video_id=str(row["video_id"]),
            title=row["title"],
            duration_seconds=int(duration) if duration is not None else None,
        )

    def upsert(self, video: VideoRef) -> None:
        # A refresh never erases metadata that an earlier lookup already knew.
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO video_refs (video_id, title, duration_seconds, created_at, refreshed_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    title = COALESCE(excluded.title, video_refs.title),
                    duration_seconds = COALESCE(
                        excluded.duration_seconds, video_refs.duration_seconds
                    ),
                    refreshed_at = excluded.refreshed_at
                """,
                (video.video_id, video.title, video.duration_seconds, now_iso, now_iso),
            )
