from __future__ import annotations

from dataclasses import dataclass

from readtube.app.repositories.common import utc_now_iso
from readtube.app.repositories.database import Database


@dataclass(frozen=True)
class UsageLedgerRow:
    caller_id: str
    minutes_used: int
    minutes_granted: int
    acquisitions: int

    @property
    def remaining_minutes(self) -> int:
        return self.minutes_granted - self.minutes_used


class UsageLedgerRepository:
    def __init__(self, db: Database, *, default_granted_minutes: int) -> None:
        self._db = db
        self._default_granted_minutes = max(0, default_granted_minutes)

    def get(self, caller_id: str) -> UsageLedgerRow:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT caller_id, minutes_used, minutes_granted, acquisitions
                FROM usage_ledger
                WHERE caller_id = ?
                """,
                (caller_id,),
            ).fetchone()

        if row is None:
            return UsageLedgerRow(
                caller_id=caller_id,
                minutes_used=0,
                minutes_granted=self._default_granted_minutes,
                acquisitions=0,
            )
        return UsageLedgerRow(
            caller_id=str(row["caller_id"]),
            minutes_used=int(row["minutes_used"]),
            minutes_granted=int(row["minutes_granted"]),
            acquisitions=int(row["acquisitions"]),
        )

    def atomic_increment(self, caller_id: str, minutes: int) -> UsageLedgerRow:
        # Single statement so concurrent commits for one caller never lose updates.
        delta = max(0, minutes)
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO usage_ledger
                (caller_id, minutes_used, minutes_granted, acquisitions, updated_at)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(caller_id) DO UPDATE SET
                    minutes_used = usage_ledger.minutes_used + excluded.minutes_used,
                    acquisitions = usage_ledger.acquisitions + 1,
                    updated_at = excluded.updated_at
                """,
                (caller_id, delta, self._default_granted_minutes, utc_now_iso()),
            )
        return self.get(caller_id)

    def grant(self, caller_id: str, minutes: int) -> UsageLedgerRow:
        delta = max(0, minutes)
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO usage_ledger
                (caller_id, minutes_used, minutes_granted, acquisitions, updated_at)
                VALUES (?, 0, ?, 0, ?)
                ON CONFLICT(caller_id) DO UPDATE SET
                    minutes_granted = usage_ledger.minutes_granted + ?,
                    updated_at = excluded.updated_at
                """,
                (caller_id, self._default_granted_minutes + delta, utc_now_iso(), delta),
            )
        return self.get(caller_id)
