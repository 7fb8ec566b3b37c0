from __future__ import annotations

import logging
from dataclasses import dataclass

from readtube.app.repositories.usage_ledger_repository import (
    UsageLedgerRepository,
    UsageLedgerRow,
)
from readtube.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("readtube.usage")


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    required_minutes: int
    remaining_minutes: int
    reason: str | None = None


@dataclass(frozen=True)
class UsageSummary:
    caller_id: str
    minutes_used: int
    minutes_granted: int
    remaining_minutes: int
    acquisitions: int
    percent_used: float
    enforced: bool


class UsageGuard:
    """Per-caller minute accounting around an acquisition.

    `check_quota` only reads the ledger. `commit` is the single write path and
    must only be called once an acquisition has produced a transcript.
    """

    def __init__(
        self,
        *,
        ledger: UsageLedgerRepository,
        telemetry: TelemetryClient,
        enforcement_enabled: bool = True,
    ) -> None:
        self._ledger = ledger
        self._telemetry = telemetry
        self._enforcement_enabled = enforcement_enabled

    @property
    def enforcement_enabled(self) -> bool:
        return self._enforcement_enabled

    def check_quota(self, caller_id: str, required_minutes: int) -> QuotaDecision:
        required = max(0, required_minutes)
        row = self._ledger.get(caller_id)
        remaining = row.remaining_minutes
        if not self._enforcement_enabled:
            return QuotaDecision(
                allowed=True,
                required_minutes=required,
                remaining_minutes=remaining,
            )
        if required > remaining:
            LOGGER.info(
                "usage denied caller_id=%s required_minutes=%s remaining_minutes=%s",
                caller_id,
                required,
                remaining,
            )
            return QuotaDecision(
                allowed=False,
                required_minutes=required,
                remaining_minutes=remaining,
                reason=(
                    f"This video needs {required} minute(s) but only "
                    f"{max(0, remaining)} remain."
                ),
            )
        return QuotaDecision(allowed=True, required_minutes=required, remaining_minutes=remaining)

    def commit(self, caller_id: str, minutes: int) -> UsageLedgerRow:
        row = self._ledger.atomic_increment(caller_id, minutes)
        LOGGER.info(
            "usage committed caller_id=%s minutes=%s minutes_used=%s minutes_granted=%s",
            caller_id,
            max(0, minutes),
            row.minutes_used,
            row.minutes_granted,
        )
        self._telemetry.emit(
            "usage.commit",
            caller_id=caller_id,
            minutes=max(0, minutes),
            minutes_used=row.minutes_used,
            remaining_minutes=row.remaining_minutes,
        )
        return row

    def grant(self, caller_id: str, minutes: int) -> UsageLedgerRow:
        if minutes <= 0:
            raise ValueError("granted minutes must be positive")
        row = self._ledger.grant(caller_id, minutes)
        LOGGER.info(
            "usage granted caller_id=%s minutes=%s minutes_granted=%s",
            caller_id,
            minutes,
            row.minutes_granted,
        )
        return row

    def summary(self, caller_id: str) -> UsageSummary:
        row = self._ledger.get(caller_id)
        percent_used = (
            round(100.0 * row.minutes_used / row.minutes_granted, 1)
            if row.minutes_granted > 0
            else 0.0
        )
        return UsageSummary(
            caller_id=row.caller_id,
            minutes_used=row.minutes_used,
            minutes_granted=row.minutes_granted,
            remaining_minutes=row.remaining_minutes,
            acquisitions=row.acquisitions,
            percent_used=percent_used,
            enforced=self._enforcement_enabled,
        )
