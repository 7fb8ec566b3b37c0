from __future__ import annotations

import math
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from time import monotonic


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


class CallerRateLimiter:
    """Sliding-window limit on acquisition requests per caller id.

    Callers with no request inside the window are dropped on a sweep that runs
    at most once per window length.
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._max_requests = max(1, max_requests)
        self._window_seconds = max(1, window_seconds)
        self._clock = clock
        self._lock = Lock()
        self._windows: dict[str, deque[float]] = {}
        self._next_sweep_at = clock() + self._window_seconds

    @property
    def tracked_callers(self) -> int:
        with self._lock:
            return len(self._windows)

    def take(self, caller_id: str) -> RateLimitDecision:
        now = self._clock()
        cutoff = now - self._window_seconds

        with self._lock:
            if now >= self._next_sweep_at:
                self._drop_idle_callers(cutoff)
                self._next_sweep_at = now + self._window_seconds

            window = self._windows.setdefault(caller_id, deque())
            while window and window[0] <= cutoff:
                window.popleft()

            if len(window) >= self._max_requests:
                return RateLimitDecision(
                    allowed=False,
                    limit=self._max_requests,
                    remaining=0,
                    retry_after_seconds=max(
                        1, math.ceil(window[0] + self._window_seconds - now)
                    ),
                )

            window.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=self._max_requests,
                remaining=self._max_requests - len(window),
                retry_after_seconds=0,
            )

    def _drop_idle_callers(self, cutoff: float) -> None:
        idle = [
            caller for caller, window in self._windows.items() if not window or window[-1] <= cutoff
        ]
        for caller in idle:
            del self._windows[caller]
