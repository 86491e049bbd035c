from __future__ import annotations

import time
from collections.abc import Callable
from threading import Lock
from typing import Any

from .logging_utils import log_warning


class CircuitBreaker:
    """Consecutive-failure breaker for the upstream routing API.

    After ``failure_threshold`` failures in a row the breaker opens for
    ``cooldown_s``; while open, callers skip the upstream entirely. The first
    call after the cooldown is let through, and a success closes the breaker.
    A threshold of 0 disables it.
    """

    def __init__(
        self,
        *,
        failure_threshold: int,
        cooldown_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold = max(0, int(failure_threshold))
        self._cooldown_s = max(0.0, float(cooldown_s))
        self._clock = clock
        self._lock = Lock()
        self._fail_streak = 0
        self._open_until = 0.0
        self._times_opened = 0

    @property
    def enabled(self) -> bool:
        return self._threshold > 0

    def is_open(self) -> bool:
        if not self.enabled:
            return False
        with self._lock:
            return self._clock() < self._open_until

    def record_success(self) -> None:
        with self._lock:
            self._fail_streak = 0
            self._open_until = 0.0

    def record_failure(self) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._fail_streak += 1
            if self._fail_streak < self._threshold:
                return
            self._open_until = self._clock() + self._cooldown_s
            self._times_opened += 1
            streak = self._fail_streak
        log_warning("circuit_breaker_opened", fail_streak=streak, cooldown_s=self._cooldown_s)

    def reset(self) -> None:
        with self._lock:
            self._fail_streak = 0
            self._open_until = 0.0

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "enabled": self.enabled,
                "open": self.enabled and self._clock() < self._open_until,
                "fail_streak": self._fail_streak,
                "times_opened": self._times_opened,
                "failure_threshold": self._threshold,
                "cooldown_s": self._cooldown_s,
            }
