from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock


@dataclass
class OperationStats:
    call_count: int = 0
    failure_count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0


class MetricsStore:
    """Upstream call timings plus plain counters for optimizer outcomes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._created_at = datetime.now(UTC).isoformat()
        self._operations: dict[str, OperationStats] = {}
        self._counters: dict[str, int] = {}

    def record_call(self, operation: str, *, duration_ms: float, failed: bool = False) -> None:
        name = operation.strip() or "unknown"
        d_ms = max(float(duration_ms), 0.0)

        with self._lock:
            stats = self._operations.setdefault(name, OperationStats())
            stats.call_count += 1
            if failed:
                stats.failure_count += 1
            stats.total_duration_ms += d_ms
            if d_ms > stats.max_duration_ms:
                stats.max_duration_ms = d_ms

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[counter] = self._counters.get(counter, 0) + int(amount)

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            operations: dict[str, dict[str, float | int]] = {}
            for name in sorted(self._operations):
                stats = self._operations[name]
                avg_duration_ms = stats.total_duration_ms / stats.call_count if stats.call_count else 0.0
                operations[name] = {
                    "call_count": stats.call_count,
                    "failure_count": stats.failure_count,
                    "avg_duration_ms": round(avg_duration_ms, 3),
                    "max_duration_ms": round(stats.max_duration_ms, 3),
                }

            return {
                "created_at": self._created_at,
                "operations": operations,
                "counters": dict(sorted(self._counters.items())),
            }

    def reset(self) -> None:
        with self._lock:
            self._created_at = datetime.now(UTC).isoformat()
            self._operations.clear()
            self._counters.clear()


METRICS = MetricsStore()


def record_call(operation: str, *, duration_ms: float, failed: bool = False) -> None:
    METRICS.record_call(operation, duration_ms=duration_ms, failed=failed)


def increment(counter: str, amount: int = 1) -> None:
    METRICS.increment(counter, amount)


def metrics_snapshot() -> dict[str, object]:
    return METRICS.snapshot()


def reset_metrics() -> None:
    METRICS.reset()
