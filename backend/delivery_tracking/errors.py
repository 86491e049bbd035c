from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "invalid_coordinates",
        "invalid_context",
        "invalid_options",
        "session_not_found",
    }
)


@dataclass(eq=False)
class TrackingInputError(ValueError):
    """Caller-supplied input that is rejected before any network activity."""

    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        self.reason_code = normalize_reason_code(self.reason_code)

    def __str__(self) -> str:
        return self.message


def normalize_reason_code(reason_code: str, *, default: str = "invalid_options") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
