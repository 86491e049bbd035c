"""Structured JSON logging for the tracking core.

Every record carries the service name plus whatever tracking context is bound
for the current task (order, agent, request), so the lines produced while one
location update is processed can be joined back together.
"""

from __future__ import annotations

import contextvars
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "delivery_tracking"
LOG_FILE_NAME = "tracking.log.jsonl"
CONTEXT_FIELDS = ("order_id", "agent_id", "request_id")

_LOG_CONTEXT: contextvars.ContextVar[dict[str, str]] = contextvars.ContextVar(
    "delivery_tracking_log_context",
    default={},
)


class _TrackingContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _LOG_CONTEXT.get().items():
            # Fields passed explicitly to the call win.
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind tracking identifiers to every record logged inside the block."""
    merged = dict(_LOG_CONTEXT.get())
    merged.update({k: str(v) for k, v in fields.items() if k in CONTEXT_FIELDS and v is not None})
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def current_log_context() -> dict[str, str]:
    return dict(_LOG_CONTEXT.get())


def _parse_level(name: str) -> int:
    level = logging.getLevelName(str(name).strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _resolve_log_dir(configured_out_dir: str) -> Path | None:
    for log_dir in (
        Path(configured_out_dir) / "logs",
        Path.cwd() / "out" / "logs",
        Path(gettempdir()) / "delivery-tracking" / "logs",
    ):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            marker = log_dir / ".writetest"
            marker.touch(exist_ok=True)
            marker.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


def _formatter() -> logging.Formatter:
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"asctime": "ts", "levelname": "level", "name": "logger"},
        static_fields={"service": "delivery-tracking"},
    )


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(settings.log_level))
    logger.propagate = False
    logger.addFilter(_TrackingContextFilter())

    formatter = _formatter()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_dir = _resolve_log_dir(settings.out_dir)
    if log_dir is not None:
        try:
            handlers.append(logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8"))
        except OSError:
            pass
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


def _emit(level: int, event: str, fields: dict[str, Any]) -> None:
    logger = get_logger()
    if logger.isEnabledFor(level):
        logger.log(level, event, extra={"event": event, **fields})


def log_event(event: str, **fields: Any) -> None:
    _emit(logging.INFO, event, fields)


def log_warning(event: str, **fields: Any) -> None:
    _emit(logging.WARNING, event, fields)


def log_debug(event: str, **fields: Any) -> None:
    _emit(logging.DEBUG, event, fields)
