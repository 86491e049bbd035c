from __future__ import annotations

import asyncio
from typing import Any

from .logging_utils import log_debug


class Broadcaster:
    """In-process publish/subscribe keyed by order id.

    Each subscriber owns a bounded queue; when it is full the oldest event is
    dropped so slow consumers always see the latest position.
    """

    def __init__(self, *, queue_size: int = 16) -> None:
        self._queue_size = max(1, int(queue_size))
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = {}

    def subscribe(self, order_id: str, maxsize: int | None = None) -> asyncio.Queue[dict[str, Any]]:
        q: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize or self._queue_size)
        self._subscribers.setdefault(order_id, set()).add(q)
        return q

    def unsubscribe(self, order_id: str, q: asyncio.Queue[dict[str, Any]]) -> None:
        subs = self._subscribers.get(order_id)
        if subs is None:
            return
        subs.discard(q)
        if not subs:
            del self._subscribers[order_id]

    def subscriber_count(self, order_id: str) -> int:
        return len(self._subscribers.get(order_id, ()))

    async def publish(self, order_id: str, event: dict[str, Any]) -> int:
        subs = self._subscribers.get(order_id)
        if not subs:
            return 0

        for q in list(subs):
            # keep only latest events if queue is full
            if q.full():
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            q.put_nowait(event)
        log_debug("tracking_update_published", order_id=order_id, subscribers=len(subs))
        return len(subs)
