from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator


class MessageFeed:
    """Fan out chat-message notifications to per-session subscribers."""

    def __init__(self, max_queue: int = 100) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = {}
        self._lock = asyncio.Lock()
        self._max_queue = max_queue

    @asynccontextmanager
    async def subscribe(self, session_id: str) -> AsyncIterator[asyncio.Queue[dict[str, Any]]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._max_queue)
        async with self._lock:
            self._subscribers.setdefault(session_id, set()).add(queue)
        try:
            yield queue
        finally:
            async with self._lock:
                queues = self._subscribers.get(session_id)
                if queues is not None:
                    queues.discard(queue)
                    if not queues:
                        self._subscribers.pop(session_id, None)

    async def publish(self, session_id: str, payload: dict[str, Any]) -> None:
        async with self._lock:
            queues = list(self._subscribers.get(session_id, set()))
        for queue in queues:
            if queue.full():
                # Slow consumer: drop its oldest notification.
                queue.get_nowait()
            queue.put_nowait(payload)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, set()))
