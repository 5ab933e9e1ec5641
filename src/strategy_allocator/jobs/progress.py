"""Optimization event pub/sub for job streaming."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from .models import OptimizationEvent


class ProgressBroker:
    """In-process pub/sub keyed by job id.

    Publishing is synchronous and must happen on the event loop thread; worker
    threads hand events over with ``loop.call_soon_threadsafe``. Every event is
    kept until the job is forgotten, so a subscriber that arrives late still
    sees the full stream.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[OptimizationEvent | None]]] = {}
        self._history: dict[str, list[OptimizationEvent]] = {}
        self._closed: set[str] = set()

    def publish(self, job_id: str, event: OptimizationEvent) -> None:
        if job_id in self._closed:
            return
        self._history.setdefault(job_id, []).append(event)
        for queue in self._subscribers.get(job_id, []):
            queue.put_nowait(event)

    def close(self, job_id: str) -> None:
        if job_id in self._closed:
            return
        self._closed.add(job_id)
        for queue in self._subscribers.pop(job_id, []):
            queue.put_nowait(None)

    def forget(self, job_id: str) -> None:
        self._history.pop(job_id, None)
        self._closed.discard(job_id)

    def history(self, job_id: str) -> list[OptimizationEvent]:
        return list(self._history.get(job_id, []))

    async def subscribe(self, job_id: str) -> AsyncIterator[OptimizationEvent]:
        backlog = self.history(job_id)
        if job_id in self._closed:
            for event in backlog:
                yield event
            return

        queue: asyncio.Queue[OptimizationEvent | None] = asyncio.Queue()
        for event in backlog:
            queue.put_nowait(event)
        self._subscribers.setdefault(job_id, []).append(queue)

        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                yield item
        finally:
            subscribers = self._subscribers.get(job_id, [])
            if queue in subscribers:
                subscribers.remove(queue)
            if not subscribers and job_id in self._subscribers:
                del self._subscribers[job_id]
