from __future__ import annotations

import asyncio
from typing import AsyncIterator, List

from certifier.app.events.models import CertificationEvent


class MemoryQueueEventEmitter:
    """
    In-memory async event emitter with a single consumer.

    Properties:
    - non-blocking for the certification path
    - deterministic ordering
    - ``stream`` ends after ``close``
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[CertificationEvent | None] = asyncio.Queue()
        self._closed = False

    async def emit(self, event: CertificationEvent) -> None:
        if self._closed:
            return
        await self._queue.put(event)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(None)

    async def stream(self) -> AsyncIterator[CertificationEvent]:
        """
        Async generator yielding emitted events in order.
        """
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event

    def drain_nowait(self) -> List[CertificationEvent]:
        """Return all queued events without waiting."""
        events: List[CertificationEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events
