from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, AsyncIterator

from loguru import logger

from recipe_ingest.models.events import TERMINAL_EVENTS, EventType, SSEEvent


def progress(task_id: str, phase: str, progress_pct: int, status: str, **kwargs: Any) -> SSEEvent:
    data: dict[str, Any] = {
        "task_id": task_id,
        "phase": phase,
        "progress": progress_pct,
        "status": status,
    }
    data.update(kwargs)
    return SSEEvent(event=EventType.PROGRESS, data=data)


def phase_failed(task_id: str, phase: str, error_code: str, message: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.PHASE_FAILED,
        data={"task_id": task_id, "phase": phase, "error_code": error_code, "message": message},
    )


def review_ready(task_id: str, extraction_method: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"task_id": task_id, "progress": 100}
    if extraction_method:
        data["extraction_method"] = extraction_method
    return SSEEvent(event=EventType.REVIEW_READY, data=data)


def task_failed(task_id: str, failed_phase: str, error_code: str, message: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.TASK_FAILED,
        data={
            "task_id": task_id,
            "failed_phase": failed_phase,
            "error_code": error_code,
            "message": message,
        },
    )


def search_fallback(task_id: str, provider: str, fallback_from: str, reason: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.SEARCH_FALLBACK,
        data={
            "task_id": task_id,
            "provider": provider,
            "fallback_from": fallback_from,
            "fallback_reason": reason,
        },
    )


class ProgressBroker:
    """Best-effort in-process fan-out of task events to SSE subscribers."""

    def __init__(self, max_queue_size: int = 100):
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, list[asyncio.Queue[SSEEvent]]] = defaultdict(list)

    def publish(self, task_id: str, event: SSEEvent) -> None:
        for queue in list(self._subscribers.get(task_id, [])):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Dropping {event.event.value} for slow subscriber of task {task_id}")

    def open(self, task_id: str) -> asyncio.Queue[SSEEvent]:
        """Register a subscriber queue. Events published from now on are delivered to it."""
        queue: asyncio.Queue[SSEEvent] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[task_id].append(queue)
        return queue

    def close(self, task_id: str, queue: asyncio.Queue[SSEEvent]) -> None:
        queues = self._subscribers.get(task_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(task_id, None)

    @staticmethod
    async def drain(queue: asyncio.Queue[SSEEvent]) -> AsyncIterator[SSEEvent]:
        while True:
            event = await queue.get()
            yield event
            if event.event in TERMINAL_EVENTS:
                return

    async def subscribe(self, task_id: str) -> AsyncIterator[SSEEvent]:
        queue = self.open(task_id)
        try:
            async for event in self.drain(queue):
                yield event
        finally:
            self.close(task_id, queue)

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subscribers.get(task_id, []))
