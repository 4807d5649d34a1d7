"""Progress events emitted while sequences run, and a pub/sub bus to fan them out."""

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass
from typing import TypeAlias

from conformance_harness.models.outcome import ResultStatus
from conformance_harness.models.result import TestResult

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class ProgressEvent:
    """Emitted after each test result is persisted."""

    instance_id: str
    sequence_name: str
    completed_count: int
    total_count: int
    last_outcome: ResultStatus
    result: TestResult

    def as_dict(self) -> dict[str, object]:
        return {
            "instance_id": self.instance_id,
            "sequence_name": self.sequence_name,
            "completed_count": self.completed_count,
            "total_count": self.total_count,
            "last_outcome": self.last_outcome,
            "test_id": self.result.id,
            "message": self.result.message,
        }


ProgressObserver: TypeAlias = Callable[[ProgressEvent], Awaitable[None] | None]


def log_progress(event: ProgressEvent) -> None:
    """Observer writing one log line per finished test."""
    log.info(
        "[%d/%d] %s %s: %s",
        event.completed_count,
        event.total_count,
        event.sequence_name,
        event.result.id,
        event.last_outcome,
    )


class ProgressBus:
    """Async pub/sub bus keyed by testing instance.

    Instances are valid progress observers: pass the bus itself to a runner
    and subscribe per instance from a streaming endpoint.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[ProgressEvent]]] = (
            defaultdict(list)
        )
        self._lock = asyncio.Lock()

    async def __call__(self, event: ProgressEvent) -> None:
        await self.publish(event)

    async def publish(self, event: ProgressEvent) -> None:
        async with self._lock:
            queues = list(self._subscribers.get(event.instance_id, []))
        for queue in queues:
            await queue.put(event)

    async def subscribe(self, instance_id: str) -> AsyncGenerator[ProgressEvent, None]:
        """Yield events for ``instance_id`` until the iterator is closed."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        async with self._lock:
            self._subscribers[instance_id].append(queue)

        try:
            while True:
                yield await queue.get()
        finally:
            await self._remove_queue(instance_id, queue)

    async def _remove_queue(
        self, instance_id: str, queue: asyncio.Queue[ProgressEvent]
    ) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(instance_id)
            if not subscribers:
                return
            if queue in subscribers:
                subscribers.remove(queue)
            if not subscribers:
                self._subscribers.pop(instance_id, None)
