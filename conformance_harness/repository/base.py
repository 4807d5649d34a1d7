"""Abstract storage for sequence results and instance contexts."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from conformance_harness.context import Context
from conformance_harness.models.result import SequenceResult


class ResultNotFoundError(Exception):
    """Raised when a sequence result id is not present in the repository."""


@dataclass(frozen=True, kw_only=True)
class Repository(ABC):
    """Durable store the runner writes through after every test.

    Saved results are copies: mutating a ``SequenceResult`` after ``save``
    does not change what a later ``load`` returns until it is saved again.
    """

    _locks: dict[str, asyncio.Lock] = field(
        default_factory=dict, init=False, repr=False
    )

    @abstractmethod
    async def load(self, result_id: str) -> SequenceResult | None:
        """Return the stored result, or None if it does not exist."""

    @abstractmethod
    async def save(self, result: SequenceResult) -> None:
        """Insert or replace ``result`` by id."""

    @abstractmethod
    async def load_context(self, instance_id: str) -> Context:
        """Return the context of an instance; empty if none was saved."""

    @abstractmethod
    async def save_context(self, instance_id: str, context: Context) -> None:
        """Replace the stored context of an instance."""

    @abstractmethod
    async def results_for_instance(self, instance_id: str) -> Sequence[SequenceResult]:
        """Return all results of an instance ordered by creation time."""

    async def get(self, result_id: str) -> SequenceResult:
        result = await self.load(result_id)
        if result is None:
            raise ResultNotFoundError(f"Sequence result '{result_id}' not found")
        return result

    @asynccontextmanager
    async def lock(self, result_id: str) -> AsyncIterator[None]:
        """Serialize mutations of one sequence result within this process."""
        lock = self._locks.setdefault(result_id, asyncio.Lock())
        async with lock:
            yield
