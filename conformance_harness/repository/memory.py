"""In-memory repository, used for tests and one-shot CLI runs."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from conformance_harness.context import Context
from conformance_harness.models.result import SequenceResult
from conformance_harness.repository.base import Repository


@dataclass(frozen=True, kw_only=True)
class MemoryRepository(Repository):
    """Stores serialized copies so records round-trip like a real store."""

    _results: dict[str, dict[str, Any]] = field(
        default_factory=dict, init=False, repr=False
    )
    _contexts: dict[str, dict[str, Any]] = field(
        default_factory=dict, init=False, repr=False
    )

    async def load(self, result_id: str) -> SequenceResult | None:
        data = self._results.get(result_id)
        return None if data is None else SequenceResult.model_validate(data)

    async def save(self, result: SequenceResult) -> None:
        self._results[result.id] = result.model_dump(mode="json")

    async def load_context(self, instance_id: str) -> Context:
        return Context(self._contexts.get(instance_id))

    async def save_context(self, instance_id: str, context: Context) -> None:
        self._contexts[instance_id] = context.to_dict()

    async def results_for_instance(self, instance_id: str) -> Sequence[SequenceResult]:
        results = [
            SequenceResult.model_validate(data)
            for data in self._results.values()
            if data["instance_id"] == instance_id
        ]
        return sorted(results, key=lambda result: result.created_at)
