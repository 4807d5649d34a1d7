"""Orchestrator driving queues of sequences for one or more testing instances."""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from conformance_harness.callback_keys import CallbackLinks
from conformance_harness.http import LoggedClient
from conformance_harness.models.definition import TestSet
from conformance_harness.models.result import RequestResponse, SequenceResult
from conformance_harness.progress import ProgressObserver
from conformance_harness.registry import Registry
from conformance_harness.repository.base import Repository
from conformance_harness.runner import CANCEL_MESSAGE, SequenceRunner

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class SequenceOrchestrator:
    """Runs sequences in order, stopping at the first one that suspends.

    Sequences queued behind a suspended one are stored on its result as
    ``next_sequences`` and picked up again by ``resume``.
    """

    registry: Registry
    repository: Repository
    client: LoggedClient | None = None
    observer: ProgressObserver | None = None
    links: CallbackLinks | None = None
    test_sets: Sequence[TestSet] = ()

    async def run_sequences(
        self,
        instance_id: str,
        names: Sequence[str],
        *,
        test_set_id: str | None = None,
    ) -> Sequence[SequenceResult]:
        """Run the named sequences against the instance's stored context.

        Args:
            instance_id: Testing instance the results belong to
            names: Sequence names, in execution order
            test_set_id: Test set the run belongs to, if any

        Returns:
            Results of the sequences that ran; the last may be waiting

        """
        context = await self.repository.load_context(instance_id)
        queue = list(names)
        results: list[SequenceResult] = []

        while queue:
            name = queue.pop(0)
            if name not in self.registry:
                log.warning("Skipping unknown sequence %s", name)
                continue

            runner = self._runner(
                instance_id,
                name,
                test_set_id=test_set_id,
                test_case_id=self._test_case_id(test_set_id, name),
                next_sequences=queue,
            )
            result = await runner.start(context)
            results.append(result)
            if result.wait_at is not None:
                log.info(
                    "Sequence %s is waiting at %s; %d sequence(s) queued",
                    name,
                    result.wait_at,
                    len(queue),
                )
                break

        return results

    async def resume(
        self,
        result_id: str,
        callback_data: dict[str, str],
        *,
        inbound: RequestResponse | None = None,
        fail_message: str | None = None,
    ) -> Sequence[SequenceResult]:
        """Resume a waiting result, then run whatever was queued behind it."""
        result = await self.repository.get(result_id)
        context = await self.repository.load_context(result.instance_id)

        runner = self._runner(result.instance_id, result.name, sequence_result=result)
        resumed = await runner.resume(
            context, callback_data, inbound=inbound, fail_message=fail_message
        )

        results = [resumed]
        if resumed.wait_at is None and resumed.next_sequences:
            results.extend(
                await self.run_sequences(
                    resumed.instance_id,
                    resumed.next_sequences,
                    test_set_id=resumed.test_set_id,
                )
            )
        return results

    async def cancel(
        self, result_id: str, reason: str = CANCEL_MESSAGE
    ) -> SequenceResult:
        result = await self.repository.get(result_id)
        runner = self._runner(result.instance_id, result.name, sequence_result=result)
        return await runner.cancel(reason)

    async def run_instances(
        self, plans: Mapping[str, Sequence[str]]
    ) -> Mapping[str, Sequence[SequenceResult]]:
        """Run several instances concurrently; one failing does not stop the rest."""
        if not plans:
            log.info("No testing instances to run")
            return {}

        log.info("Running %d testing instance(s)...", len(plans))
        instance_ids = list(plans)
        outcomes = await asyncio.gather(
            *(
                self.run_sequences(instance_id, plans[instance_id])
                for instance_id in instance_ids
            ),
            return_exceptions=True,
        )

        results: dict[str, Sequence[SequenceResult]] = {}
        for instance_id, outcome in zip(instance_ids, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                log.error(
                    "Testing instance %s failed: %s",
                    instance_id,
                    outcome,
                    exc_info=outcome,
                )
                results[instance_id] = []
            else:
                results[instance_id] = outcome
        return results

    def _test_case_id(self, test_set_id: str | None, name: str) -> str | None:
        for test_set in self.test_sets:
            if test_set.id != test_set_id:
                continue
            for group in test_set.groups:
                for test_case in group.test_cases:
                    if test_case.sequence == name:
                        return test_case.id
        return None

    def _runner(
        self,
        instance_id: str,
        name: str,
        *,
        sequence_result: SequenceResult | None = None,
        test_set_id: str | None = None,
        test_case_id: str | None = None,
        next_sequences: Sequence[str] = (),
    ) -> SequenceRunner:
        return SequenceRunner(
            sequence=self.registry.get(name),
            repository=self.repository,
            instance_id=instance_id,
            client=self.client,
            observer=self.observer,
            links=self.links,
            sequence_result=sequence_result,
            test_set_id=test_set_id,
            test_case_id=test_case_id,
            next_sequences=list(next_sequences),
        )
