"""Execution of one sequence: start, resume after a callback, cancel."""

import inspect
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from conformance_harness.aggregator import update_result_counts
from conformance_harness.assertions import TestRun
from conformance_harness.callback_keys import CallbackLinks
from conformance_harness.context import Context
from conformance_harness.http import LoggedClient
from conformance_harness.models.definition import SequenceDefinition, TestDefinition
from conformance_harness.models.outcome import (
    OUTCOME_TYPES,
    Error,
    Fail,
    Outcome,
    OutcomeSignal,
    Pass,
    Redirect,
    Skip,
    Todo,
    Wait,
)
from conformance_harness.models.result import (
    RequestResponse,
    SequenceResult,
    TestResult,
    utcnow,
)
from conformance_harness.progress import ProgressEvent, ProgressObserver
from conformance_harness.repository.base import Repository

log = logging.getLogger(__name__)

CANCEL_MESSAGE = "Test cancelled by user."
VERSION_SKIP_MESSAGE = "This test does not run with this FHIR version"


class NoPendingWaitError(Exception):
    """Raised when resuming a sequence result that is not waiting."""


@dataclass(kw_only=True)
class SequenceRunner:
    """Runs the tests of one sequence against one ``SequenceResult``.

    Test bodies never crash the runner: anything they raise is recorded as an
    error result. After every test the result and context are written to the
    repository, so a suspended or interrupted run can be picked up later by a
    runner built around the loaded ``SequenceResult``.
    """

    sequence: SequenceDefinition
    repository: Repository
    instance_id: str
    client: LoggedClient | None = None
    observer: ProgressObserver | None = None
    links: CallbackLinks | None = None
    sequence_result: SequenceResult | None = None
    test_set_id: str | None = None
    test_case_id: str | None = None
    next_sequences: Sequence[str] = field(default_factory=list)

    async def start(self, context: Context) -> SequenceResult:
        """Run every test not yet recorded, stopping early on Wait or Redirect."""
        result = self._ensure_result(context)
        async with self.repository.lock(result.id):
            result = await self._reload(result)
            if result.state == "waiting":
                log.info("Sequence result %s is waiting; use resume", result.id)
                return result
            return await self._run_remaining(result, context)

    async def resume(
        self,
        context: Context,
        callback_data: dict[str, str],
        *,
        inbound: RequestResponse | None = None,
        fail_message: str | None = None,
    ) -> SequenceResult:
        """Record the callback on the waiting test, then continue the sequence.

        The waiting test is corrected to pass, or to fail with
        ``fail_message``; earlier tests are never executed again.

        Raises:
            NoPendingWaitError: If the sequence result is not waiting

        """
        result = self.sequence_result
        if result is None:
            raise NoPendingWaitError(f"Sequence {self.sequence.name} has not started")

        async with self.repository.lock(result.id):
            result = await self._reload(result)
            last = result.last_result
            if result.wait_at is None or last is None or last.status != "wait":
                raise NoPendingWaitError(
                    f"Sequence result {result.id} is not waiting for a callback"
                )

            log.info(
                "Resuming %s at test %s after callback to %s",
                self.sequence.name,
                last.id,
                result.wait_at,
            )
            correction: dict[str, object] = {"status": "pass", "message": None}
            if fail_message is not None:
                correction = {"status": "fail", "message": fail_message}
            if inbound is not None:
                correction["request_responses"] = [*last.request_responses, inbound]
            result.test_results[-1] = last.model_copy(update=correction)
            result.wait_at = None
            result.redirect_to = None

            stored_context = await self.repository.load_context(self.instance_id)
            context.merge(stored_context.to_dict())
            context.merge(callback_data)
            return await self._run_remaining(result, context)

    async def cancel(self, reason: str = CANCEL_MESSAGE) -> SequenceResult:
        """Mark the sequence cancelled; a no-op once it is terminal."""
        result = self._ensure_result(None)

        async with self.repository.lock(result.id):
            result = await self._reload(result)
            if result.state == "terminal":
                log.info("Sequence result %s is already terminal", result.id)
                return result

            last = result.last_result
            if last is not None:
                result.test_results[-1] = last.model_copy(
                    update={"status": "cancel", "message": reason}
                )
            for index, test in enumerate(
                self.sequence.tests[result.result_count :], start=result.result_count
            ):
                result.test_results.append(
                    TestResult(
                        id=test.id,
                        name=test.name,
                        index=index,
                        status="cancel",
                        message=reason,
                        required=test.required,
                    )
                )

            result.wait_at = None
            result.redirect_to = None
            result.running = False
            update_result_counts(result)
            result.status = "cancel"
            result.completed_at = result.updated_at = utcnow()
            await self.repository.save(result)
            log.info("Cancelled %s (%s)", self.sequence.name, result.id)
            return result

    async def _run_remaining(
        self, result: SequenceResult, context: Context
    ) -> SequenceResult:
        start_at = result.result_count
        remaining = self.sequence.tests[start_at:]
        log.info(
            "Starting sequence %s at test %d of %d",
            self.sequence.name,
            start_at + 1,
            self.sequence.test_count,
        )

        self._record_outputs(result, context, "original")
        result.running = True
        await self._persist(result, context)

        for test in remaining:
            test_result = await self._execute(test, result, context)
            result.test_results.append(test_result)
            if test_result.status == "wait":
                result.wait_at = test_result.wait_at
                result.redirect_to = test_result.redirect_to
            update_result_counts(result)
            result.updated_at = utcnow()
            await self._persist(result, context)
            await self._notify(result, test_result)
            if result.wait_at is not None:
                break

        result.running = False
        if result.wait_at is None:
            result.completed_at = utcnow()
        self._record_outputs(result, context, "updated")
        update_result_counts(result)
        result.updated_at = utcnow()
        await self._persist(result, context)

        log.info(
            "Sequence %s finished with status %s (%d/%d tests recorded)",
            self.sequence.name,
            result.status,
            result.result_count,
            self.sequence.test_count,
        )
        return result

    async def _execute(
        self, test: TestDefinition, result: SequenceResult, context: Context
    ) -> TestResult:
        client = self.client.fork() if self.client is not None else None
        run = TestRun(
            test=test,
            sequence=self.sequence,
            context=context.scoped(self.sequence),
            instance_id=self.instance_id,
            result_id=result.id,
            client=client,
            links=self.links,
        )

        log.info("Starting test %s [%s]", test.id, test.name)
        outcome: Outcome
        try:
            if self._applies(test, context):
                outcome = await _invoke(test, run)
            else:
                outcome = Skip(VERSION_SKIP_MESSAGE)
        except OutcomeSignal as signal:
            outcome = signal.outcome
        except Exception as e:
            log.error("Fatal error in test %s: %s", test.id, e, exc_info=e)
            outcome = Error.from_exception(e)

        test_result = _to_test_result(
            outcome,
            test,
            index=result.result_count,
            warnings=run.warnings,
            requests=client.requests if client is not None else [],
        )
        log.info("Finished test %s: %s", test.id, test_result.status)
        return test_result

    def _applies(self, test: TestDefinition, context: Context) -> bool:
        versions = test.versions or self.sequence.versions
        fhir_version = context.get("fhir_version")
        return not versions or fhir_version is None or fhir_version in versions

    def _ensure_result(self, context: Context | None) -> SequenceResult:
        if self.sequence_result is None:
            params = {}
            if context is not None:
                params = {
                    key: context.get(key, "none")
                    for key in sorted(self.sequence.requires)
                }
            self.sequence_result = SequenceResult(
                instance_id=self.instance_id,
                name=self.sequence.name,
                required=not self.sequence.optional,
                test_set_id=self.test_set_id,
                test_case_id=self.test_case_id,
                next_sequences=list(self.next_sequences),
                input_params=params,
            )
        return self.sequence_result

    async def _reload(self, result: SequenceResult) -> SequenceResult:
        """Swap ``result`` for its stored copy; call while holding its lock."""
        stored = await self.repository.load(result.id)
        if stored is not None:
            self.sequence_result = result = stored
        return result

    def _record_outputs(
        self, result: SequenceResult, context: Context, phase: str
    ) -> None:
        for key in sorted(self.sequence.defines):
            entry = result.output_results.setdefault(key, {})
            if phase == "original" and "original" in entry:
                continue
            entry[phase] = context.get(key, "none")

    async def _persist(self, result: SequenceResult, context: Context) -> None:
        await self.repository.save(result)
        await self.repository.save_context(self.instance_id, context)

    async def _notify(self, result: SequenceResult, test_result: TestResult) -> None:
        if self.observer is None:
            return
        event = ProgressEvent(
            instance_id=self.instance_id,
            sequence_name=self.sequence.name,
            completed_count=result.result_count,
            total_count=self.sequence.test_count,
            last_outcome=test_result.status,
            result=test_result,
        )
        try:
            delivered = self.observer(event)
            if inspect.isawaitable(delivered):
                await delivered
        except Exception as e:
            log.warning("Progress observer failed: %s", e, exc_info=e)


async def _invoke(test: TestDefinition, run: TestRun) -> Outcome:
    returned = test.body(run)
    if inspect.isawaitable(returned):
        returned = await returned
    if returned is None:
        return Pass()
    if not isinstance(returned, OUTCOME_TYPES):
        raise TypeError(
            f"Test body returned {type(returned).__name__}, expected an outcome"
        )
    return returned


def _to_test_result(
    outcome: Outcome,
    test: TestDefinition,
    *,
    index: int,
    warnings: list[str],
    requests: list[RequestResponse],
) -> TestResult:
    message: str | None = None
    details: object = None
    wait_at: str | None = None
    redirect_to: str | None = None

    match outcome:
        case Pass(message=message):
            pass
        case Fail(message=message, details=details):
            pass
        case Error(message=error_message):
            message = f"Fatal Error: {error_message}"
        case Skip(message=message, details=details):
            pass
        case Todo(message=message):
            pass
        case Wait(endpoint=wait_at):
            pass
        case Redirect(url=redirect_to, endpoint=wait_at):
            pass

    return TestResult(
        id=test.id,
        name=test.name,
        index=index,
        status=outcome.status,
        message=message,
        details=details,
        required=test.required,
        warnings=warnings,
        wait_at=wait_at,
        redirect_to=redirect_to,
        request_responses=requests,
    )
