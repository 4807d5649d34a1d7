"""Tests for the sequence runner."""

from collections.abc import Callable

import pytest

from conformance_harness.assertions import (
    TestRun,
    assert_,
    fail,
    skip_unless,
    todo,
    wait_at_endpoint,
)
from conformance_harness.context import Context
from conformance_harness.models.definition import SequenceDefinition
from conformance_harness.models.outcome import Redirect, Skip, Wait
from conformance_harness.models.result import RequestResponse
from conformance_harness.progress import ProgressEvent
from conformance_harness.registry import Registry
from conformance_harness.repository.memory import MemoryRepository
from conformance_harness.runner import (
    CANCEL_MESSAGE,
    VERSION_SKIP_MESSAGE,
    NoPendingWaitError,
    SequenceRunner,
)

INSTANCE_ID = "instance-1"


def build_sequence(*bodies: Callable[[TestRun], object]) -> SequenceDefinition:
    """Register one test per body on a fresh sequence."""
    registry = Registry()
    builder = registry.sequence(
        "Demo", test_id_prefix="DM", requires=["url"], defines=["seen"]
    )
    for number, body in enumerate(bodies, start=1):
        builder.test(f"Test {number}")(body)
    return builder.definition


def passing(run: TestRun) -> None:
    return None


@pytest.fixture
def context() -> Context:
    """Create a context holding the server URL."""
    return Context({"url": "http://fhir.test", "fhir_version": "r4"})


def runner_for(
    sequence: SequenceDefinition, repository: MemoryRepository, **kwargs: object
) -> SequenceRunner:
    return SequenceRunner(
        sequence=sequence, repository=repository, instance_id=INSTANCE_ID, **kwargs
    )


class TestStart:
    """Tests for running a sequence from the beginning."""

    async def test_records_one_result_per_test_in_order(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Produces one result per test with indices in registration order."""
        sequence = build_sequence(passing, passing, passing)

        result = await runner_for(sequence, repository).start(context)

        assert [r.index for r in result.test_results] == [0, 1, 2]
        assert [r.id for r in result.test_results] == ["DM-01", "DM-02", "DM-03"]
        assert result.status == "pass"
        assert result.state == "terminal"
        assert result.completed_at is not None

    async def test_unclassified_exception_becomes_error(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Records an error with a Fatal Error message and keeps running."""

        def broken(run: TestRun) -> None:
            raise RuntimeError("boom")

        sequence = build_sequence(broken, passing)

        result = await runner_for(sequence, repository).start(context)

        assert result.test_results[0].status == "error"
        assert result.test_results[0].message == "Fatal Error: boom"
        assert result.test_results[1].status == "pass"
        assert result.status == "error"

    async def test_helper_signals_become_outcomes(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Maps fail, skip and todo helpers to their statuses."""

        def failing(run: TestRun) -> None:
            fail("nope", details={"expected": 1})

        def skipping(run: TestRun) -> None:
            skip_unless(run.context.get("seen"), "nothing seen")

        def pending(run: TestRun) -> None:
            todo("later")

        sequence = build_sequence(failing, skipping, pending)

        result = await runner_for(sequence, repository).start(context)

        statuses = [(r.status, r.message) for r in result.test_results]
        assert statuses == [
            ("fail", "nope"),
            ("skip", "nothing seen"),
            ("todo", "later"),
        ]
        assert result.test_results[0].details == {"expected": 1}
        assert result.status == "fail"

    async def test_returned_outcome_is_recorded(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Accepts an outcome returned instead of raised."""

        async def returns_skip(run: TestRun) -> Skip:
            return Skip("not applicable")

        sequence = build_sequence(returns_skip)

        result = await runner_for(sequence, repository).start(context)

        assert result.test_results[0].status == "skip"
        assert result.test_results[0].message == "not applicable"

    async def test_non_outcome_return_value_is_an_error(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Treats a return value that is not an outcome as a defect."""

        def returns_string(run: TestRun) -> str:
            return "done"

        sequence = build_sequence(returns_string)

        result = await runner_for(sequence, repository).start(context)

        assert result.test_results[0].status == "error"
        assert result.test_results[0].message is not None
        assert result.test_results[0].message.startswith("Fatal Error:")

    async def test_skips_tests_for_other_fhir_versions(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Skips a test whose versions exclude the session's FHIR version."""
        registry = Registry()
        builder = registry.sequence("Demo", test_id_prefix="DM")
        builder.test("Only STU3", versions=["stu3"])(passing)
        builder.test("Any version")(passing)

        result = await runner_for(builder.definition, repository).start(context)

        assert result.test_results[0].status == "skip"
        assert result.test_results[0].message == VERSION_SKIP_MESSAGE
        assert result.test_results[1].status == "pass"

    async def test_undeclared_context_write_is_an_error(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Rejects writes to context keys the sequence did not define."""

        def writes_undeclared(run: TestRun) -> None:
            run.context["token"] = "secret"

        sequence = build_sequence(writes_undeclared)

        result = await runner_for(sequence, repository).start(context)

        assert result.test_results[0].status == "error"
        assert "cannot write context key 'token'" in (
            result.test_results[0].message or ""
        )
        assert "token" not in context

    async def test_failed_assertion_inside_warning_block_passes(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Downgrades a failed assertion to a warning on the result."""

        def warns(run: TestRun) -> None:
            with run.warning():
                assert_(False, "minor problem")

        sequence = build_sequence(warns)

        result = await runner_for(sequence, repository).start(context)

        assert result.test_results[0].status == "pass"
        assert list(result.test_results[0].warnings) == ["minor problem"]

    async def test_records_inputs_and_outputs(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Stores required inputs and the before and after of defined keys."""

        def defines_seen(run: TestRun) -> None:
            run.context["seen"] = "yes"

        sequence = build_sequence(defines_seen)

        result = await runner_for(sequence, repository).start(context)

        assert result.input_params == {"url": "http://fhir.test"}
        assert result.output_results == {
            "seen": {"original": "none", "updated": "yes"}
        }
        assert (await repository.load_context(INSTANCE_ID))["seen"] == "yes"

    async def test_persists_after_every_test(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Saves the result before progress is reported for each test."""
        persisted_counts: list[int] = []

        async def observer(event: ProgressEvent) -> None:
            saved = await repository.results_for_instance(INSTANCE_ID)
            persisted_counts.append(saved[0].result_count)
            assert saved[0].result_count == event.completed_count

        sequence = build_sequence(passing, passing)

        await runner_for(sequence, repository, observer=observer).start(context)

        assert persisted_counts == [1, 2]

    async def test_failing_observer_does_not_stop_the_run(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Logs observer errors and continues."""

        def observer(event: ProgressEvent) -> None:
            raise RuntimeError("observer down")

        sequence = build_sequence(passing, passing)

        result = await runner_for(sequence, repository, observer=observer).start(
            context
        )

        assert result.result_count == 2


class TestSuspendAndResume:
    """Tests for Wait and Redirect handling."""

    async def test_wait_suspends_then_resume_completes(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Stops at Wait and corrects the waiting test to pass on resume."""
        calls: list[str] = []

        def first(run: TestRun) -> None:
            calls.append("first")

        def waits(run: TestRun) -> Wait:
            calls.append("waits")
            return Wait("launch")

        def third(run: TestRun) -> None:
            calls.append("third")

        sequence = build_sequence(first, waits, third)

        suspended = await runner_for(sequence, repository).start(context)

        assert suspended.result_count == 2
        assert suspended.wait_at == "launch"
        assert suspended.status == "wait"
        assert suspended.state == "waiting"

        loaded = await repository.get(suspended.id)
        stored_context = await repository.load_context(INSTANCE_ID)
        resumed = await runner_for(
            sequence, repository, sequence_result=loaded
        ).resume(stored_context, {"launch": "xyz"})

        assert resumed.result_count == 3
        assert resumed.test_results[1].status == "pass"
        assert resumed.status == "pass"
        assert resumed.wait_at is None
        assert calls == ["first", "waits", "third"]

    async def test_redirect_records_url(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Stores the redirect URL on the result and the test."""

        def redirects(run: TestRun) -> Redirect:
            return Redirect("http://auth.test/authorize", "redirect")

        sequence = build_sequence(redirects, passing)

        result = await runner_for(sequence, repository).start(context)

        assert result.redirect_to == "http://auth.test/authorize"
        assert result.wait_at == "redirect"
        assert result.test_results[0].redirect_to == "http://auth.test/authorize"

    async def test_resume_with_fail_message(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Corrects the waiting test to fail when a failure message is given."""
        sequence = build_sequence(lambda run: wait_at_endpoint("launch"), passing)
        runner = runner_for(sequence, repository)
        await runner.start(context)

        resumed = await runner.resume(context, {}, fail_message="Launch timed out")

        assert resumed.test_results[0].status == "fail"
        assert resumed.test_results[0].message == "Launch timed out"
        assert resumed.status == "fail"

    async def test_resume_appends_inbound_exchange(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Attaches the callback request to the corrected test."""
        sequence = build_sequence(lambda run: Wait("launch"))
        runner = runner_for(sequence, repository)
        await runner.start(context)
        inbound = RequestResponse(
            direction="inbound", method="GET", url="http://harness.test/launch"
        )

        resumed = await runner.resume(context, {}, inbound=inbound)

        assert list(resumed.test_results[0].request_responses) == [inbound]

    async def test_resume_without_wait_raises(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Refuses to resume a result that is not waiting."""
        runner = runner_for(build_sequence(passing), repository)
        await runner.start(context)

        with pytest.raises(NoPendingWaitError):
            await runner.resume(context, {})

    async def test_start_on_waiting_result_does_nothing(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Leaves a waiting result untouched when started again."""
        runner = runner_for(build_sequence(lambda run: Wait("launch")), repository)
        first = await runner.start(context)

        second = await runner.start(context)

        assert second.result_count == first.result_count == 1
        assert second.wait_at == "launch"


class TestCancel:
    """Tests for cancelling a sequence result."""

    async def test_cancel_marks_last_and_remaining_tests(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Marks the waiting test and every unexecuted test as cancelled."""
        sequence = build_sequence(passing, lambda run: Wait("launch"), passing)
        runner = runner_for(sequence, repository)
        await runner.start(context)

        result = await runner.cancel()

        assert [r.status for r in result.test_results] == ["pass", "cancel", "cancel"]
        assert result.test_results[2].message == CANCEL_MESSAGE
        assert result.status == "cancel"
        assert result.state == "terminal"
        stored = await repository.get(result.id)
        assert stored.status == "cancel"

    async def test_cancel_is_idempotent(
        self, repository: MemoryRepository, context: Context
    ) -> None:
        """Leaves an already cancelled result unchanged."""
        sequence = build_sequence(lambda run: Wait("launch"), passing)
        runner = runner_for(sequence, repository)
        await runner.start(context)
        first = await runner.cancel("stop")
        snapshot = first.model_dump()

        second = await runner.cancel("again")

        assert second.model_dump() == snapshot
        assert second.test_results[0].message == "stop"
