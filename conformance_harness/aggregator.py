"""Roll test results up into sequence, group and instance statuses."""

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Literal, TypeAlias

from conformance_harness.context import Context
from conformance_harness.models.definition import TestGroup, TestSet
from conformance_harness.models.outcome import ResultStatus
from conformance_harness.models.result import ResultCounts, SequenceResult, TestResult
from conformance_harness.registry import Registry

GroupStatus: TypeAlias = Literal["pass", "fail", "error", "skip", "not_run"]


@dataclass(frozen=True, kw_only=True)
class GroupResult:
    """Status of one test group, computed from the latest result per test case."""

    group: TestGroup
    status: GroupStatus
    counts: Mapping[str, int]
    missing_variables: Sequence[str]


def sequence_status(test_results: Sequence[TestResult]) -> ResultStatus:
    """Derive a sequence status from its test results.

    Precedence, first match wins: any cancel, any error, the last result is
    waiting, any required failure, any required skip, otherwise pass.
    Optional failures and skips never change the status.
    """
    statuses = {result.status for result in test_results}
    if "cancel" in statuses:
        return "cancel"
    if "error" in statuses:
        return "error"
    if test_results and test_results[-1].status == "wait":
        return "wait"
    required = {result.status for result in test_results if result.required}
    if "fail" in required:
        return "fail"
    if "skip" in required:
        return "skip"
    return "pass"


def result_counts(test_results: Iterable[TestResult]) -> ResultCounts:
    required_passed = required_total = optional_passed = optional_total = 0
    error_count = todo_count = skip_count = 0

    for result in test_results:
        if result.required:
            required_total += 1
            required_passed += result.status == "pass"
        else:
            optional_total += 1
            optional_passed += result.status == "pass"
        error_count += result.status == "error"
        todo_count += result.status == "todo"
        skip_count += result.status == "skip"

    return ResultCounts(
        required_passed=required_passed,
        required_total=required_total,
        optional_passed=optional_passed,
        optional_total=optional_total,
        error_count=error_count,
        todo_count=todo_count,
        skip_count=skip_count,
    )


def update_result_counts(result: SequenceResult) -> SequenceResult:
    """Recompute counts and status of ``result`` in place."""
    result.counts = result_counts(result.test_results)
    result.status = sequence_status(result.test_results)
    return result


def latest_results(results: Iterable[SequenceResult]) -> dict[str, SequenceResult]:
    """Latest result per sequence name; later records win ties."""
    latest: dict[str, SequenceResult] = {}
    for result in results:
        current = latest.get(result.name)
        if current is None or current.created_at <= result.created_at:
            latest[result.name] = result
    return latest


def latest_results_by_case(
    results: Iterable[SequenceResult],
) -> dict[str, SequenceResult]:
    latest: dict[str, SequenceResult] = {}
    for result in results:
        if result.test_case_id is None:
            continue
        current = latest.get(result.test_case_id)
        if current is None or current.created_at <= result.created_at:
            latest[result.test_case_id] = result
    return latest


def group_status(counts: Mapping[str, int]) -> GroupStatus:
    if counts["cancel"] > 0 or counts["fail"] > 0:
        return "fail"
    if counts["error"] > 0:
        return "error"
    if counts["skip"] > 0:
        return "skip"
    if counts["total"] == 0 or counts["wait"] > 0:
        return "not_run"
    return "pass"


def group_results(
    test_set: TestSet,
    results: Iterable[SequenceResult],
    context: Context | None = None,
) -> list[GroupResult]:
    by_case = latest_results_by_case(results)
    context = context or Context()

    grouped: list[GroupResult] = []
    for group in test_set.groups:
        counts = {
            "pass": 0,
            "fail": 0,
            "error": 0,
            "skip": 0,
            "todo": 0,
            "wait": 0,
            "cancel": 0,
            "total": 0,
        }
        for test_case in group.test_cases:
            result = by_case.get(test_case.id)
            if result is None:
                continue
            counts[result.status] += 1
            counts["total"] += 1

        grouped.append(
            GroupResult(
                group=group,
                status=group_status(counts),
                counts=counts,
                missing_variables=context.missing(group.lock_variables),
            )
        )
    return grouped


def final_result(
    registry: Registry, results: Iterable[SequenceResult]
) -> Literal["pass", "fail"]:
    """Pass only when every required sequence's latest result passed."""
    latest = latest_results(results)
    for sequence in registry.sequences():
        if sequence.optional:
            continue
        result = latest.get(sequence.name)
        if result is None or result.status != "pass":
            return "fail"
    return "pass"
