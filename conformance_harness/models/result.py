"""Models for test and sequence results."""

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any, Literal, TypeAlias
from uuid import uuid4

from pydantic import Field

from conformance_harness.models.base import Model, MutableModel
from conformance_harness.models.outcome import ResultStatus


def utcnow() -> datetime:
    return datetime.now(UTC)


class RequestResponse(Model):
    """One HTTP exchange, outbound to the server under test or inbound from it."""

    direction: Literal["outbound", "inbound"] = Field(
        default="outbound", description="Who initiated the exchange"
    )
    method: str = Field(..., description="HTTP method")
    url: str = Field(..., description="Full request URL including query string")
    request_headers: Mapping[str, str] = Field(default_factory=dict)
    request_body: str | None = None
    status: int | None = Field(
        default=None, description="Response status (None for inbound callbacks)"
    )
    response_headers: Mapping[str, str] = Field(default_factory=dict)
    response_body: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class TestResult(Model):
    """Recorded outcome of a single test.

    Immutable once recorded; the only correction is the one made when a
    suspended sequence resumes, which replaces the last result with a copy.
    """

    __test__ = False

    id: str = Field(..., description="Test identifier, e.g. 'SLS-01'")
    name: str = Field(..., description="Test title")
    index: int = Field(..., description="Position of the test within its sequence")
    status: ResultStatus
    message: str | None = None
    details: Any = None
    required: bool = True
    warnings: Sequence[str] = Field(default_factory=list)
    wait_at: str | None = Field(
        default=None, description="Endpoint the test is waiting on"
    )
    redirect_to: str | None = Field(
        default=None, description="URL the user must visit before the callback"
    )
    request_responses: Sequence[RequestResponse] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class ResultCounts(Model):
    """Per-status tallies over the test results of one sequence."""

    required_passed: int = 0
    required_total: int = 0
    optional_passed: int = 0
    optional_total: int = 0
    error_count: int = 0
    todo_count: int = 0
    skip_count: int = 0


SequenceState: TypeAlias = Literal["not_started", "running", "waiting", "terminal"]


class SequenceResult(MutableModel):
    """Durable record of one execution of a sequence.

    Updated in place by the runner and persisted after every test.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    instance_id: str = Field(..., description="Testing session this result belongs to")
    name: str = Field(..., description="Sequence name")
    status: ResultStatus = "pass"
    required: bool = True
    test_results: list[TestResult] = Field(default_factory=list)
    wait_at: str | None = None
    redirect_to: str | None = None
    next_sequences: list[str] = Field(
        default_factory=list,
        description="Sequences queued to run once this one completes",
    )
    test_set_id: str | None = None
    test_case_id: str | None = None
    input_params: dict[str, Any] = Field(default_factory=dict)
    output_results: dict[str, dict[str, Any]] = Field(default_factory=dict)
    counts: ResultCounts = Field(default_factory=ResultCounts)
    running: bool = False
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def result_count(self) -> int:
        return len(self.test_results)

    @property
    def last_result(self) -> TestResult | None:
        return self.test_results[-1] if self.test_results else None

    @property
    def state(self) -> SequenceState:
        if self.running:
            return "running"
        if self.wait_at is not None:
            return "waiting"
        if self.completed_at is not None:
            return "terminal"
        return "not_started"

    def summary(self) -> dict[str, Any]:
        """Condensed, JSON-ready view used by the CLI and the callback server."""
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "sequence": self.name,
            "status": self.status,
            "state": self.state,
            "wait_at": self.wait_at,
            "redirect_to": self.redirect_to,
            "counts": self.counts.model_dump(),
            "tests": [
                {
                    "id": result.id,
                    "name": result.name,
                    "status": result.status,
                    "message": result.message,
                    "warnings": list(result.warnings),
                }
                for result in self.test_results
            ],
        }
