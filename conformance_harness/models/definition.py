"""Models for registered sequences, tests and the test sets grouping them."""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeAlias

from pydantic import Field

from conformance_harness.models.base import Model
from conformance_harness.models.outcome import Outcome

if TYPE_CHECKING:
    from conformance_harness.assertions import TestRun

TestBody: TypeAlias = Callable[["TestRun"], Outcome | None | Awaitable[Outcome | None]]


@dataclass(frozen=True, kw_only=True)
class TestDefinition:
    """A single registered test."""

    __test__ = False

    id: str
    name: str
    index: int
    body: TestBody
    link: str = ""
    description: str = ""
    required: bool = True
    versions: frozenset[str] = frozenset()


@dataclass(frozen=True, kw_only=True)
class SequenceDefinition:
    """An ordered list of tests sharing a context and an identifier prefix."""

    name: str
    title: str
    test_id_prefix: str
    description: str = ""
    tests: tuple[TestDefinition, ...] = ()
    requires: frozenset[str] = frozenset()
    defines: frozenset[str] = frozenset()
    optional: bool = False
    versions: frozenset[str] = frozenset()

    @property
    def test_count(self) -> int:
        return len(self.tests)


class TestCase(Model):
    """One sequence scheduled inside a test group."""

    __test__ = False

    id: str = Field(..., description="Unique test case identifier")
    sequence: str = Field(..., description="Name of the sequence to run")


class TestGroup(Model):
    """Test cases reported together, e.g. one row of a conformance report."""

    __test__ = False

    id: str = Field(..., description="Group identifier")
    name: str = Field(..., description="Human-readable group name")
    test_cases: Sequence[TestCase] = Field(default_factory=list)
    lock_variables: Sequence[str] = Field(
        default_factory=list,
        description="Context keys that must be set before the group can run",
    )


class TestSet(Model):
    """Named collection of test groups offered by a suite."""

    __test__ = False

    id: str = Field(..., description="Test set identifier")
    groups: Sequence[TestGroup] = Field(default_factory=list)

    def test_case(self, test_case_id: str) -> TestCase | None:
        for group in self.groups:
            for test_case in group.test_cases:
                if test_case.id == test_case_id:
                    return test_case
        return None
