"""Outcomes a test body reports to the sequence runner.

A body returns one of these (``None`` counts as ``Pass``). Helpers that need to
end the body early from a nested call raise ``OutcomeSignal`` carrying the
outcome; the runner catches it once, at the boundary around the body.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal, TypeAlias

ResultStatus: TypeAlias = Literal["pass", "fail", "error", "skip", "todo", "wait", "cancel"]


@dataclass(frozen=True)
class Pass:
    """The body completed without signaling anything else."""

    status: ClassVar[ResultStatus] = "pass"

    message: str | None = None


@dataclass(frozen=True)
class Fail:
    """An assertion did not hold."""

    status: ClassVar[ResultStatus] = "fail"

    message: str
    details: Any = None


@dataclass(frozen=True)
class Error:
    """Something unexpected happened, including defects in the body itself."""

    status: ClassVar[ResultStatus] = "error"

    message: str
    cause: BaseException | None = field(default=None, compare=False)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "Error":
        """Wrap an unclassified exception raised by a test body."""
        return cls(str(exc) or type(exc).__name__, exc)


@dataclass(frozen=True)
class Skip:
    """The test does not apply given the current session state."""

    status: ClassVar[ResultStatus] = "skip"

    message: str
    details: Any = None


@dataclass(frozen=True)
class Todo:
    """Acknowledged but intentionally unimplemented."""

    status: ClassVar[ResultStatus] = "todo"

    message: str = ""


@dataclass(frozen=True)
class Wait:
    """Suspend until an external callback arrives at ``endpoint``."""

    status: ClassVar[ResultStatus] = "wait"

    endpoint: str


@dataclass(frozen=True)
class Redirect:
    """Send the user to ``url``, then suspend until the callback at ``endpoint``."""

    status: ClassVar[ResultStatus] = "wait"

    url: str
    endpoint: str


Outcome: TypeAlias = Pass | Fail | Error | Skip | Todo | Wait | Redirect

OUTCOME_TYPES = (Pass, Fail, Error, Skip, Todo, Wait, Redirect)


class OutcomeSignal(Exception):
    """Carries an outcome from nested helper calls up to the runner."""

    def __init__(self, outcome: Outcome) -> None:
        super().__init__(getattr(outcome, "message", None) or outcome.status)
        self.outcome = outcome
