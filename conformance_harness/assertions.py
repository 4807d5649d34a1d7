"""Per-test state handed to test bodies, and the assertion helpers they use.

Helpers end the body early by raising ``OutcomeSignal``; a body may also just
``return Skip(...)`` or another outcome directly.
"""

import json
from collections.abc import Collection, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, NoReturn

from yarl import URL

from conformance_harness.callback_keys import CallbackLinks
from conformance_harness.context import ScopedContext
from conformance_harness.http import LoggedClient, Reply
from conformance_harness.models.definition import SequenceDefinition, TestDefinition
from conformance_harness.models.outcome import (
    Fail,
    OutcomeSignal,
    Redirect,
    Skip,
    Todo,
    Wait,
)
from conformance_harness.validation.profile import Profile
from conformance_harness.validation.validator import StructureValidator


@dataclass(kw_only=True)
class TestRun:
    """Everything a test body may touch while it runs."""

    __test__ = False

    test: TestDefinition
    sequence: SequenceDefinition
    context: ScopedContext
    instance_id: str
    result_id: str
    client: LoggedClient | None = None
    links: CallbackLinks | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def http(self) -> LoggedClient:
        if self.client is None:
            raise RuntimeError(f"Test {self.test.id} needs an HTTP client")
        return self.client

    @contextmanager
    def warning(self) -> Iterator[None]:
        """Downgrade a failed assertion inside the block to a warning.

        Example:
            with run.warning():
                assert_(reply.content_type.startswith("application/fhir+json"))

        """
        try:
            yield
        except OutcomeSignal as signal:
            if not isinstance(signal.outcome, Fail):
                raise
            self.warnings.append(signal.outcome.message)

    def callback_key(self) -> str:
        """Key that routes an inbound callback back to this sequence result."""
        if self.links is None:
            raise RuntimeError("Callback links are not configured")
        return self.links.keys.sign(self.instance_id, self.result_id)

    def callback_url(self, endpoint: str) -> str:
        if self.links is None:
            raise RuntimeError("Callback links are not configured")
        return self.links.url_for(self.callback_key(), endpoint)


def fail(message: str, details: Any = None) -> NoReturn:
    raise OutcomeSignal(Fail(message, details))


def assert_(
    condition: object,
    message: str = "assertion failed, no message",
    details: Any = None,
) -> None:
    if not condition:
        fail(message, details)


def assert_equal(expected: Any, actual: Any, message: str = "") -> None:
    if expected != actual:
        detail = f"Expected {expected!r}, got {actual!r}"
        fail(f"{message}: {detail}" if message else detail)


def assert_response_status(
    reply: Reply, statuses: int | Collection[int], message: str = ""
) -> None:
    allowed = [statuses] if isinstance(statuses, int) else sorted(statuses)
    if reply.status not in allowed:
        expected = ", ".join(map(str, allowed))
        detail = f"Bad response code: expected {expected}, but found {reply.status}"
        fail(f"{message}: {detail}" if message else detail)


def assert_response_ok(reply: Reply, message: str = "") -> None:
    assert_response_status(reply, [200, 201], message)


def assert_response_content_type(reply: Reply, content_type: str) -> None:
    actual = reply.content_type.split(";")[0].strip()
    if actual != content_type:
        fail(f"Expected content-type {content_type} but found {actual or 'none'}")


def assert_valid_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        fail("Invalid JSON")


def assert_json_object(reply: Reply) -> Mapping[str, Any]:
    document = assert_valid_json(reply.body)
    assert_(isinstance(document, Mapping), "Response body is not a JSON object")
    return document


def assert_valid_http_uri(uri: str | None, message: str | None = None) -> None:
    valid = False
    if uri:
        parsed = URL(uri)
        valid = parsed.scheme in ("http", "https") and bool(parsed.host)
    assert_(valid, message or f"\"{uri}\" is not a valid URI")


def assert_conforms(
    run: TestRun,
    document: Mapping[str, Any] | str,
    profile: Profile,
    validator: StructureValidator,
) -> None:
    """Fail unless ``document`` conforms to ``profile``; keep warnings on the run."""
    finding = validator.validate(document, profile)
    run.warnings.extend(finding.warnings)
    if finding.errors:
        fail(
            f"{profile.type} did not conform to profile {profile.url}: "
            + "; ".join(finding.errors),
            details={"errors": finding.errors, "warnings": finding.warnings},
        )


def skip(message: str, details: Any = None) -> NoReturn:
    raise OutcomeSignal(Skip(message, details))


def skip_if(condition: object, message: str, details: Any = None) -> None:
    if condition:
        skip(message, details)


def skip_unless(condition: object, message: str, details: Any = None) -> None:
    if not condition:
        skip(message, details)


def todo(message: str = "") -> NoReturn:
    raise OutcomeSignal(Todo(message))


def wait_at_endpoint(endpoint: str) -> NoReturn:
    raise OutcomeSignal(Wait(endpoint))


def redirect(url: str, endpoint: str) -> NoReturn:
    raise OutcomeSignal(Redirect(url, endpoint))
