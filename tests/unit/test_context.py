"""Tests for session context."""

import pytest

from conformance_harness.context import Context, ContextKeyError
from conformance_harness.models.definition import SequenceDefinition


def test_none_values_count_as_unset() -> None:
    """Treats keys holding None as absent."""
    context = Context({"url": "http://fhir.test", "token": None})

    assert "url" in context
    assert "token" not in context
    assert context.get("token", "fallback") == "fallback"
    assert context.missing(["token", "url", "code"]) == ["code", "token"]


def test_merge_and_to_dict() -> None:
    """Merges values and returns a copy of them."""
    context = Context({"url": "http://fhir.test"})
    context.merge({"code": "abc"})

    values = context.to_dict()
    values["code"] = "changed"

    assert context["code"] == "abc"
    assert context == Context({"url": "http://fhir.test", "code": "abc"})


class TestScopedContext:
    """Tests for the per-sequence context view."""

    sequence = SequenceDefinition(
        name="Launch",
        title="Launch",
        test_id_prefix="SLS",
        requires=frozenset({"url"}),
        defines=frozenset({"token"}),
    )

    def test_reads_required_and_defined_keys(self) -> None:
        """Allows reads of declared keys."""
        scoped = Context({"url": "http://fhir.test"}).scoped(self.sequence)

        assert scoped["url"] == "http://fhir.test"
        assert scoped.get("token") is None
        assert "token" not in scoped

    def test_writes_defined_keys_through(self) -> None:
        """Writes defined keys to the underlying context."""
        context = Context()
        context.scoped(self.sequence)["token"] = "secret"

        assert context["token"] == "secret"

    def test_rejects_undeclared_read(self) -> None:
        """Raises for keys the sequence did not declare."""
        scoped = Context({"patient": "p1"}).scoped(self.sequence)

        with pytest.raises(ContextKeyError, match="cannot read context key 'patient'"):
            scoped.get("patient")

    def test_rejects_write_to_required_key(self) -> None:
        """Allows writes only to defined keys."""
        scoped = Context().scoped(self.sequence)

        with pytest.raises(ContextKeyError, match="cannot write context key 'url'"):
            scoped["url"] = "http://other.test"
