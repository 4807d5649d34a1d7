"""Suite manifest definition for the plugin system."""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from functools import cached_property

from conformance_harness.models.definition import TestSet
from conformance_harness.registry import Registry


@dataclass(frozen=True, kw_only=True)
class SuiteManifest:
    """Manifest describing a suite plugin.

    The registry is built lazily on first access and frozen, so loading a
    manifest to list suites does not register any tests.
    """

    key: str
    title: str
    registry_factory: Callable[[], Registry]
    test_sets: Sequence[TestSet] = field(default_factory=list)

    @cached_property
    def registry(self) -> Registry:
        registry = self.registry_factory()
        registry.freeze()
        return registry

    def test_set(self, test_set_id: str) -> TestSet | None:
        for test_set in self.test_sets:
            if test_set.id == test_set_id:
                return test_set
        return None
