"""Registry of sequences and the tests they contain.

Suites register their sequences at startup through builders returned by
``Registry.sequence``; once frozen the registry is read-only.

Example:
    registry = Registry()
    capability = registry.sequence("CapabilityStatement", test_id_prefix="CS")

    @capability.test("Server returns a CapabilityStatement")
    async def returns_capability_statement(run: TestRun) -> Outcome | None:
        ...

"""

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace

from conformance_harness.context import Context
from conformance_harness.models.definition import (
    SequenceDefinition,
    TestBody,
    TestDefinition,
)

log = logging.getLogger(__name__)


class RegistryError(Exception):
    """Raised when a sequence or test cannot be registered or looked up."""


@dataclass(frozen=True, kw_only=True)
class SequenceBuilder:
    """Registers tests on one sequence of a registry."""

    registry: "Registry"
    name: str

    def test(
        self,
        title: str,
        *,
        key: str | None = None,
        link: str = "",
        description: str = "",
        required: bool = True,
        versions: Iterable[str] = (),
    ) -> Callable[[TestBody], TestBody]:
        """Register the decorated function as the next test of the sequence.

        Args:
            title: Human-readable test name
            key: Explicit identifier suffix; defaults to the registration index
            link: Reference to the requirement being tested
            description: Longer explanation shown in reports
            required: Whether the test counts towards the sequence status
            versions: FHIR versions the test applies to (empty means all)

        """

        def decorator(body: TestBody) -> TestBody:
            self.registry.add_test(
                self.name,
                body,
                title=title,
                key=key,
                link=link,
                description=description,
                required=required,
                versions=frozenset(versions),
            )
            return body

        return decorator

    def extends(self, other: SequenceDefinition | str) -> None:
        """Append the tests of another sequence, re-keyed under this prefix."""
        self.registry.extend_sequence(self.name, other)

    @property
    def definition(self) -> SequenceDefinition:
        return self.registry.get(self.name)


class Registry:
    """Ordered collection of sequence definitions."""

    def __init__(self, context_keys: Iterable[str] | None = None) -> None:
        self._context_keys = frozenset(context_keys) if context_keys else None
        self._sequences: dict[str, SequenceDefinition] = {}
        self._test_ids: set[str] = set()
        self._index = 0
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def sequence(
        self,
        name: str,
        *,
        test_id_prefix: str,
        title: str | None = None,
        description: str = "",
        requires: Iterable[str] = (),
        defines: Iterable[str] = (),
        optional: bool = False,
        versions: Iterable[str] = (),
    ) -> SequenceBuilder:
        """Register a new, empty sequence and return a builder for its tests."""
        self._ensure_writable()
        if name in self._sequences:
            raise RegistryError(f"Sequence '{name}' is already registered")

        requires = frozenset(requires)
        defines = frozenset(defines)
        self._check_context_keys(name, requires | defines)

        self._sequences[name] = SequenceDefinition(
            name=name,
            title=title or name,
            description=description,
            test_id_prefix=test_id_prefix,
            requires=requires,
            defines=defines,
            optional=optional,
            versions=frozenset(versions),
        )
        log.debug("Registered sequence %s (prefix %s)", name, test_id_prefix)
        return SequenceBuilder(registry=self, name=name)

    def add_test(
        self,
        sequence_name: str,
        body: TestBody,
        *,
        title: str,
        key: str | None = None,
        link: str = "",
        description: str = "",
        required: bool = True,
        versions: frozenset[str] = frozenset(),
    ) -> TestDefinition:
        self._ensure_writable()
        sequence = self.get(sequence_name)

        self._index += 1
        test_id = f"{sequence.test_id_prefix}-{key or f'{self._index:02d}'}"
        test = TestDefinition(
            id=test_id,
            name=title,
            index=sequence.test_count,
            body=body,
            link=link,
            description=description,
            required=required,
            versions=versions,
        )
        self._append(sequence, [test])
        return test

    def extend_sequence(
        self, sequence_name: str, other: SequenceDefinition | str
    ) -> None:
        self._ensure_writable()
        sequence = self.get(sequence_name)
        parent = self.get(other) if isinstance(other, str) else other

        inherited = []
        for test in parent.tests:
            self._index += 1
            inherited.append(
                replace(
                    test,
                    id=f"{sequence.test_id_prefix}-{self._index:02d}",
                    index=sequence.test_count + len(inherited),
                )
            )
        self._append(sequence, inherited)
        self._sequences[sequence_name] = replace(
            self._sequences[sequence_name],
            requires=sequence.requires | parent.requires,
            defines=sequence.defines | parent.defines,
        )

    def sequences(self) -> Sequence[SequenceDefinition]:
        return list(self._sequences.values())

    def get(self, name: str) -> SequenceDefinition:
        try:
            return self._sequences[name]
        except KeyError:
            raise RegistryError(
                f"Sequence '{name}' not found. Available sequences: "
                f"{list(self._sequences)}"
            ) from None

    def __contains__(self, name: str) -> bool:
        return name in self._sequences

    def tests(self, sequence_name: str) -> Sequence[TestDefinition]:
        return self.get(sequence_name).tests

    def find_test(self, test_id: str) -> TestDefinition | None:
        for sequence in self._sequences.values():
            for test in sequence.tests:
                if test.id == test_id:
                    return test
        return None

    def test_count(self, sequence_name: str) -> int:
        return self.get(sequence_name).test_count

    def total_test_count(self) -> int:
        return sum(sequence.test_count for sequence in self._sequences.values())

    def missing_requirements(
        self, sequence_name: str, context: Context
    ) -> Mapping[str, Sequence[str]]:
        """Map each unset required key to the sequences that would define it."""
        sequence = self.get(sequence_name)
        return {
            key: [
                other.name
                for other in self._sequences.values()
                if key in other.defines
            ]
            for key in context.missing(sequence.requires)
        }

    def _append(
        self, sequence: SequenceDefinition, tests: Sequence[TestDefinition]
    ) -> None:
        for test in tests:
            if test.id in self._test_ids:
                raise RegistryError(f"Duplicate test identifier '{test.id}'")
        self._test_ids.update(test.id for test in tests)
        current = self._sequences[sequence.name]
        self._sequences[sequence.name] = replace(
            current, tests=current.tests + tuple(tests)
        )

    def _check_context_keys(self, name: str, keys: frozenset[str]) -> None:
        if self._context_keys is None:
            return
        unknown = sorted(keys - self._context_keys)
        if unknown:
            raise RegistryError(
                f"Sequence '{name}' declares unknown context keys: {unknown}"
            )

    def _ensure_writable(self) -> None:
        if self._frozen:
            raise RegistryError("Registry is frozen")
