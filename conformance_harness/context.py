"""Session state shared between the tests of a testing instance."""

from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from conformance_harness.models.definition import SequenceDefinition


class ContextKeyError(Exception):
    """Raised when a test touches a context key its sequence did not declare."""


class Context:
    """Mutable key/value state for one testing instance.

    Values must be JSON-serializable so the repository can persist them.
    A key whose value is ``None`` is treated as unset.
    """

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        value = self._values.get(key)
        return default if value is None else value

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._values[key] = value

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._values.get(key) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Context):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return f"Context({sorted(self._values)})"

    def merge(self, values: Mapping[str, Any]) -> None:
        self._values.update(values)

    def missing(self, keys: Iterable[str]) -> list[str]:
        """Return the keys from ``keys`` that are not set, in sorted order."""
        return sorted(key for key in keys if key not in self)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)

    def scoped(self, sequence: SequenceDefinition) -> "ScopedContext":
        return ScopedContext(
            self,
            sequence_name=sequence.name,
            readable=sequence.requires | sequence.defines,
            writable=sequence.defines,
        )


class ScopedContext:
    """View of a ``Context`` limited to the keys a sequence declared.

    Reads are allowed for required and defined keys, writes only for defined
    keys. Anything else raises ``ContextKeyError``.
    """

    def __init__(
        self,
        context: Context,
        *,
        sequence_name: str,
        readable: frozenset[str],
        writable: frozenset[str],
    ) -> None:
        self._context = context
        self._sequence_name = sequence_name
        self._readable = readable
        self._writable = writable

    def get(self, key: str, default: Any = None) -> Any:
        self._check(key, self._readable, "read")
        return self._context.get(key, default)

    def __getitem__(self, key: str) -> Any:
        self._check(key, self._readable, "read")
        return self._context[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._check(key, self._writable, "write")
        self._context[key] = value

    def __contains__(self, key: str) -> bool:
        self._check(key, self._readable, "read")
        return key in self._context

    def _check(self, key: str, allowed: frozenset[str], action: str) -> None:
        if key not in allowed:
            raise ContextKeyError(
                f"Sequence '{self._sequence_name}' cannot {action} context key "
                f"'{key}'. Declared keys: {sorted(allowed)}"
            )
