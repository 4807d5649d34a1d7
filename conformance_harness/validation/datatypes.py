"""Data types an element value can be checked against.

Every type code resolves to exactly one variant of ``DataType``; the validator
dispatches on the variant with ``match``.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeAlias

from conformance_harness.validation.profile import Profile

_YEAR = r"([0-9]([0-9]([0-9][1-9]|[1-9]0)|[1-9]00)|[1-9]000)"
_MONTH = r"(0[1-9]|1[0-2])"
_DAY = r"(0[1-9]|[1-2][0-9]|3[0-1])"
_TIME = r"([01][0-9]|2[0-3]):[0-5][0-9]:([0-5][0-9]|60)(\.[0-9]+)?"
_ZONE = r"(Z|(\+|-)((0[0-9]|1[0-3]):[0-5][0-9]|14:00))"
_DATE = rf"{_YEAR}(-{_MONTH}(-{_DAY})?)?"

SYSTEM_TYPE_PREFIX = "http://hl7.org/fhirpath/System."


@dataclass(frozen=True)
class PrimitiveType:
    code: str
    check: Callable[[Any], bool]

    def accepts(self, value: Any) -> bool:
        return self.check(value)


@dataclass(frozen=True)
class ComplexType:
    code: str
    profile: Profile


@dataclass(frozen=True)
class ResourceType:
    """A resource, or ``Resource`` itself when resolved by ``resourceType``."""

    code: str
    profile: Profile | None = None


@dataclass(frozen=True)
class ExtensionType:
    code: str = "Extension"


@dataclass(frozen=True)
class StructuralType:
    """BackboneElement and Element: checked through the node's own children."""

    code: str


@dataclass(frozen=True)
class UnknownType:
    code: str


DataType: TypeAlias = (
    PrimitiveType
    | ComplexType
    | ResourceType
    | ExtensionType
    | StructuralType
    | UnknownType
)


def _string(pattern: str | None = None) -> Callable[[Any], bool]:
    compiled = re.compile(pattern) if pattern is not None else None

    def check(value: Any) -> bool:
        if not isinstance(value, str):
            return False
        return compiled is None or compiled.fullmatch(value) is not None

    return check


def _integer(low: int, high: int = 2147483647) -> Callable[[Any], bool]:
    def check(value: Any) -> bool:
        return (
            isinstance(value, int)
            and not isinstance(value, bool)
            and low <= value <= high
        )

    return check


def _decimal(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _boolean(value: Any) -> bool:
    return isinstance(value, bool)


PRIMITIVES: dict[str, PrimitiveType] = {
    primitive.code: primitive
    for primitive in (
        PrimitiveType("boolean", _boolean),
        PrimitiveType("integer", _integer(-2147483648)),
        PrimitiveType("positiveInt", _integer(1)),
        PrimitiveType("unsignedInt", _integer(0)),
        PrimitiveType("decimal", _decimal),
        PrimitiveType("string", _string(r"[\s\S]*\S[\s\S]*")),
        PrimitiveType("markdown", _string(r"[\s\S]*\S[\s\S]*")),
        PrimitiveType("xhtml", _string()),
        PrimitiveType("code", _string(r"[^\s]+( [^\s]+)*")),
        PrimitiveType("id", _string(r"[A-Za-z0-9\-\.]{1,64}")),
        PrimitiveType("uri", _string(r"\S*")),
        PrimitiveType("url", _string(r"\S*")),
        PrimitiveType("canonical", _string(r"\S*")),
        PrimitiveType("oid", _string(r"urn:oid:[0-2](\.(0|[1-9][0-9]*))+")),
        PrimitiveType(
            "uuid",
            _string(
                r"urn:uuid:[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
            ),
        ),
        PrimitiveType("base64Binary", _string(r"(\s*([0-9a-zA-Z\+\=/]){4}\s*)+")),
        PrimitiveType(
            "instant", _string(rf"{_YEAR}-{_MONTH}-{_DAY}T{_TIME}{_ZONE}")
        ),
        PrimitiveType("date", _string(_DATE)),
        PrimitiveType("dateTime", _string(rf"{_DATE}(T{_TIME}{_ZONE})?")),
        PrimitiveType("time", _string(_TIME)),
    )
}

SYSTEM_TYPES = {
    "String": "string",
    "Boolean": "boolean",
    "Integer": "integer",
    "Decimal": "decimal",
    "Date": "date",
    "DateTime": "dateTime",
    "Time": "time",
}

STRUCTURAL_TYPES = frozenset({"BackboneElement", "Element"})
