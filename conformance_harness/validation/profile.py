"""Profiles as trees of element constraints."""

from collections.abc import Iterable, Sequence
from typing import Any, Literal, TypeAlias

from pydantic import Field

from conformance_harness.models.base import Model

EXTENSION_SUFFIXES = (".extension", ".modifierExtension")

ProfileKind: TypeAlias = Literal["resource", "complex-type", "primitive-type", "logical"]


class TypeRef(Model):
    """One allowed data type of an element."""

    code: str = Field(..., description="Type code, e.g. 'CodeableConcept'")
    profile: str | None = Field(
        default=None, description="Profile URL the value must conform to"
    )


class Binding(Model):
    """Terminology binding of a coded element."""

    strength: Literal["required", "extensible", "preferred", "example"]
    value_set: str | None = None


class ElementNode(Model):
    """Constraints on one element path, with its child elements."""

    path: str = Field(..., description="Dotted path, e.g. 'Patient.name.family'")
    id: str | None = Field(
        default=None, description="Element id; differs from path for slices"
    )
    name: str | None = Field(default=None, description="Slice name")
    min: int = 0
    max: int | None = Field(default=None, description="None means unbounded")
    types: Sequence[TypeRef] = Field(default_factory=list)
    binding: Binding | None = None
    fixed: Any = None
    pattern: Any = None
    short: str | None = None
    max_length: int | None = None
    children: Sequence["ElementNode"] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return self.id or self.path

    @property
    def is_extension(self) -> bool:
        return self.path.endswith(EXTENSION_SUFFIXES)

    @property
    def is_slice(self) -> bool:
        return ":" in self.key.rsplit(".", 1)[-1]

    def describe(self) -> str:
        if self.name and self.is_extension:
            return f"{self.path} ({self.name})"
        return self.path

    def cardinality(self) -> str:
        return f"{self.min}..{'*' if self.max is None else self.max}"


class Profile(Model):
    """A named constraint set over a resource or data type."""

    url: str
    type: str = Field(..., description="Constrained resource or data type")
    kind: ProfileKind = "resource"
    root: ElementNode


def build_profile(
    elements: Sequence[ElementNode],
    *,
    url: str,
    kind: ProfileKind = "resource",
    differential: Iterable[str] | None = None,
) -> Profile:
    """Nest a flat, document-ordered element list into a profile tree.

    The first element is the root. Each later element becomes a child of the
    nearest preceding element whose key is a dotted prefix of its own. When
    ``differential`` lists element keys, only those keys and their ancestors
    are kept.

    Raises:
        ValueError: If ``elements`` is empty or an element has no parent

    """
    if not elements:
        raise ValueError(f"Profile {url} has no elements")

    keep: set[str] | None = None
    if differential is not None:
        keep = set()
        for key in differential:
            parts = key.split(".")
            keep.update(".".join(parts[:end]) for end in range(1, len(parts) + 1))

    root, *rest = elements
    children: dict[str, list[ElementNode]] = {root.key: []}

    for element in rest:
        if keep is not None and element.key not in keep:
            continue
        parent_key = _parent_key(element.key, children)
        if parent_key is None:
            raise ValueError(f"Element {element.key} in {url} has no parent element")
        children[element.key] = []
        children[parent_key].append(element)

    def assemble(element: ElementNode) -> ElementNode:
        return element.model_copy(
            update={"children": [assemble(child) for child in children[element.key]]}
        )

    return Profile(url=url, type=root.path, kind=kind, root=assemble(root))


def _parent_key(key: str, known: dict[str, list[ElementNode]]) -> str | None:
    parts = key.split(".")
    for end in range(len(parts) - 1, 0, -1):
        candidate = ".".join(parts[:end])
        if candidate in known:
            return candidate
    return None
