"""Structural validation of JSON documents against profile trees.

Validation is total: every problem is reported as a finding and nothing is
raised for malformed input. Findings are plain strings grouped by severity.
"""

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from conformance_harness.validation.datatypes import (
    ComplexType,
    DataType,
    ExtensionType,
    PrimitiveType,
    ResourceType,
    StructuralType,
    UnknownType,
)
from conformance_harness.validation.definitions import Definitions, base_terminology
from conformance_harness.validation.profile import (
    Binding,
    ElementNode,
    Profile,
    TypeRef,
)
from conformance_harness.validation.terminology import MIME_TYPE_VALUE_SETS, Terminology

log = logging.getLogger(__name__)

CHECKED_STRENGTHS = ("required", "extensible")


@dataclass
class ValidationFinding:
    """Errors, warnings and informational notes from one validation run."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    information: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def extend(self, other: "ValidationFinding", prefix: str = "") -> None:
        self.errors.extend(prefix + message for message in other.errors)
        self.warnings.extend(prefix + message for message in other.warnings)
        self.information.extend(prefix + message for message in other.information)


def resolve_path(document: Any, path: str) -> list[Any]:
    """Collect every value reachable from ``document`` along a dotted path.

    Arrays are flattened at each step and JSON nulls are dropped, so
    ``name.given`` on a Patient yields all given names of all names.
    """
    current = _flatten([document])
    for step in path.split(".") if path else []:
        found: list[Any] = []
        for item in current:
            if isinstance(item, Mapping) and step in item:
                found.extend(_flatten([item[step]]))
        current = found
    return current


def _flatten(values: Sequence[Any]) -> list[Any]:
    flat: list[Any] = []
    for value in values:
        if isinstance(value, list):
            flat.extend(item for item in value if item is not None)
        elif value is not None:
            flat.append(value)
    return flat


def _relative_path(path: str, parent_path: str) -> str:
    prefix = parent_path + "."
    return path[len(prefix) :] if path.startswith(prefix) else path


def _choice_name(code: str) -> str:
    return code[:1].upper() + code[1:]


def _matches_pattern(value: Any, pattern: Any) -> bool:
    if isinstance(pattern, Mapping):
        return isinstance(value, Mapping) and all(
            key in value and _matches_pattern(value[key], expected)
            for key, expected in pattern.items()
        )
    if isinstance(pattern, list):
        items = value if isinstance(value, list) else [value]
        return all(
            any(_matches_pattern(item, expected) for item in items)
            for expected in pattern
        )
    return value == pattern


@dataclass(frozen=True, kw_only=True)
class StructureValidator:
    """Checks documents against profiles using known definitions and terminology.

    Example:
        validator = StructureValidator()
        finding = validator.validate(patient, profile)
        if not finding.ok:
            ...

    """

    definitions: Definitions = field(default_factory=Definitions.with_base_types)
    terminology: Terminology = field(default_factory=base_terminology)

    def validate(
        self, document: Mapping[str, Any] | str | bytes, profile: Profile
    ) -> ValidationFinding:
        if isinstance(document, str | bytes):
            try:
                document = json.loads(document)
            except ValueError as e:
                return ValidationFinding(errors=[f"Failed to parse JSON: {e}"])

        if not isinstance(document, Mapping):
            return ValidationFinding(
                errors=[f"Expected a JSON object, found {type(document).__name__}"]
            )

        finding = ValidationFinding()
        resource_type = document.get("resourceType")
        if (
            profile.kind == "resource"
            and resource_type is not None
            and resource_type != profile.type
        ):
            finding.errors.append(
                f"Expected resourceType {profile.type} but found {resource_type}"
            )

        walk = _ProfileWalk(self, finding)
        for child in profile.root.children:
            walk.verify(child, [document], profile.root.path)
        log.debug(
            "Validated against %s: %d error(s), %d warning(s)",
            profile.url,
            len(finding.errors),
            len(finding.warnings),
        )
        return finding

    def validate_resource(self, document: Mapping[str, Any]) -> ValidationFinding:
        """Validate against the profile ``Definitions.guess_profile`` picks."""
        if not isinstance(document, Mapping):
            return ValidationFinding(
                errors=[f"Expected a JSON object, found {type(document).__name__}"]
            )
        profile = self.definitions.guess_profile(document)
        if profile is None:
            return ValidationFinding(
                warnings=[
                    "No profile found for resource type "
                    f"{document.get('resourceType')!r}"
                ]
            )
        return self.validate(document, profile)


@dataclass(frozen=True)
class _ProfileWalk:
    validator: StructureValidator
    finding: ValidationFinding

    def verify(
        self, node: ElementNode, parents: Sequence[Any], parent_path: str
    ) -> None:
        """Check ``node`` against every instance of its parent element.

        Cardinality holds per parent instance; fixed values and patterns need
        only one matching value across all of them.
        """
        description = node.describe()

        if node.is_slice and not node.is_extension:
            self.finding.information.append(
                f"{node.key}: slice constraints were not checked"
            )
            return

        relative = _relative_path(node.path, parent_path)
        values: list[Any] = []
        for parent in parents:
            found, types = self._resolve(node, parent, relative)
            count = len(found)
            if count < node.min or (node.max is not None and count > node.max):
                self.finding.errors.append(
                    f"{description} failed cardinality test "
                    f"({node.cardinality()}) -- found {count}"
                )
            for value in found:
                self._check_value(node, value, types)
            values.extend(found)

        if not values:
            return

        if node.fixed is not None and not any(value == node.fixed for value in values):
            self.finding.errors.append(
                f"{description} value of '{values[0]}' did not match fixed value: "
                f"{node.fixed}"
            )

        if node.pattern is not None and not any(
            _matches_pattern(value, node.pattern) for value in values
        ):
            kind = (
                "CodeableConcept "
                if any(type_ref.code == "CodeableConcept" for type_ref in node.types)
                else ""
            )
            self.finding.errors.append(
                f"{description} {kind}did not match defined pattern: "
                f"{json.dumps(node.pattern)}"
            )

        mappings = [value for value in values if isinstance(value, Mapping)]
        if mappings:
            for child in node.children:
                self.verify(child, mappings, node.path)

    def _resolve(
        self, node: ElementNode, parent: Any, relative: str
    ) -> tuple[list[Any], list[TypeRef]]:
        if relative.endswith("[x]"):
            stem = relative[: -len("[x]")]
            for type_ref in node.types:
                values = resolve_path(parent, stem + _choice_name(type_ref.code))
                if values:
                    return values, [type_ref]
            return [], []

        values = resolve_path(parent, relative)
        extension_url = next(
            (
                type_ref.profile
                for type_ref in node.types
                if type_ref.code == "Extension" and type_ref.profile
            ),
            None,
        )
        if extension_url is not None:
            values = [
                value
                for value in values
                if isinstance(value, Mapping) and value.get("url") == extension_url
            ]
        return values, list(node.types)

    def _check_value(
        self, node: ElementNode, value: Any, types: Sequence[TypeRef]
    ) -> None:
        if not types:
            return

        failures: list[str] = []
        for type_ref in types:
            data_type = self.validator.definitions.resolve(type_ref)
            messages = self._conformance_errors(node, data_type, value)
            if not messages:
                self._check_constraints(node, data_type, value)
                return
            failures.extend(messages)

        self.finding.errors.extend(failures)
        if len(types) > 1:
            codes = ", ".join(type_ref.code for type_ref in types)
            self.finding.errors.append(
                f"{node.describe()} did not match one of the valid data types: "
                f"{codes}"
            )

    def _conformance_errors(
        self, node: ElementNode, data_type: DataType, value: Any
    ) -> list[str]:
        description = node.describe()
        match data_type:
            case PrimitiveType(code=code):
                if data_type.accepts(value):
                    return []
                return [f"{description} is not a valid {code}: {value!r}"]
            case ExtensionType(code=code) | StructuralType(code=code):
                if isinstance(value, Mapping):
                    return []
                return [f"{description} is not a valid {code}: {value!r}"]
            case ComplexType(code=code, profile=profile):
                if not isinstance(value, Mapping):
                    return [f"{description} is not a valid {code}: {value!r}"]
                return self._nested_errors(description, value, profile)
            case ResourceType(code=code, profile=profile):
                if not isinstance(value, Mapping):
                    return [f"{description} is not a valid {code}: {value!r}"]
                if profile is None:
                    resource_type = value.get("resourceType")
                    if not isinstance(resource_type, str):
                        return [f"{description} is not a valid {code}: no resourceType"]
                    profile = self.validator.definitions.type_profile(resource_type)
                    if profile is None:
                        self.finding.warnings.append(
                            f"Unable to find base Resource definition "
                            f"{resource_type} for {description}"
                        )
                        return []
                return self._nested_errors(description, value, profile)
            case UnknownType(code=code):
                self.finding.warnings.append(
                    f"Unable to determine data type {code} for {description}"
                )
                return []
        return []

    def _nested_errors(
        self, description: str, value: Mapping[str, Any], profile: Profile
    ) -> list[str]:
        nested = self.validator.validate(value, profile)
        prefix = f"{description}: "
        self.finding.warnings.extend(prefix + message for message in nested.warnings)
        self.finding.information.extend(
            prefix + message for message in nested.information
        )
        return [prefix + message for message in nested.errors]

    def _check_constraints(
        self, node: ElementNode, data_type: DataType, value: Any
    ) -> None:
        if (
            node.max_length is not None
            and isinstance(value, str)
            and len(value) > node.max_length
        ):
            self.finding.errors.append(
                f"{node.describe()} exceeds maximum length of {node.max_length}"
            )

        binding = node.binding
        if binding is None or binding.strength not in CHECKED_STRENGTHS:
            return
        if isinstance(data_type, PrimitiveType) and isinstance(value, str):
            self._check_code_binding(node, binding, value)
        elif data_type.code in ("CodeableConcept", "Coding") and isinstance(
            value, Mapping
        ):
            self._check_coding_binding(node, binding, data_type.code, value)

    def _check_code_binding(
        self, node: ElementNode, binding: Binding, code: str
    ) -> None:
        value_set = binding.value_set or ""
        required = binding.strength == "required"
        contained = (
            self.validator.terminology.contains_code(value_set, code)
            if value_set
            else None
        )

        if contained is None:
            self.finding.warnings.append(
                f"{node.path} has unknown ValueSet: '{value_set}'"
            )
            if not required:
                return
            if node.short:
                guesses = [guess.strip() for guess in node.short.split("|")]
                if code not in guesses:
                    self.finding.errors.append(
                        f"{node.path} has invalid code '{code}' "
                        f"(expected one of: {', '.join(guesses)})"
                    )
            else:
                self.finding.errors.append(
                    f"{node.path} has code '{code}' that could not be checked "
                    f"against unknown ValueSet '{value_set}'"
                )
            return

        if not contained:
            if value_set in MIME_TYPE_VALUE_SETS:
                message = f"{node.path} has invalid mime type: '{code}'"
            else:
                message = f"{node.path} has invalid code '{code}' from {value_set}"
            (self.finding.errors if required else self.finding.warnings).append(message)

    def _check_coding_binding(
        self,
        node: ElementNode,
        binding: Binding,
        code: str,
        value: Mapping[str, Any],
    ) -> None:
        value_set = binding.value_set
        if not value_set or not self.validator.terminology.knows(value_set):
            self.finding.warnings.append(
                f"{node.path} has unknown ValueSet: '{value_set}'"
            )
            return

        codings = value.get("coding", []) if code == "CodeableConcept" else [value]
        if not isinstance(codings, list):
            return
        if any(
            self.validator.terminology.contains_coding(value_set, coding)
            for coding in codings
            if isinstance(coding, Mapping)
        ):
            return

        message = (
            f"{node.describe()} has no codings from {value_set}. "
            f"Codings evaluated: {json.dumps(codings)}"
        )
        if binding.strength == "required":
            self.finding.errors.append(message)
        else:
            self.finding.warnings.append(message)
