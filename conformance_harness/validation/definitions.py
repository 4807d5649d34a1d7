"""Known profiles and base type definitions, and type code resolution."""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from conformance_harness.validation.datatypes import (
    PRIMITIVES,
    STRUCTURAL_TYPES,
    SYSTEM_TYPE_PREFIX,
    SYSTEM_TYPES,
    ComplexType,
    DataType,
    ExtensionType,
    ResourceType,
    StructuralType,
    UnknownType,
)
from conformance_harness.validation.profile import (
    Binding,
    ElementNode,
    Profile,
    TypeRef,
    build_profile,
)
from conformance_harness.validation.terminology import Terminology

log = logging.getLogger(__name__)

BASE_URL = "http://hl7.org/fhir/StructureDefinition/"
VALUE_SET_URL = "http://hl7.org/fhir/ValueSet/"


class Definitions:
    """Profiles by canonical URL, plus one base definition per type code."""

    def __init__(self) -> None:
        self._profiles: dict[str, Profile] = {}
        self._types: dict[str, Profile] = {}

    @classmethod
    def with_base_types(cls) -> "Definitions":
        definitions = cls()
        for profile in BASE_TYPES:
            definitions.add(profile, base=True)
        return definitions

    def add(self, profile: Profile, *, base: bool = False) -> None:
        """Register a profile; ``base`` also makes it the definition of its type."""
        self._profiles[profile.url] = profile
        if base:
            self._types[profile.type] = profile

    def profile(self, url: str) -> Profile | None:
        return self._profiles.get(url.split("|", 1)[0])

    def type_profile(self, code: str) -> Profile | None:
        return self._types.get(code)

    def profiles_for(self, resource_type: str) -> Sequence[Profile]:
        return [
            profile
            for profile in self._profiles.values()
            if profile.type == resource_type and profile.kind == "resource"
        ]

    def guess_profile(self, resource: Mapping[str, Any]) -> Profile | None:
        """Pick a profile for a resource: declared ``meta.profile`` first, then
        the first registered profile for its type, then its base definition."""
        meta = resource.get("meta")
        declared = meta.get("profile") if isinstance(meta, Mapping) else None
        if isinstance(declared, str):
            declared = [declared]
        elif not isinstance(declared, list):
            declared = []
        for url in declared:
            if not isinstance(url, str):
                continue
            profile = self.profile(url)
            if profile is not None:
                return profile
            log.debug("Declared profile %s is not known", url)

        resource_type = resource.get("resourceType")
        if not isinstance(resource_type, str):
            return None
        base = self._types.get(resource_type)
        for profile in self.profiles_for(resource_type):
            if profile is not base:
                return profile
        return base

    def resolve(self, type_ref: TypeRef) -> DataType:
        code = type_ref.code
        if code.startswith(SYSTEM_TYPE_PREFIX):
            code = SYSTEM_TYPES.get(code.removeprefix(SYSTEM_TYPE_PREFIX), code)

        if code in PRIMITIVES:
            return PRIMITIVES[code]
        if code == "Extension":
            return ExtensionType()
        if code in STRUCTURAL_TYPES:
            return StructuralType(code)
        if code in ("Resource", "DomainResource"):
            return ResourceType(code)

        profile = self.profile(type_ref.profile) if type_ref.profile else None
        if profile is None:
            profile = self._types.get(code)
        if profile is None:
            return UnknownType(code)
        if profile.kind == "resource":
            return ResourceType(code, profile)
        return ComplexType(code, profile)


def _element(
    path: str,
    cardinality: str = "0..1",
    *codes: str,
    binding: str | None = None,
    strength: str = "required",
) -> ElementNode:
    low, high = cardinality.split("..")
    return ElementNode(
        path=path,
        min=int(low),
        max=None if high == "*" else int(high),
        types=[TypeRef(code=code) for code in codes],
        binding=(
            Binding(strength=strength, value_set=VALUE_SET_URL + binding)
            if binding
            else None
        ),
    )


def _base_type(name: str, *elements: ElementNode) -> Profile:
    return build_profile(
        [ElementNode(path=name), *elements],
        url=BASE_URL + name,
        kind="complex-type",
    )


BASE_TYPES: Sequence[Profile] = (
    _base_type(
        "Coding",
        _element("Coding.system", "0..1", "uri"),
        _element("Coding.version", "0..1", "string"),
        _element("Coding.code", "0..1", "code"),
        _element("Coding.display", "0..1", "string"),
        _element("Coding.userSelected", "0..1", "boolean"),
    ),
    _base_type(
        "CodeableConcept",
        _element("CodeableConcept.coding", "0..*", "Coding"),
        _element("CodeableConcept.text", "0..1", "string"),
    ),
    _base_type(
        "Period",
        _element("Period.start", "0..1", "dateTime"),
        _element("Period.end", "0..1", "dateTime"),
    ),
    _base_type(
        "Identifier",
        _element("Identifier.use", "0..1", "code", binding="identifier-use"),
        _element("Identifier.type", "0..1", "CodeableConcept"),
        _element("Identifier.system", "0..1", "uri"),
        _element("Identifier.value", "0..1", "string"),
        _element("Identifier.period", "0..1", "Period"),
        _element("Identifier.assigner", "0..1", "Reference"),
    ),
    _base_type(
        "Reference",
        _element("Reference.reference", "0..1", "string"),
        _element("Reference.type", "0..1", "uri"),
        _element("Reference.identifier", "0..1", "Identifier"),
        _element("Reference.display", "0..1", "string"),
    ),
    _base_type(
        "HumanName",
        _element("HumanName.use", "0..1", "code", binding="name-use"),
        _element("HumanName.text", "0..1", "string"),
        _element("HumanName.family", "0..1", "string"),
        _element("HumanName.given", "0..*", "string"),
        _element("HumanName.prefix", "0..*", "string"),
        _element("HumanName.suffix", "0..*", "string"),
        _element("HumanName.period", "0..1", "Period"),
    ),
    _base_type(
        "ContactPoint",
        _element("ContactPoint.system", "0..1", "code", binding="contact-point-system"),
        _element("ContactPoint.value", "0..1", "string"),
        _element("ContactPoint.use", "0..1", "code", binding="contact-point-use"),
        _element("ContactPoint.rank", "0..1", "positiveInt"),
        _element("ContactPoint.period", "0..1", "Period"),
    ),
    _base_type(
        "Address",
        _element("Address.use", "0..1", "code", binding="address-use"),
        _element("Address.type", "0..1", "code", binding="address-type"),
        _element("Address.text", "0..1", "string"),
        _element("Address.line", "0..*", "string"),
        _element("Address.city", "0..1", "string"),
        _element("Address.district", "0..1", "string"),
        _element("Address.state", "0..1", "string"),
        _element("Address.postalCode", "0..1", "string"),
        _element("Address.country", "0..1", "string"),
        _element("Address.period", "0..1", "Period"),
    ),
    _base_type(
        "Quantity",
        _element("Quantity.value", "0..1", "decimal"),
        _element("Quantity.comparator", "0..1", "code", binding="quantity-comparator"),
        _element("Quantity.unit", "0..1", "string"),
        _element("Quantity.system", "0..1", "uri"),
        _element("Quantity.code", "0..1", "code"),
    ),
    _base_type(
        "Attachment",
        _element("Attachment.contentType", "0..1", "code", binding="mimetypes"),
        _element("Attachment.language", "0..1", "code"),
        _element("Attachment.data", "0..1", "base64Binary"),
        _element("Attachment.url", "0..1", "url"),
        _element("Attachment.size", "0..1", "unsignedInt"),
        _element("Attachment.hash", "0..1", "base64Binary"),
        _element("Attachment.title", "0..1", "string"),
        _element("Attachment.creation", "0..1", "dateTime"),
    ),
    _base_type(
        "Meta",
        _element("Meta.versionId", "0..1", "id"),
        _element("Meta.lastUpdated", "0..1", "instant"),
        _element("Meta.source", "0..1", "uri"),
        _element("Meta.profile", "0..*", "canonical"),
        _element("Meta.security", "0..*", "Coding"),
        _element("Meta.tag", "0..*", "Coding"),
    ),
    _base_type(
        "Narrative",
        _element("Narrative.status", "1..1", "code", binding="narrative-status"),
        _element("Narrative.div", "1..1", "xhtml"),
    ),
)


def base_terminology() -> Terminology:
    """Terminology holding the required value sets of the base types."""
    terminology = Terminology()
    value_sets = {
        "administrative-gender": ["male", "female", "other", "unknown"],
        "identifier-use": ["usual", "official", "temp", "secondary", "old"],
        "name-use": [
            "usual",
            "official",
            "temp",
            "nickname",
            "anonymous",
            "old",
            "maiden",
        ],
        "contact-point-system": [
            "phone",
            "fax",
            "email",
            "pager",
            "url",
            "sms",
            "other",
        ],
        "contact-point-use": ["home", "work", "temp", "old", "mobile"],
        "address-use": ["home", "work", "temp", "old", "billing"],
        "address-type": ["postal", "physical", "both"],
        "quantity-comparator": ["<", "<=", ">=", ">"],
        "narrative-status": ["generated", "extensions", "additional", "empty"],
    }
    for name, codes in value_sets.items():
        terminology.add_value_set(VALUE_SET_URL + name, codes)
    return terminology
