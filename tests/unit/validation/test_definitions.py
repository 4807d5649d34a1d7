"""Tests for definitions and type resolution."""

from conformance_harness.validation.datatypes import (
    ComplexType,
    ExtensionType,
    PrimitiveType,
    ResourceType,
    StructuralType,
    UnknownType,
)
from conformance_harness.validation.definitions import BASE_URL, Definitions
from conformance_harness.validation.profile import ElementNode, TypeRef, build_profile


def test_resolves_each_type_category() -> None:
    """Maps type codes to their data type variant."""
    definitions = Definitions.with_base_types()

    assert isinstance(definitions.resolve(TypeRef(code="string")), PrimitiveType)
    assert isinstance(
        definitions.resolve(TypeRef(code="http://hl7.org/fhirpath/System.String")),
        PrimitiveType,
    )
    assert definitions.resolve(TypeRef(code="Extension")) == ExtensionType()
    assert definitions.resolve(TypeRef(code="BackboneElement")) == StructuralType(
        "BackboneElement"
    )
    assert definitions.resolve(TypeRef(code="Resource")) == ResourceType("Resource")
    coding = definitions.resolve(TypeRef(code="Coding"))
    assert isinstance(coding, ComplexType)
    assert coding.profile.url == BASE_URL + "Coding"
    assert definitions.resolve(TypeRef(code="Nope")) == UnknownType("Nope")


def test_resolves_profiled_resource_references() -> None:
    """Uses the referenced profile and its kind."""
    definitions = Definitions.with_base_types()
    profile = build_profile(
        [ElementNode(path="Patient")],
        url="http://example.org/StructureDefinition/patient",
    )
    definitions.add(profile)

    resolved = definitions.resolve(TypeRef(code="Patient", profile=profile.url))

    assert resolved == ResourceType("Patient", profile)


def test_primitive_checks() -> None:
    """Applies the primitive value rules."""
    definitions = Definitions()

    def accepts(code: str, value: object) -> bool:
        data_type = definitions.resolve(TypeRef(code=code))
        assert isinstance(data_type, PrimitiveType)
        return data_type.accepts(value)

    assert accepts("boolean", False)
    assert not accepts("integer", True)
    assert accepts("positiveInt", 1)
    assert not accepts("positiveInt", 0)
    assert accepts("decimal", 1.5)
    assert not accepts("string", "   ")
    assert accepts("id", "abc-123.x")
    assert not accepts("id", "a" * 65)
    assert accepts("instant", "2020-01-01T00:00:00.123+05:00")
    assert not accepts("instant", "2020-01-01")
    assert accepts("dateTime", "2020-01")
    assert accepts("uuid", "urn:uuid:c757873d-ec9a-4326-a141-556f43239520")


def test_guess_profile_prefers_declared_then_specific() -> None:
    """Picks declared, then constrained, then base profiles."""
    definitions = Definitions()
    base = build_profile([ElementNode(path="Patient")], url=BASE_URL + "Patient")
    specific = build_profile(
        [ElementNode(path="Patient")],
        url="http://example.org/StructureDefinition/us-patient",
    )
    declared = build_profile(
        [ElementNode(path="Patient")],
        url="http://example.org/StructureDefinition/declared",
    )
    definitions.add(base, base=True)

    assert definitions.guess_profile({"resourceType": "Patient"}) == base

    definitions.add(specific)
    definitions.add(declared)

    assert definitions.guess_profile({"resourceType": "Patient"}) == specific
    assert (
        definitions.guess_profile(
            {"resourceType": "Patient", "meta": {"profile": [declared.url + "|1.0"]}}
        )
        == declared
    )
    assert definitions.guess_profile({}) is None
