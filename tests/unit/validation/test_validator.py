"""Tests for structural validation."""

import json

import pytest

from conformance_harness.validation.definitions import VALUE_SET_URL
from conformance_harness.validation.profile import (
    Binding,
    ElementNode,
    Profile,
    TypeRef,
    build_profile,
)
from conformance_harness.validation.validator import (
    StructureValidator,
    resolve_path,
)

RACE_URL = "http://hl7.org/fhir/us/core/StructureDefinition/us-core-race"


def element(path: str, low: int = 0, high: int | None = 1, *codes: str) -> ElementNode:
    return ElementNode(
        path=path, min=low, max=high, types=[TypeRef(code=code) for code in codes]
    )


@pytest.fixture
def validator() -> StructureValidator:
    """Create validator with base types and terminology."""
    return StructureValidator()


def test_resolve_path_fans_out_over_arrays() -> None:
    """Collects values across arrays and drops nulls."""
    patient = {
        "name": [{"given": ["Amy", "Lee"]}, {"given": ["Bo"]}, {"family": "X"}],
        "gender": None,
    }

    assert resolve_path(patient, "name.given") == ["Amy", "Lee", "Bo"]
    assert resolve_path(patient, "gender") == []
    assert resolve_path(patient, "") == [patient]


class TestCardinality:
    """Tests for cardinality checks."""

    profile = build_profile(
        [element("Patient", 0, None), element("Patient.name", 1, 1)],
        url="http://example.org/StructureDefinition/one-name",
    )

    def test_empty_array_counts_as_missing(
        self, validator: StructureValidator
    ) -> None:
        """Reports the cardinality and the count found."""
        finding = validator.validate({"name": []}, self.profile)

        assert len(finding.errors) == 1
        assert "failed cardinality test (1..1) -- found 0" in finding.errors[0]

    def test_too_many_values(self, validator: StructureValidator) -> None:
        """Counts every array entry."""
        finding = validator.validate({"name": [{}, {}]}, self.profile)

        assert finding.errors == [
            "Patient.name failed cardinality test (1..1) -- found 2"
        ]

    def test_nested_cardinality_is_per_parent(
        self, validator: StructureValidator
    ) -> None:
        """Checks child cardinality within each parent instance."""
        profile = build_profile(
            [
                element("Patient", 0, None),
                element("Patient.name", 0, None),
                element("Patient.name.family", 0, 1, "string"),
            ],
            url="http://example.org/StructureDefinition/names",
        )

        finding = validator.validate(
            {"name": [{"family": "A"}, {"family": "B"}]}, profile
        )

        assert finding.ok


class TestFixedAndPattern:
    """Tests for fixed values and patterns."""

    def test_fixed_value_matches_any_coding(
        self, validator: StructureValidator
    ) -> None:
        """Accepts a fixed code present in one of several codings."""
        profile = build_profile(
            [
                element("Observation", 0, None),
                element("Observation.code", 1, 1),
                element("Observation.code.coding", 0, None),
                ElementNode(
                    path="Observation.code.coding.code", max=1, fixed="72166-2"
                ),
            ],
            url="http://example.org/StructureDefinition/smoking",
        )
        observation = {
            "resourceType": "Observation",
            "code": {
                "coding": [
                    {"system": "http://loinc.org", "code": "72166-2"},
                    {"system": "http://snomed.info/sct", "code": "229819007"},
                ]
            },
        }

        finding = validator.validate(observation, profile)

        assert finding.errors == []

    def test_fixed_value_mismatch(self, validator: StructureValidator) -> None:
        """Reports the found and fixed value."""
        profile = build_profile(
            [
                element("Observation", 0, None),
                ElementNode(path="Observation.status", fixed="final"),
            ],
            url="http://example.org/StructureDefinition/final",
        )

        finding = validator.validate({"status": "draft"}, profile)

        assert finding.errors == [
            "Observation.status value of 'draft' did not match fixed value: final"
        ]

    def test_codeable_concept_pattern(self, validator: StructureValidator) -> None:
        """Matches patterns as partial structures."""
        pattern = {"coding": [{"system": "http://loinc.org", "code": "8867-4"}]}
        profile = build_profile(
            [
                element("Observation", 0, None),
                ElementNode(
                    path="Observation.code",
                    min=1,
                    max=1,
                    types=[TypeRef(code="CodeableConcept")],
                    pattern=pattern,
                ),
            ],
            url="http://example.org/StructureDefinition/heart-rate",
        )
        matching = {
            "code": {
                "coding": [
                    {"system": "http://loinc.org", "code": "8867-4", "display": "HR"}
                ],
                "text": "Heart rate",
            }
        }
        other = {"code": {"coding": [{"system": "http://loinc.org", "code": "1"}]}}

        assert validator.validate(matching, profile).ok
        assert validator.validate(other, profile).errors == [
            "Observation.code CodeableConcept did not match defined pattern: "
            + json.dumps(pattern)
        ]


class TestDataTypes:
    """Tests for data type checks."""

    profile = build_profile(
        [
            element("Patient", 0, None),
            element("Patient.active", 0, 1, "boolean"),
            element("Patient.birthDate", 0, 1, "date"),
            element("Patient.deceased[x]", 0, 1, "boolean", "dateTime"),
            element("Patient.name", 0, None, "HumanName"),
        ],
        url="http://example.org/StructureDefinition/patient",
    )

    def test_valid_document(self, validator: StructureValidator) -> None:
        """Accepts well-typed values."""
        patient = {
            "resourceType": "Patient",
            "active": True,
            "birthDate": "1970-01-31",
            "deceasedDateTime": "2020-03-01T10:00:00Z",
            "name": [{"family": "Smith", "given": ["Ann"], "use": "official"}],
        }

        assert validator.validate(patient, self.profile).errors == []

    def test_primitive_mismatch(self, validator: StructureValidator) -> None:
        """Reports values that are not valid primitives."""
        finding = validator.validate(
            {"active": "yes", "birthDate": "31/01/1970"}, self.profile
        )

        assert finding.errors == [
            "Patient.active is not a valid boolean: 'yes'",
            "Patient.birthDate is not a valid date: '31/01/1970'",
        ]

    def test_choice_uses_matching_type(self, validator: StructureValidator) -> None:
        """Resolves a choice element by its typed name."""
        finding = validator.validate({"deceasedBoolean": "no"}, self.profile)

        assert finding.errors == ["Patient.deceased[x] is not a valid boolean: 'no'"]

    def test_complex_type_is_checked_recursively(
        self, validator: StructureValidator
    ) -> None:
        """Prefixes nested errors with the containing element."""
        finding = validator.validate({"name": [{"use": "nickname!"}]}, self.profile)

        assert finding.errors == [
            "Patient.name: HumanName.use has invalid code 'nickname!' from "
            f"{VALUE_SET_URL}name-use"
        ]

    def test_unknown_type_is_a_warning(self, validator: StructureValidator) -> None:
        """Warns when a type code cannot be resolved."""
        profile = build_profile(
            [element("Patient", 0, None), element("Patient.link", 0, None, "Thing")],
            url="http://example.org/StructureDefinition/link",
        )

        finding = validator.validate({"link": [{"other": {}}]}, profile)

        assert finding.ok
        assert finding.warnings == [
            "Unable to determine data type Thing for Patient.link"
        ]


class TestBindings:
    """Tests for terminology bindings."""

    @staticmethod
    def gender_profile(value_set: str, short: str | None = None) -> Profile:
        return build_profile(
            [
                element("Patient", 0, None),
                ElementNode(
                    path="Patient.gender",
                    max=1,
                    types=[TypeRef(code="code")],
                    binding=Binding(strength="required", value_set=value_set),
                    short=short,
                ),
            ],
            url="http://example.org/StructureDefinition/gender",
        )

    def test_required_binding_rejects_unknown_code(
        self, validator: StructureValidator
    ) -> None:
        """Errors on codes outside a known required value set."""
        profile = self.gender_profile(VALUE_SET_URL + "administrative-gender")

        assert validator.validate({"gender": "female"}, profile).ok
        assert validator.validate({"gender": "f"}, profile).errors == [
            "Patient.gender has invalid code 'f' from "
            f"{VALUE_SET_URL}administrative-gender"
        ]

    def test_unknown_value_set_falls_back_to_short_description(
        self, validator: StructureValidator
    ) -> None:
        """Warns about the value set and checks the listed codes."""
        profile = self.gender_profile(
            "http://example.org/ValueSet/gender", short="male | female"
        )

        finding = validator.validate({"gender": "other"}, profile)

        assert finding.warnings == [
            "Patient.gender has unknown ValueSet: 'http://example.org/ValueSet/gender'"
        ]
        assert finding.errors == [
            "Patient.gender has invalid code 'other' (expected one of: male, female)"
        ]

    def test_extensible_coding_binding_warns(
        self, validator: StructureValidator
    ) -> None:
        """Downgrades missing codings to a warning for extensible bindings."""
        validator.terminology.add_value_set(
            "http://example.org/ValueSet/reasons",
            [("http://snomed.info/sct", "1234")],
        )
        profile = build_profile(
            [
                element("Encounter", 0, None),
                ElementNode(
                    path="Encounter.reasonCode",
                    max=None,
                    types=[TypeRef(code="CodeableConcept")],
                    binding=Binding(
                        strength="extensible",
                        value_set="http://example.org/ValueSet/reasons",
                    ),
                ),
            ],
            url="http://example.org/StructureDefinition/encounter",
        )
        good = {"system": "http://snomed.info/sct", "code": "1234"}
        bad = {"system": "http://loinc.org", "code": "1234"}

        assert validator.validate(
            {"reasonCode": [{"coding": [good]}]}, profile
        ).warnings == []
        finding = validator.validate({"reasonCode": [{"coding": [bad]}]}, profile)
        assert finding.ok
        assert finding.warnings[0].startswith(
            "Encounter.reasonCode has no codings from "
            "http://example.org/ValueSet/reasons"
        )

    def test_mime_type_binding(self, validator: StructureValidator) -> None:
        """Checks attachment content types against MIME types."""
        profile = build_profile(
            [
                element("Patient", 0, None),
                element("Patient.photo", 0, None, "Attachment"),
            ],
            url="http://example.org/StructureDefinition/photo",
        )

        png = {"photo": [{"contentType": "image/png"}]}
        assert validator.validate(png, profile).ok
        finding = validator.validate({"photo": [{"contentType": "nonsense"}]}, profile)
        assert finding.errors == [
            "Patient.photo: Attachment.contentType has invalid mime type: 'nonsense'"
        ]


class TestExtensionsAndSlices:
    """Tests for extension slices and unchecked slices."""

    profile = build_profile(
        [
            element("Patient", 0, None),
            element("Patient.extension", 0, None, "Extension"),
            ElementNode(
                path="Patient.extension",
                id="Patient.extension:race",
                name="race",
                min=1,
                max=1,
                types=[TypeRef(code="Extension", profile=RACE_URL)],
            ),
            ElementNode(
                path="Patient.identifier",
                id="Patient.identifier:mrn",
                name="mrn",
                min=1,
                max=1,
            ),
        ],
        url="http://example.org/StructureDefinition/raced-patient",
    )

    def test_named_extension_counts_matching_urls(
        self, validator: StructureValidator
    ) -> None:
        """Counts only extensions with the sliced URL."""
        patient = {
            "extension": [
                {"url": "http://example.org/other", "valueString": "x"},
                {"url": RACE_URL, "extension": []},
            ]
        }

        assert validator.validate(patient, self.profile).errors == []

    def test_unnamed_extension_with_profile_filters_by_url(
        self, validator: StructureValidator
    ) -> None:
        """Filters on the profiled URL even when the element has no slice name."""
        profile = build_profile(
            [
                element("Patient", 0, None),
                ElementNode(
                    path="Patient.extension",
                    min=1,
                    max=1,
                    types=[TypeRef(code="Extension", profile=RACE_URL)],
                ),
            ],
            url="http://example.org/StructureDefinition/one-race",
        )
        patient = {
            "extension": [
                {"url": RACE_URL, "extension": []},
                {"url": "http://example.org/other", "valueString": "x"},
            ]
        }

        assert validator.validate(patient, profile).errors == []

    def test_missing_named_extension(self, validator: StructureValidator) -> None:
        """Names the slice in the cardinality error."""
        finding = validator.validate({"extension": []}, self.profile)

        assert finding.errors == [
            "Patient.extension (race) failed cardinality test (1..1) -- found 0"
        ]

    def test_other_slices_are_reported_unchecked(
        self, validator: StructureValidator
    ) -> None:
        """Notes non-extension slices instead of checking them."""
        finding = validator.validate({"extension": [{"url": RACE_URL}]}, self.profile)

        assert finding.information == [
            "Patient.identifier:mrn: slice constraints were not checked"
        ]


class TestDocumentHandling:
    """Tests for malformed input and resource type checks."""

    profile = build_profile(
        [element("Patient", 0, None)],
        url="http://example.org/StructureDefinition/empty",
    )

    def test_unparseable_json(self, validator: StructureValidator) -> None:
        """Reports parse failures instead of raising."""
        finding = validator.validate("{oops", self.profile)

        assert len(finding.errors) == 1
        assert finding.errors[0].startswith("Failed to parse JSON:")

    def test_undecodable_bytes(self, validator: StructureValidator) -> None:
        """Reports bytes that are not UTF-8 as a single parse error."""
        finding = validator.validate(b'{"name": "\xff"}', self.profile)

        assert len(finding.errors) == 1
        assert finding.errors[0].startswith("Failed to parse JSON:")

    def test_non_object_document(self, validator: StructureValidator) -> None:
        """Rejects top-level arrays."""
        assert not validator.validate("[1]", self.profile).ok

    def test_resource_type_mismatch(self, validator: StructureValidator) -> None:
        """Reports a resource of the wrong type."""
        finding = validator.validate({"resourceType": "Observation"}, self.profile)

        assert finding.errors == [
            "Expected resourceType Patient but found Observation"
        ]

    def test_validate_resource_guesses_profile(
        self, validator: StructureValidator
    ) -> None:
        """Uses the declared profile when it is known."""
        validator.definitions.add(self.profile)

        finding = validator.validate_resource(
            {"resourceType": "Patient", "meta": {"profile": [self.profile.url]}}
        )

        assert finding.ok

    def test_validate_resource_without_profile(
        self, validator: StructureValidator
    ) -> None:
        """Warns when nothing is known about the resource type."""
        finding = validator.validate_resource({"resourceType": "Basic"})

        assert finding.ok
        assert finding.warnings == ["No profile found for resource type 'Basic'"]

    @pytest.mark.parametrize(
        "meta",
        [None, "http://example.org/meta", {"profile": None}, {"profile": [1, None]}],
    )
    def test_validate_resource_tolerates_malformed_meta(
        self, validator: StructureValidator, meta: object
    ) -> None:
        """Ignores a meta element that is not shaped like FHIR meta."""
        finding = validator.validate_resource({"resourceType": "Basic", "meta": meta})

        assert finding.ok
        assert finding.warnings == ["No profile found for resource type 'Basic'"]

    def test_validate_resource_accepts_single_profile_string(
        self, validator: StructureValidator
    ) -> None:
        """Treats a string meta.profile as one declared profile."""
        validator.definitions.add(self.profile)

        finding = validator.validate_resource(
            {"resourceType": "Patient", "meta": {"profile": self.profile.url}}
        )

        assert finding.ok

    def test_validate_resource_rejects_non_object(
        self, validator: StructureValidator
    ) -> None:
        """Returns an error for documents that are not JSON objects."""
        finding = validator.validate_resource([{"resourceType": "Patient"}])

        assert finding.errors == ["Expected a JSON object, found list"]


def test_string_longer_than_max_length(validator: StructureValidator) -> None:
    """Reports strings over the element's maximum length."""
    profile = build_profile(
        [
            element("Patient", 0, None),
            ElementNode(
                path="Patient.alias",
                max=1,
                types=[TypeRef(code="string")],
                max_length=5,
            ),
        ],
        url="http://example.org/StructureDefinition/short-alias",
    )

    assert validator.validate({"alias": "Ann"}, profile).errors == []
    assert validator.validate({"alias": "Annabelle"}, profile).errors == [
        "Patient.alias exceeds maximum length of 5"
    ]
