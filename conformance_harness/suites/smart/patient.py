"""Read of the authorized patient, checked against the base Patient profile."""

from conformance_harness.assertions import (
    TestRun,
    assert_,
    assert_conforms,
    assert_json_object,
    assert_response_ok,
    assert_response_status,
    skip_unless,
)
from conformance_harness.registry import Registry
from conformance_harness.validation.definitions import (
    BASE_URL,
    VALUE_SET_URL,
    Definitions,
)
from conformance_harness.validation.profile import (
    Binding,
    ElementNode,
    TypeRef,
    build_profile,
)
from conformance_harness.validation.validator import StructureValidator


def _element(path: str, low: int, high: int | None, *codes: str) -> ElementNode:
    return ElementNode(
        path=path, min=low, max=high, types=[TypeRef(code=code) for code in codes]
    )


PATIENT_PROFILE = build_profile(
    [
        ElementNode(path="Patient"),
        _element("Patient.id", 0, 1, "id"),
        _element("Patient.meta", 0, 1, "Meta"),
        _element("Patient.text", 0, 1, "Narrative"),
        _element("Patient.extension", 0, None, "Extension"),
        _element("Patient.identifier", 0, None, "Identifier"),
        _element("Patient.active", 0, 1, "boolean"),
        _element("Patient.name", 0, None, "HumanName"),
        _element("Patient.telecom", 0, None, "ContactPoint"),
        ElementNode(
            path="Patient.gender",
            max=1,
            types=[TypeRef(code="code")],
            binding=Binding(
                strength="required", value_set=VALUE_SET_URL + "administrative-gender"
            ),
            short="male | female | other | unknown",
        ),
        _element("Patient.birthDate", 0, 1, "date"),
        _element("Patient.deceased[x]", 0, 1, "boolean", "dateTime"),
        _element("Patient.address", 0, None, "Address"),
        _element("Patient.multipleBirth[x]", 0, 1, "boolean", "integer"),
        _element("Patient.photo", 0, None, "Attachment"),
        _element("Patient.generalPractitioner", 0, None, "Reference"),
        _element("Patient.managingOrganization", 0, 1, "Reference"),
    ],
    url=BASE_URL + "Patient",
)


def patient_validator() -> StructureValidator:
    definitions = Definitions.with_base_types()
    definitions.add(PATIENT_PROFILE, base=True)
    return StructureValidator(definitions=definitions)


async def read_patient(run: TestRun) -> None:
    patient_id = run.context.get("patient_id")
    skip_unless(patient_id, "No patient id was provided during the launch")
    token = run.context.get("token")
    skip_unless(token, "No access token is available")

    reply = await run.http.get(
        f"{run.context['url'].rstrip('/')}/Patient/{patient_id}",
        headers={
            "Authorization": f"Bearer {token}",
            "Accept": "application/fhir+json",
        },
    )
    assert_response_ok(reply)
    patient = assert_json_object(reply)
    assert_(
        patient.get("resourceType") == "Patient",
        f"Expected a Patient, found {patient.get('resourceType')}",
    )
    assert_(
        patient.get("id") == patient_id,
        f"Expected Patient/{patient_id}, found Patient/{patient.get('id')}",
    )
    run.context["patient"] = dict(patient)


def patient_conforms(run: TestRun) -> None:
    patient = run.context.get("patient")
    skip_unless(patient, "No Patient resource was read")
    assert_conforms(run, patient, PATIENT_PROFILE, patient_validator())


async def read_requires_authorization(run: TestRun) -> None:
    patient_id = run.context.get("patient_id")
    skip_unless(patient_id, "No patient id was provided during the launch")
    reply = await run.http.get(
        f"{run.context['url'].rstrip('/')}/Patient/{patient_id}",
        headers={"Accept": "application/fhir+json"},
    )
    assert_response_status(reply, 401)


def register_patient_read(registry: Registry) -> None:
    sequence = registry.sequence(
        "PatientRead",
        title="Patient Read",
        description="Read the patient in context and check it against its profile.",
        test_id_prefix="PR",
        requires=["url", "token", "patient_id"],
        defines=["patient"],
    )
    link = "http://hl7.org/fhir/R4/patient.html"
    sequence.test(
        "Server returns Patient resource for the authorized patient", link=link
    )(read_patient)
    sequence.test("Patient resource conforms to the Patient profile", link=link)(
        patient_conforms
    )
    sequence.test(
        "Server rejects Patient read without authorization",
        link="http://hl7.org/fhir/smart-app-launch/",
        required=False,
    )(read_requires_authorization)
