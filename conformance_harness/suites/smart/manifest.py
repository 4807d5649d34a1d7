"""SMART App Launch suite manifest."""

from conformance_harness.models.definition import TestCase, TestGroup, TestSet
from conformance_harness.registry import Registry
from conformance_harness.suites.manifest import SuiteManifest
from conformance_harness.suites.smart.discovery import register_discovery
from conformance_harness.suites.smart.launch import register_standalone_launch
from conformance_harness.suites.smart.patient import register_patient_read

CONTEXT_KEYS = (
    "url",
    "fhir_version",
    "client_id",
    "client_secret",
    "scopes",
    "redirect_uri",
    "oauth_authorize_endpoint",
    "oauth_token_endpoint",
    "smart_configuration",
    "capability_statement",
    "oauth_state",
    "state",
    "code",
    "error",
    "error_description",
    "token_response",
    "token",
    "refresh_token",
    "patient_id",
    "patient",
)


def build_registry() -> Registry:
    registry = Registry(context_keys=CONTEXT_KEYS)
    register_discovery(registry)
    register_standalone_launch(registry)
    register_patient_read(registry)
    return registry


smart_manifest = SuiteManifest(
    key="smart",
    title="SMART App Launch",
    registry_factory=build_registry,
    test_sets=[
        TestSet(
            id="smart",
            groups=[
                TestGroup(
                    id="discovery",
                    name="Discovery",
                    test_cases=[TestCase(id="smart-01", sequence="SMARTDiscovery")],
                    lock_variables=["url"],
                ),
                TestGroup(
                    id="standalone-launch",
                    name="Standalone Patient App",
                    test_cases=[
                        TestCase(id="smart-02", sequence="StandaloneLaunch"),
                        TestCase(id="smart-03", sequence="PatientRead"),
                    ],
                    lock_variables=["client_id", "redirect_uri", "scopes"],
                ),
            ],
        )
    ],
)
