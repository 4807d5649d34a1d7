"""SMART on FHIR discovery: well-known configuration and CapabilityStatement."""

from collections.abc import Mapping
from typing import Any

from conformance_harness.assertions import (
    TestRun,
    assert_,
    assert_json_object,
    assert_response_content_type,
    assert_response_ok,
    assert_valid_http_uri,
    skip_unless,
)
from conformance_harness.registry import Registry

SMART_OAUTH_EXTENSION_URL = (
    "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris"
)

REQUIRED_WELL_KNOWN_FIELDS = (
    "authorization_endpoint",
    "token_endpoint",
    "capabilities",
)
RECOMMENDED_WELL_KNOWN_FIELDS = (
    "scopes_supported",
    "response_types_supported",
    "management_endpoint",
    "introspection_endpoint",
    "revocation_endpoint",
)
OAUTH_ENDPOINTS = {"authorize": "authorization", "token": "token"}


async def retrieve_well_known(run: TestRun) -> None:
    url = run.context["url"].rstrip("/") + "/.well-known/smart-configuration"
    reply = await run.http.get(url, headers={"Accept": "application/json"})
    assert_response_ok(reply)
    assert_response_content_type(reply, "application/json")
    configuration = assert_json_object(reply)

    run.context["smart_configuration"] = dict(configuration)
    run.context["oauth_authorize_endpoint"] = configuration.get(
        "authorization_endpoint"
    )
    run.context["oauth_token_endpoint"] = configuration.get("token_endpoint")


def well_known_required_fields(run: TestRun) -> None:
    configuration = run.context.get("smart_configuration")
    skip_unless(configuration, "No well-known configuration was retrieved")
    missing = [
        field for field in REQUIRED_WELL_KNOWN_FIELDS if field not in configuration
    ]
    assert_(
        not missing,
        f"The following required fields are missing: {', '.join(missing)}",
    )


def well_known_recommended_fields(run: TestRun) -> None:
    configuration = run.context.get("smart_configuration")
    skip_unless(configuration, "No well-known configuration was retrieved")
    missing = [
        field for field in RECOMMENDED_WELL_KNOWN_FIELDS if field not in configuration
    ]
    assert_(
        not missing,
        f"The following recommended fields are missing: {', '.join(missing)}",
    )


def oauth_uris(capability: Mapping[str, Any]) -> dict[str, str]:
    """Endpoint URLs from the SMART oauth-uris extension of the first rest entry."""
    rest = capability.get("rest") or [{}]
    security = rest[0].get("security", {})
    for extension in security.get("extension", []):
        if extension.get("url") == SMART_OAUTH_EXTENSION_URL:
            return {
                inner["url"]: inner.get("valueUri")
                for inner in extension.get("extension", [])
                if "url" in inner
            }
    return {}


def security_services(capability: Mapping[str, Any]) -> list[str]:
    return [
        coding.get("code")
        for rest in capability.get("rest", [])
        for service in rest.get("security", {}).get("service", [])
        for coding in service.get("coding", [])
    ]


async def capability_statement_endpoints(run: TestRun) -> None:
    url = run.context["url"].rstrip("/") + "/metadata"
    reply = await run.http.get(url, headers={"Accept": "application/fhir+json"})
    assert_response_ok(reply)
    capability = assert_json_object(reply)
    assert_(
        capability.get("resourceType") == "CapabilityStatement",
        f"Expected a CapabilityStatement, found {capability.get('resourceType')}",
    )
    run.context["capability_statement"] = dict(capability)

    endpoints = oauth_uris(capability)
    assert_(endpoints, "No OAuth Metadata in CapabilityStatement resource")
    for key, description in OAUTH_ENDPOINTS.items():
        endpoint = endpoints.get(key)
        assert_(
            endpoint,
            f"No {description} URI provided in CapabilityStatement resource",
        )
        assert_valid_http_uri(endpoint, f"Invalid {description} url: '{endpoint}'")

    with run.warning():
        services = security_services(capability)
        assert_(
            "SMART-on-FHIR" in services,
            "CapabilityStatement.rest.security.service should contain 'SMART-on-FHIR'",
        )

    if "oauth_authorize_endpoint" not in run.context:
        run.context["oauth_authorize_endpoint"] = endpoints["authorize"]
    if "oauth_token_endpoint" not in run.context:
        run.context["oauth_token_endpoint"] = endpoints["token"]


def endpoints_consistent(run: TestRun) -> None:
    configuration = run.context.get("smart_configuration")
    capability = run.context.get("capability_statement")
    skip_unless(
        configuration and capability,
        "Both the well-known configuration and the CapabilityStatement are needed",
    )
    endpoints = oauth_uris(capability)
    pairs = (("authorize", "authorization_endpoint"), ("token", "token_endpoint"))
    for key, field in pairs:
        well_known = configuration.get(field)
        conformance = endpoints.get(key)
        assert_(
            well_known == conformance,
            f"The {OAUTH_ENDPOINTS[key]} url is not consistent between the well-known "
            f"configuration ({well_known}) and the CapabilityStatement ({conformance})",
        )


def register_discovery(registry: Registry) -> None:
    sequence = registry.sequence(
        "SMARTDiscovery",
        title="SMART on FHIR Discovery",
        description="Retrieve server's SMART on FHIR configuration",
        test_id_prefix="SD",
        requires=["url"],
        defines=[
            "oauth_authorize_endpoint",
            "oauth_token_endpoint",
            "smart_configuration",
            "capability_statement",
        ],
    )
    link = "http://hl7.org/fhir/smart-app-launch/conformance/index.html"
    sequence.test(
        "Retrieve Configuration from well-known endpoint", link=link
    )(retrieve_well_known)
    sequence.test(
        "Configuration from well-known endpoint contains required fields", link=link
    )(well_known_required_fields)
    sequence.test(
        "Configuration from well-known endpoint contains recommended fields",
        link=link,
        required=False,
    )(well_known_recommended_fields)
    sequence.test(
        "Capability Statement provides OAuth 2.0 endpoints", link=link
    )(capability_statement_endpoints)
    sequence.test(
        "OAuth Endpoints must be the same in the conformance statement and well "
        "known endpoint",
        link=link,
    )(endpoints_consistent)
