"""SMART standalone launch: authorization redirect and token exchange."""

import base64
from uuid import uuid4

from yarl import URL

from conformance_harness.assertions import (
    TestRun,
    assert_,
    assert_json_object,
    assert_response_ok,
    assert_response_status,
    assert_valid_http_uri,
    fail,
    skip_unless,
)
from conformance_harness.models.outcome import Redirect
from conformance_harness.registry import Registry

LINK = "http://www.hl7.org/fhir/smart-app-launch/"
OAUTH_REDIRECT_FAILED = "Redirect to OAuth server failed"
NO_TOKEN = "No valid token"


def authorization_redirect(run: TestRun) -> Redirect:
    endpoint = run.context.get("oauth_authorize_endpoint")
    skip_unless(endpoint, "No OAuth authorization endpoint is known")
    assert_valid_http_uri(endpoint)
    skip_unless(run.context.get("client_id"), "No client id is configured")

    state = run.callback_key() if run.links is not None else uuid4().hex
    run.context["oauth_state"] = state
    params = {
        "response_type": "code",
        "client_id": run.context["client_id"],
        "redirect_uri": run.context["redirect_uri"],
        "scope": run.context["scopes"],
        "state": state,
        "aud": run.context["url"],
    }
    return Redirect(str(URL(endpoint).update_query(params)), "redirect")


def code_and_state_received(run: TestRun) -> None:
    assert_(run.context.get("state") or run.context.get("error"), OAUTH_REDIRECT_FAILED)
    error = run.context.get("error")
    assert_(
        error is None,
        f"Error returned from authorization server: code {error}, "
        f"description: {run.context.get('error_description')}",
    )
    assert_(
        run.context.get("state") == run.context.get("oauth_state"),
        f"OAuth server state querystring parameter ({run.context.get('state')}) "
        f"did not match state from app {run.context.get('oauth_state')}",
    )
    assert_(run.context.get("code"), "Expected code to be submitted in request")


async def invalid_code_rejected(run: TestRun) -> None:
    skip_unless(run.context.get("code"), OAUTH_REDIRECT_FAILED)
    reply = await run.http.post(
        run.context["oauth_token_endpoint"],
        data={
            "grant_type": "authorization_code",
            "code": "INVALID_CODE",
            "redirect_uri": run.context["redirect_uri"],
            "client_id": run.context["client_id"],
        },
    )
    assert_response_status(reply, [400, 401])


async def token_exchange(run: TestRun) -> None:
    code = run.context.get("code")
    skip_unless(code, OAUTH_REDIRECT_FAILED)

    params = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": run.context["redirect_uri"],
    }
    headers = {}
    client_secret = run.context.get("client_secret")
    if client_secret:
        credentials = f"{run.context['client_id']}:{client_secret}".encode()
        headers["Authorization"] = f"Basic {base64.b64encode(credentials).decode()}"
    else:
        params["client_id"] = run.context["client_id"]

    reply = await run.http.post(
        run.context["oauth_token_endpoint"], data=params, headers=headers
    )
    assert_response_ok(reply)
    run.context["token_response"] = dict(assert_json_object(reply))


def token_response_contents(run: TestRun) -> None:
    body = run.context.get("token_response")
    assert_(body, NO_TOKEN)

    assert_(
        "access_token" in body,
        "Token response did not contain access_token as required",
    )
    run.context["token"] = body["access_token"]
    if "refresh_token" in body:
        run.context["refresh_token"] = body["refresh_token"]
    if "patient" in body:
        run.context["patient_id"] = body["patient"]

    for key in ("token_type", "scope"):
        assert_(key in body, f"Token response did not contain {key} as required")
    if str(body["token_type"]).lower() != "bearer":
        fail("Token type must be Bearer.")

    with run.warning():
        expected = set(run.context["scopes"].split())
        missing = sorted(expected - set(str(body["scope"]).split()))
        assert_(
            not missing,
            f"Token exchange response did not include expected scopes: {missing}",
        )
    with run.warning():
        assert_("patient" in body, "No patient id provided in token exchange.")


def register_standalone_launch(registry: Registry) -> None:
    sequence = registry.sequence(
        "StandaloneLaunch",
        title="Standalone Launch Sequence",
        description="Demonstrate the SMART Standalone Launch Sequence.",
        test_id_prefix="SLS",
        requires=[
            "url",
            "client_id",
            "client_secret",
            "scopes",
            "redirect_uri",
            "oauth_authorize_endpoint",
            "oauth_token_endpoint",
        ],
        defines=[
            "oauth_state",
            "state",
            "code",
            "error",
            "error_description",
            "token_response",
            "token",
            "refresh_token",
            "patient_id",
        ],
    )
    sequence.test(
        "OAuth server redirects client browser to app redirect URI", link=LINK
    )(authorization_redirect)
    sequence.test(
        "Client app receives code parameter and correct state parameter from "
        "OAuth server at redirect URI",
        link=LINK,
    )(code_and_state_received)
    sequence.test(
        "OAuth token exchange fails when supplied invalid code",
        link="https://tools.ietf.org/html/rfc6749",
    )(invalid_code_rejected)
    sequence.test(
        "OAuth token exchange request succeeds when supplied correct information",
        link=LINK,
    )(token_exchange)
    sequence.test(
        "Data returned from token exchange contains required information encoded "
        "in JSON",
        link=LINK,
    )(token_response_contents)
