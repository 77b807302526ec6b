import asyncio
import json
import urllib.parse

import httpx

from auth import keycloak
from auth.keycloak import KeycloakClient, OAuth2RequestError, OidcTokens, ProviderFetchError
from sessiongate.constants import challenge_key, session_key
from tests.oidc_helpers import (
    ISSUER,
    build_harness,
    callback,
    default_tokens,
    make_jwt,
    run,
    start_signin,
    stub_provider,
)


def _authenticate_directly(harness, session_id: str) -> None:
    tokens = default_tokens()
    identity = {
        "authenticated": True,
        "validation_errors": [],
        "access_token_raw": tokens.access_token,
        "access_token_expires_at": tokens.expires_at,
        "access_token_expires_in_seconds": tokens.expires_in,
        "refresh_token_raw": tokens.refresh_token,
        "id_token_raw": tokens.id_token,
        "token_type": tokens.token_type,
        "scopes": tokens.scopes,
        "session_state": "kc-session-1",
        "access_token": {"sub": "user-1"},
        "refresh_token": {"sub": "user-1"},
        "id_token": {"sub": "user-1"},
    }
    run(harness.store.set_multiple(session_key(session_id), ["identity", json.dumps(identity)]))


def test_anonymous_request_passes_through_without_auto_challenge() -> None:
    harness = build_harness()
    harness.establish_session()

    response = harness.client.get("/reports", follow_redirects=False)

    assert response.status_code == 200
    assert harness.downstream_calls == ["/reports"]


def test_auto_challenge_redirects_to_signin_endpoint() -> None:
    harness = build_harness(challenge={"signin": True})
    harness.establish_session()

    response = harness.client.get("/reports?page=2", follow_redirects=False)

    assert response.status_code == 307
    location = urllib.parse.urlparse(response.headers["location"])
    assert location.path == "/.oidc/signin"
    query = urllib.parse.parse_qs(location.query)
    assert query["redirect_uri"] == ["http://testserver/reports?page=2"]
    assert harness.downstream_calls == []


def test_auto_challenge_leaves_flow_pages_alone() -> None:
    harness = build_harness(challenge={"signin": True})
    harness.establish_session()

    for path in ("/account/signin", "/account/signout", "/.oidc/signout", "/.oidc/signout/callback"):
        assert harness.client.get(path, follow_redirects=False).status_code == 200

    assert harness.downstream_calls == [
        "/account/signin",
        "/account/signout",
        "/.oidc/signout",
        "/.oidc/signout/callback",
    ]


def test_authenticated_session_passes_through_with_auto_challenge() -> None:
    harness = build_harness(challenge={"signin": True})
    session_id = harness.establish_session()
    _authenticate_directly(harness, session_id)

    response = harness.client.get("/reports", follow_redirects=False)

    assert response.status_code == 200
    assert harness.downstream_calls == ["/reports"]


def test_signin_redirects_to_provider_with_pkce() -> None:
    harness = build_harness()
    harness.establish_session()

    started = start_signin(harness, redirect_uri="http://testserver/dashboard")

    assert started["location"].startswith(f"{ISSUER}/protocol/openid-connect/auth?")
    query = started["query"]
    assert query["client_id"] == ["web"]
    assert query["response_type"] == ["code"]
    assert query["code_challenge_method"] == ["S256"]
    assert query["scope"] == ["openid profile"]

    stored = harness.stored_challenge(started["challenge_id"])
    assert stored["state"] == started["state"]
    assert stored["scopes"] == ["openid", "profile"]
    assert stored["original_redirect_uri"] == "http://testserver/dashboard"
    assert stored["redirect_uri"] == started["callback_url"]
    assert query["code_challenge"] == [keycloak.generate_code_challenge(stored["code_verifier"])]


def test_signin_example_scenario_defaults_to_site_origin() -> None:
    harness = build_harness(size=128, expire_in=300)
    harness.establish_session()

    started = start_signin(harness)

    callback_url = urllib.parse.urlparse(started["callback_url"])
    assert callback_url.path == "/.oidc/signin/callback"
    assert len(started["challenge_id"]) >= 32
    assert f"challenge={started['challenge_id']}" in started["callback_url"]
    stored = harness.stored_challenge(started["challenge_id"])
    assert stored["original_redirect_uri"] == "http://testserver/"


def test_signin_sets_challenge_ttl() -> None:
    harness = build_harness(challenge_expire_in=120)
    harness.establish_session()

    started = start_signin(harness)

    assert challenge_key(started["challenge_id"]) in harness.store._expires_at


def test_signin_ignores_foreign_redirect_uri() -> None:
    harness = build_harness()
    harness.establish_session()

    started = start_signin(harness, redirect_uri="https://evil.example/steal")

    stored = harness.stored_challenge(started["challenge_id"])
    assert stored["original_redirect_uri"] == "http://testserver/"


def test_signin_is_idempotent_for_authenticated_session() -> None:
    harness = build_harness()
    session_id = harness.establish_session()
    _authenticate_directly(harness, session_id)

    first = harness.client.get("/.oidc/signin", follow_redirects=False)
    second = harness.client.get("/.oidc/signin", follow_redirects=False)

    assert first.status_code == 200
    assert second.status_code == 200
    assert harness.challenge_keys() == []


def test_signin_round_trip_authenticates_session() -> None:
    calls = []
    harness = build_harness(identity_provider=stub_provider(calls=calls))
    session_id = harness.establish_session()
    started = start_signin(harness, redirect_uri="http://testserver/dashboard")
    code_verifier = harness.stored_challenge(started["challenge_id"])["code_verifier"]

    response = callback(harness, started)

    assert response.status_code == 307
    assert response.headers["location"] == "http://testserver/dashboard"
    assert calls == [
        {
            "code": "auth-code-1",
            "code_verifier": code_verifier,
            "redirect_uri": started["callback_url"],
        }
    ]

    identity = harness.stored_identity(session_id)
    assert identity["authenticated"] is True
    assert identity["validation_errors"] == []
    assert identity["session_state"] == "kc-session-1"
    assert identity["id_token"]["preferred_username"] == "ada"
    assert identity["refresh_token"]["typ"] == "Refresh"
    assert identity["scopes"] == ["openid", "profile"]
    assert harness.challenge_keys() == []

    follow_up = harness.client.get("/dashboard", follow_redirects=False)
    assert follow_up.status_code == 200


def test_callback_replay_from_other_session_is_invalid_challenge() -> None:
    harness = build_harness()
    harness.establish_session()
    started = start_signin(harness)
    assert callback(harness, started).status_code == 307

    harness.client.cookies.clear()
    harness.establish_session()
    replay = callback(harness, started)

    assert replay.status_code == 400
    assert replay.json() == {"error": "invalid_challenge"}


def test_callback_unknown_challenge() -> None:
    harness = build_harness()
    harness.establish_session()

    response = harness.client.get(
        "/.oidc/signin/callback",
        params={"challenge": "missing", "state": "s", "iss": ISSUER, "code": "c"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "invalid_challenge"}


def test_callback_without_challenge_parameter() -> None:
    harness = build_harness()
    harness.establish_session()
    started = start_signin(harness)

    response = callback(harness, started, challenge=None)

    assert response.json() == {"error": "invalid_challenge"}
    assert harness.stored_challenge(started["challenge_id"]) is not None


def test_callback_state_mismatch_consumes_challenge() -> None:
    calls = []
    harness = build_harness(identity_provider=stub_provider(calls=calls))
    harness.establish_session()
    started = start_signin(harness)

    response = callback(harness, started, state="forged")

    assert response.status_code == 400
    assert response.json() == {"error": "invalid_callback"}
    assert harness.stored_challenge(started["challenge_id"]) is None
    assert calls == []

    replay = callback(harness, started)
    assert replay.json() == {"error": "invalid_challenge"}


def test_callback_issuer_mismatch_consumes_challenge() -> None:
    harness = build_harness()
    harness.establish_session()
    started = start_signin(harness)

    response = callback(harness, started, iss="https://other.example/realms/x")

    assert response.json() == {"error": "invalid_callback"}
    assert harness.stored_challenge(started["challenge_id"]) is None


def test_callback_logs_every_validation_error(caplog) -> None:
    harness = build_harness()
    harness.establish_session()
    started = start_signin(harness)

    with caplog.at_level("WARNING", logger="sessiongate"):
        callback(harness, started, state="forged", iss=None)

    assert "State mismatched" in caplog.text
    assert "Issuer mismatched" in caplog.text


def test_callback_protocol_error_deauthenticates_session() -> None:
    harness = build_harness(
        identity_provider=stub_provider(error=OAuth2RequestError("invalid_grant", "Code not valid"))
    )
    session_id = harness.establish_session()
    started = start_signin(harness)

    response = callback(harness, started)

    assert response.status_code == 400
    assert response.content == b""
    assert harness.stored_identity(session_id) is None
    assert harness.stored_challenge(started["challenge_id"]) is None


def test_callback_transport_error_gets_same_response() -> None:
    harness = build_harness(
        identity_provider=stub_provider(error=ProviderFetchError("connection refused"))
    )
    session_id = harness.establish_session()
    started = start_signin(harness)

    response = callback(harness, started)

    assert response.status_code == 400
    assert response.content == b""
    assert harness.stored_identity(session_id) is None


def test_callback_undecodable_token_is_exchange_failure() -> None:
    tokens = default_tokens()
    tokens.id_token = "not-a-jwt"
    harness = build_harness(identity_provider=stub_provider(tokens=tokens))
    session_id = harness.establish_session()
    started = start_signin(harness)

    response = callback(harness, started)

    assert response.status_code == 400
    assert harness.stored_identity(session_id) is None


def test_callback_without_code_skips_provider() -> None:
    calls = []
    harness = build_harness(identity_provider=stub_provider(calls=calls))
    session_id = harness.establish_session()
    started = start_signin(harness)

    response = callback(harness, started, code=None)

    assert response.status_code == 400
    assert calls == []
    assert harness.stored_identity(session_id) is None
    assert harness.stored_challenge(started["challenge_id"]) is None


def test_callback_without_refresh_token() -> None:
    tokens = default_tokens()
    tokens.refresh_token = None
    harness = build_harness(identity_provider=stub_provider(tokens=tokens))
    session_id = harness.establish_session()
    started = start_signin(harness)

    response = callback(harness, started)

    assert response.status_code == 307
    identity = harness.stored_identity(session_id)
    assert identity["refresh_token_raw"] is None
    assert identity["refresh_token"] is None


def test_expired_access_token_claims_are_still_decoded() -> None:
    tokens = default_tokens()
    tokens.access_token = make_jwt({"sub": "user-1", "exp": 1})
    harness = build_harness(identity_provider=stub_provider(tokens=tokens))
    session_id = harness.establish_session()
    started = start_signin(harness)

    assert callback(harness, started).status_code == 307
    assert harness.stored_identity(session_id)["access_token"]["exp"] == 1


class _SlowKeycloakClient(KeycloakClient):
    async def validate_authorization_code(self, code: str, code_verifier: str) -> OidcTokens:
        await asyncio.sleep(0.05)
        return default_tokens()


def test_concurrent_callbacks_consume_challenge_once() -> None:
    harness = build_harness(identity_provider=_SlowKeycloakClient)
    session_id = harness.establish_session()
    started = start_signin(harness)
    params = {
        "challenge": started["challenge_id"],
        "state": started["state"],
        "iss": ISSUER,
        "code": "auth-code-1",
    }

    async def send_twice():
        transport = httpx.ASGITransport(app=harness.app)
        headers = {"cookie": f"{harness.cookie_name}={session_id}"}
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            return await asyncio.gather(
                client.get("/.oidc/signin/callback", params=params, headers=headers),
                client.get("/.oidc/signin/callback", params=params, headers=headers),
            )

    responses = run(send_twice())

    assert sorted(response.status_code for response in responses) == [307, 400]
    rejected = next(response for response in responses if response.status_code == 400)
    assert rejected.json() == {"error": "invalid_challenge"}
    assert harness.stored_identity(session_id)["authenticated"] is True
