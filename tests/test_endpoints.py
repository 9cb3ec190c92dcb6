"""Integration tests for the HTTP surface."""
import json
from urllib.parse import parse_qs, urlparse

import jwt as pyjwt
import pytest
from fastapi.testclient import TestClient

from signal_auth.keystore import KeyStore
from signal_auth.main import create_app

from conftest import pkce_challenge

VERIFIER = "end-to-end-verifier-0123456789"
REDIRECT = "https://app.example.test/callback"


@pytest.fixture
def client(settings, channel):
    return TestClient(create_app(settings, channel=channel), raise_server_exceptions=False)


def _authorize(client, scope=None, state="s1", **overrides):
    params = {
        "response_type": "code",
        "client_id": "demo",
        "redirect_uri": REDIRECT,
        "scope": json.dumps(scope or {"signal_username": "alice.12"}),
        "state": state,
        "code_challenge": pkce_challenge(VERIFIER),
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return client.get("/authorize", params=params)


def _verify(client, code, identifier="alice.12", state="s1"):
    return client.post(
        "/verify-challenge",
        data={"identifier": identifier, "state": state, "challenge_code": code},
        follow_redirects=False,
    )


def _token(client, code, verifier=VERIFIER, **overrides):
    body = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT,
        "client_id": "demo",
        "code_verifier": verifier,
    }
    body.update(overrides)
    return client.post("/oauth/token", data=body)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def test_jwks_serves_public_keys_only(settings, channel):
    keys = KeyStore()
    for _ in range(3):
        keys.generate_key_pair()
    client = TestClient(create_app(settings, channel=channel, keys=keys))

    resp = client.get("/.well-known/jwks.json")
    assert resp.status_code == 200
    jwks = resp.json()["keys"]
    assert len(jwks) == 3
    for jwk in jwks:
        assert "d" not in jwk
        assert jwk["kty"] == "EC"


def test_app_boots_with_one_key(client):
    assert len(client.get("/.well-known/jwks.json").json()["keys"]) == 1
    assert client.get("/healthz").json() == {"ok": True, "keys": 1}


def test_openid_configuration(client):
    doc = client.get("/.well-known/openid-configuration").json()
    assert doc["issuer"] == "https://auth.example.test"
    assert doc["authorization_endpoint"] == "https://auth.example.test/authorize"
    assert doc["token_endpoint"] == "https://auth.example.test/oauth/token"
    assert doc["userinfo_endpoint"] == "https://api.example.test/userinfo"
    assert doc["jwks_uri"] == "https://auth.example.test/.well-known/jwks.json"
    assert doc["claims_supported"] == ["sub", "signal_username", "phone"]
    assert doc["response_types_supported"] == ["code"]
    assert doc["grant_types_supported"] == ["authorization_code", "refresh_token"]


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

def test_full_flow(client, channel):
    resp = _authorize(client, scope={"signal_username": "alice.12"})
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert 'name="challenge_code"' in resp.text
    assert 'value="alice.12"' in resp.text

    resp = _verify(client, channel.last_code_for("alice.12"))
    assert resp.status_code == 302
    location = urlparse(resp.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == REDIRECT
    query = parse_qs(location.query)
    assert query["state"] == ["s1"]
    code = query["code"][0]

    resp = _token(client, code)
    assert resp.status_code == 200
    body = resp.json()
    assert body["signalUser"]["identifier"] == "alice.12"
    assert body["maxAge"] == 4 * 3600 * 1000
    assert body["redirectTo"] == REDIRECT

    cookie = resp.headers["set-cookie"]
    assert cookie.startswith("demo_at=")
    assert "HttpOnly" in cookie
    assert "Secure" in cookie
    assert "samesite=lax" in cookie.lower()
    assert "Max-Age=14400" in cookie

    token = cookie.split(";", 1)[0].split("=", 1)[1]
    claims = pyjwt.decode(
        token,
        client.app.state.keys.public_key(pyjwt.get_unverified_header(token)["kid"]),
        algorithms=["ES256"],
        audience="https://api.example.test",
        issuer="https://auth.example.test",
    )
    assert claims["sub"] == "alice.12"
    assert claims["signal_username"] == "alice.12"

    # single use
    assert _token(client, code).status_code == 404


def test_json_bodies_are_accepted(client, channel):
    _authorize(client, scope={"phone": "+12223334444"})
    resp = client.post(
        "/verify-challenge",
        json={"identifier": "+12223334444", "state": "s1", "challenge_code": channel.last_code_for("+12223334444")},
        follow_redirects=False,
    )
    assert resp.status_code == 302
    code = parse_qs(urlparse(resp.headers["location"]).query)["code"][0]

    resp = client.post(
        "/oauth/token",
        json={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT,
            "client_id": "demo",
            "code_verifier": VERIFIER,
        },
    )
    assert resp.status_code == 200
    assert resp.json()["signalUser"] == {"identifier": "+12223334444", "phone": "+12223334444"}


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "overrides",
    [{"response_type": "token"}, {"code_challenge_method": "plain"}],
)
def test_authorize_bad_oauth_params(client, overrides):
    resp = _authorize(client, **overrides)
    assert resp.status_code == 400
    assert resp.json()["safeError"] is True


def test_authorize_bad_identity_is_400_without_echo(client):
    resp = _authorize(client, scope={"signal_username": "<b>bad</b>"})
    assert resp.status_code == 400
    assert "<b>bad</b>" not in resp.text


def test_authorize_replay_is_400(client, channel):
    assert _authorize(client).status_code == 200
    assert _authorize(client).status_code == 400
    assert len(channel.sent) == 1


def test_authorize_delivery_failure_is_502(client, channel):
    channel.fail = True
    resp = _authorize(client)
    assert resp.status_code == 502
    assert "unreachable" not in resp.text


def test_form_escapes_state(client):
    resp = _authorize(client, state='"><script>x</script>')
    assert resp.status_code == 200
    assert "<script>x</script>" not in resp.text


def test_wrong_challenge_then_right(client, channel):
    _authorize(client)
    real = channel.last_code_for("alice.12")
    wrong = "0" * 6 if real != "0" * 6 else "1" * 6

    assert _verify(client, wrong).status_code == 400
    assert _verify(client, real).status_code == 302


def test_token_pkce_mismatch_is_400(client, channel):
    _authorize(client)
    code = parse_qs(urlparse(_verify(client, channel.last_code_for("alice.12")).headers["location"]).query)["code"][0]
    resp = _token(client, code, verifier="not-the-verifier")
    assert resp.status_code == 400
    assert resp.json()["message"] == "code_challenge did not match code_verifier"
    assert "set-cookie" not in resp.headers


def test_token_bad_grant_type_is_400(client):
    assert _token(client, "abc", grant_type="password").status_code == 400


def test_token_unknown_code_is_404(client):
    assert _token(client, "abc").status_code == 404


def test_unexpected_fault_is_bare_500(client, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(client.app.state.flow.sessions, "resolve_pointer", boom)
    resp = _token(client, "abc")
    assert resp.status_code == 500
    assert "secret internals" not in resp.text


def test_revoke_is_accepted(client):
    assert client.post("/revoke").status_code == 200


def test_authorize_rejects_client_id_unfit_for_cookie(client, channel):
    resp = _authorize(client, client_id="my client")
    assert resp.status_code == 400
    assert channel.sent == []


def test_token_with_illegal_client_id_is_400_and_keeps_code(client, channel):
    _authorize(client)
    code = parse_qs(urlparse(_verify(client, channel.last_code_for("alice.12")).headers["location"]).query)["code"][0]

    resp = _token(client, code, client_id="my client")
    assert resp.status_code == 400
    assert "set-cookie" not in resp.headers

    resp = _token(client, code)
    assert resp.status_code == 200
    assert "demo_at=" in resp.headers["set-cookie"]


def test_expired_challenge_is_400(client, channel):
    _authorize(client)
    client.app.state.flow.sessions.get("alice.12::s1").expires_at = 0
    assert _verify(client, channel.last_code_for("alice.12")).status_code == 400
