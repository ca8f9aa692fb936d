import pytest
import requests

from pulsechat import auth, config
from pulsechat.errors import AuthError, TokenInvalid


def test_password_hash_roundtrip():
    stored = auth.hash_password("secret123")

    assert stored.startswith("pbkdf2_sha256$200000$")
    assert auth.verify_password("secret123", stored) is True
    assert auth.verify_password("wrong-pass", stored) is False
    assert auth.verify_password("secret123", None) is False
    assert auth.verify_password("secret123", "garbage") is False


def test_issued_token_carries_id_and_email():
    token = auth.issue_token("u1", "a@example.com")

    payload = auth.jwt_verify(token)

    assert payload["id"] == "u1"
    assert payload["email"] == "a@example.com"
    assert payload["exp"] > payload["iat"]


def test_expired_token_is_forbidden(monkeypatch):
    token = auth.jwt_sign({"id": "u1", "email": "a@example.com", "iat": 1, "exp": 2})

    with pytest.raises(TokenInvalid) as err:
        auth.jwt_verify(token)

    assert err.value.status_code == 403
    assert err.value.message == "Token expired"


def test_tampered_token_is_forbidden():
    token = auth.issue_token("u1", "a@example.com")
    header, payload, sig = token.split(".")

    with pytest.raises(TokenInvalid):
        auth.jwt_verify(f"{header}.{payload}.{sig[:-2]}xx")
    with pytest.raises(TokenInvalid):
        auth.jwt_verify("not-a-token")


def test_missing_bearer_is_unauthorized():
    with pytest.raises(AuthError) as err:
        auth.get_current_user_id(authorization=None)
    assert err.value.status_code == 401

    with pytest.raises(AuthError) as err:
        auth.get_current_user_id(authorization="Basic abc")
    assert err.value.status_code == 401


def test_bearer_header_resolves_user_id():
    token = auth.issue_token("u1", "a@example.com")

    assert auth.get_current_user_id(authorization=f"Bearer {token}") == "u1"
    assert auth.user_id_from_authorization(f"Bearer {token}") == "u1"
    assert auth.user_id_from_authorization("Bearer broken") is None


class DummyResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


def test_google_token_checked_against_client_id(monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "client-123")
    seen = {}

    def fake_get(url, params=None, timeout=None):
        seen["url"] = url
        seen["params"] = params
        return DummyResponse(200, {"aud": "client-123", "email": "a@example.com", "sub": "g-1", "name": "Alice"})

    monkeypatch.setattr(auth.requests, "get", fake_get)

    claims = auth.verify_google_token("id-token")

    assert claims["sub"] == "g-1"
    assert seen["url"] == config.GOOGLE_TOKENINFO_URL
    assert seen["params"] == {"id_token": "id-token"}


def test_google_token_for_other_audience_is_rejected(monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "client-123")
    monkeypatch.setattr(
        auth.requests, "get",
        lambda *a, **kw: DummyResponse(200, {"aud": "someone-else", "email": "a@example.com", "sub": "g-1"}),
    )

    with pytest.raises(AuthError):
        auth.verify_google_token("id-token")


def test_google_unreachable_is_auth_error(monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "client-123")

    def boom(*_args, **_kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(auth.requests, "get", boom)

    with pytest.raises(AuthError, match="Authentication failed"):
        auth.verify_google_token("id-token")


def test_google_sign_in_disabled_without_client_id(monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "")

    with pytest.raises(AuthError, match="not configured"):
        auth.verify_google_token("id-token")
