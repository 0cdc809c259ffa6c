"""
Tests for the local backend's auth endpoints: authorize form, pkce and refresh_token grants, user, logout.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import jwt

from local_backend.config import JWT_AUDIENCE, JWT_SECRET
from local_backend.database import SessionLocal
from local_backend.models import AuthorizationCode

APIKEY = {"apikey": "test-anon-key"}
REDIRECT_TO = "http://testserver/auth/callback?next=%2F"


def _verifier_and_challenge():
    verifier = secrets.token_urlsafe(32)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return verifier, urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _code(backend_api, email="bob@example.com", full_name="Bob"):
    verifier, challenge = _verifier_and_challenge()
    r = backend_api.post(
        "/auth/v1/authorize",
        data={
            "redirect_to": REDIRECT_TO,
            "code_challenge": challenge,
            "code_challenge_method": "s256",
            "email": email,
            "full_name": full_name,
        },
        follow_redirects=False,
    )
    assert r.status_code == 302
    location = r.headers["location"]
    assert location.startswith("http://testserver/auth/callback?next=%2F&code=")
    return parse_qs(urlsplit(location).query)["code"][0], verifier


def _session(backend_api, **kwargs):
    code, verifier = _code(backend_api, **kwargs)
    r = backend_api.post(
        "/auth/v1/token",
        params={"grant_type": "pkce"},
        json={"auth_code": code, "code_verifier": verifier},
        headers=APIKEY,
    )
    assert r.status_code == 200
    return r.json()


def test_health(backend_api):
    r = backend_api.get("/health")
    assert r.status_code == 200
    assert r.json().get("service") == "local_backend"


def test_authorize_get_renders_form(backend_api):
    _, challenge = _verifier_and_challenge()
    r = backend_api.get(
        "/auth/v1/authorize",
        params={
            "provider": "google",
            "redirect_to": REDIRECT_TO,
            "code_challenge": challenge,
            "code_challenge_method": "s256",
        },
    )
    assert r.status_code == 200
    assert "<form" in r.text
    assert 'name="email"' in r.text


def test_authorize_get_rejects_unlisted_redirect(backend_api):
    _, challenge = _verifier_and_challenge()
    r = backend_api.get(
        "/auth/v1/authorize",
        params={
            "provider": "google",
            "redirect_to": "https://evil.example.org/auth/callback",
            "code_challenge": challenge,
            "code_challenge_method": "s256",
        },
    )
    assert r.status_code == 400


def test_authorize_get_requires_s256_challenge(backend_api):
    r = backend_api.get(
        "/auth/v1/authorize",
        params={"provider": "google", "redirect_to": REDIRECT_TO, "code_challenge": "abc", "code_challenge_method": "plain"},
    )
    assert r.status_code == 400


def test_pkce_grant_returns_session(backend_api):
    data = _session(backend_api, email="Bob@Example.com", full_name="Bob Builder")
    assert data["token_type"] == "bearer"
    assert data["refresh_token"]
    assert data["expires_at"] > datetime.now(timezone.utc).timestamp()
    assert data["user"]["email"] == "bob@example.com"
    assert data["user"]["user_metadata"]["full_name"] == "Bob Builder"
    claims = jwt.decode(data["access_token"], JWT_SECRET, algorithms=["HS256"], audience=JWT_AUDIENCE)
    assert claims["sub"] == data["user"]["id"]


def test_same_email_signs_into_same_user(backend_api):
    first = _session(backend_api, email="carol@example.com")
    second = _session(backend_api, email="CAROL@example.com")
    assert first["user"]["id"] == second["user"]["id"]


def test_pkce_grant_code_is_single_use(backend_api):
    code, verifier = _code(backend_api)
    body = {"auth_code": code, "code_verifier": verifier}
    assert backend_api.post("/auth/v1/token", params={"grant_type": "pkce"}, json=body, headers=APIKEY).status_code == 200
    r = backend_api.post("/auth/v1/token", params={"grant_type": "pkce"}, json=body, headers=APIKEY)
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"


def test_pkce_grant_wrong_verifier(backend_api):
    code, _ = _code(backend_api)
    r = backend_api.post(
        "/auth/v1/token",
        params={"grant_type": "pkce"},
        json={"auth_code": code, "code_verifier": secrets.token_urlsafe(32)},
        headers=APIKEY,
    )
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"


def test_pkce_grant_expired_code(backend_api):
    code, verifier = _code(backend_api)
    db = SessionLocal()
    try:
        row = db.query(AuthorizationCode).filter(AuthorizationCode.code == code).first()
        row.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        db.commit()
    finally:
        db.close()
    r = backend_api.post(
        "/auth/v1/token",
        params={"grant_type": "pkce"},
        json={"auth_code": code, "code_verifier": verifier},
        headers=APIKEY,
    )
    assert r.status_code == 400
    assert r.json()["error_description"] == "Authorization code expired"


def test_pkce_grant_missing_fields(backend_api):
    r = backend_api.post("/auth/v1/token", params={"grant_type": "pkce"}, json={}, headers=APIKEY)
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_unsupported_grant_type(backend_api):
    r = backend_api.post("/auth/v1/token", params={"grant_type": "password"}, json={}, headers=APIKEY)
    assert r.status_code == 400
    assert r.json()["error"] == "unsupported_grant_type"


def test_token_requires_apikey(backend_api):
    r = backend_api.post("/auth/v1/token", params={"grant_type": "pkce"}, json={})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid API key"


def test_refresh_rotates_and_revokes_old_token(backend_api):
    session = _session(backend_api)
    r = backend_api.post(
        "/auth/v1/token",
        params={"grant_type": "refresh_token"},
        json={"refresh_token": session["refresh_token"]},
        headers=APIKEY,
    )
    assert r.status_code == 200
    rotated = r.json()
    assert rotated["refresh_token"] != session["refresh_token"]
    assert rotated["user"]["id"] == session["user"]["id"]

    reused = backend_api.post(
        "/auth/v1/token",
        params={"grant_type": "refresh_token"},
        json={"refresh_token": session["refresh_token"]},
        headers=APIKEY,
    )
    assert reused.status_code == 400
    assert reused.json()["error_description"] == "Invalid Refresh Token: Already Used"


def test_refresh_unknown_token(backend_api):
    r = backend_api.post(
        "/auth/v1/token",
        params={"grant_type": "refresh_token"},
        json={"refresh_token": "nope"},
        headers=APIKEY,
    )
    assert r.status_code == 400
    assert r.json()["error_description"] == "Invalid Refresh Token: Refresh Token Not Found"


def test_user_returns_caller(backend_api):
    session = _session(backend_api, email="dan@example.com")
    r = backend_api.get(
        "/auth/v1/user",
        headers={**APIKEY, "Authorization": f"Bearer {session['access_token']}"},
    )
    assert r.status_code == 200
    assert r.json()["email"] == "dan@example.com"
    assert r.json()["aud"] == "authenticated"


def test_user_rejects_bad_token(backend_api):
    r = backend_api.get("/auth/v1/user", headers={**APIKEY, "Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["error"] == "invalid_token"


def test_logout_revokes_refresh_tokens(backend_api):
    session = _session(backend_api)
    r = backend_api.post(
        "/auth/v1/logout",
        headers={**APIKEY, "Authorization": f"Bearer {session['access_token']}"},
    )
    assert r.status_code == 204
    again = backend_api.post(
        "/auth/v1/token",
        params={"grant_type": "refresh_token"},
        json={"refresh_token": session["refresh_token"]},
        headers=APIKEY,
    )
    assert again.status_code == 400
