"""Tests for /auth/login, /auth/callback and /auth/signout."""
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

import pytest

from backend_client.envelope import decode_value, storage_key
from web_app.auth_routes import safe_next

KEY = storage_key("http://localbackend.test")
VERIFIER = f"{KEY}-code-verifier"


def test_health(web_client):
    r = web_client.get("/health")
    assert r.status_code == 200
    assert r.json().get("service") == "web_app"


def test_login_start_redirects_to_provider_with_pkce(web_client):
    r = web_client.get("/auth/login", params={"next": "/"}, follow_redirects=False)
    assert r.status_code == 302
    location = urlsplit(r.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == "http://localbackend.test/auth/v1/authorize"
    params = parse_qs(location.query)
    assert params["provider"] == ["google"]
    assert params["code_challenge_method"] == ["s256"]
    assert params["redirect_to"] == ["http://testserver/auth/callback?next=%2F"]
    assert web_client.cookies.get(VERIFIER)


def test_callback_success_writes_envelope_and_redirects(web_client, sign_in):
    r = sign_in(web_client)
    assert r.status_code == 302
    assert r.headers["location"] == "http://testserver/"
    session = decode_value(web_client.cookies.get(KEY))
    assert session.user["email"] == "alice@example.com"
    assert web_client.cookies.get(VERIFIER) is None


def test_callback_honors_next(web_client, sign_in):
    r = sign_in(web_client, next_path="/settings?tab=1")
    assert r.headers["location"] == "http://testserver/settings?tab=1"


def test_callback_without_code(web_client):
    r = web_client.get("/auth/callback", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "http://testserver/login?error=auth_callback_failed"


def test_callback_with_bad_code_hides_provider_error(web_client):
    web_client.get("/auth/login", follow_redirects=False)
    with patch("web_app.auth_routes.logger") as log:
        r = web_client.get("/auth/callback", params={"code": "forged"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "http://testserver/login?error=auth_callback_failed"
    assert "Invalid" not in r.headers["location"]
    assert log.warning.called
    assert web_client.cookies.get(KEY) is None
    assert web_client.cookies.get(VERIFIER) is None


def test_callback_without_verifier_fails(web_client):
    r = web_client.get("/auth/callback", params={"code": "anything"}, follow_redirects=False)
    assert r.headers["location"].endswith("/login?error=auth_callback_failed")


def test_callback_behind_proxy_uses_forwarded_host(web_client, sign_in):
    with patch("web_app.config.APP_ENV", "production"):
        r = sign_in(web_client, headers={"x-forwarded-host": "app.example.com"})
    assert r.status_code == 302
    assert r.headers["location"] == "https://app.example.com/"
    assert web_client.cookies.get(KEY)


def test_callback_in_development_ignores_forwarded_host(web_client, sign_in):
    r = sign_in(web_client, headers={"x-forwarded-host": "app.example.com"})
    assert r.headers["location"] == "http://testserver/"


def test_callback_in_production_without_proxy_uses_origin(web_client, sign_in):
    with patch("web_app.config.APP_ENV", "production"):
        r = sign_in(web_client)
    assert r.headers["location"] == "http://testserver/"


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, "/"),
        ("", "/"),
        ("/dashboard", "/dashboard"),
        ("//evil.example.org", "/"),
        ("https://evil.example.org", "/"),
        ("/\\evil.example.org", "/"),
    ],
)
def test_safe_next(raw, expected):
    assert safe_next(raw) == expected


def test_signout_clears_envelope_and_redirects(web_client, sign_in):
    sign_in(web_client)
    assert web_client.cookies.get(KEY)
    r = web_client.post("/auth/signout", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/login"
    assert web_client.cookies.get(KEY) is None
    assert web_client.get("/", follow_redirects=False).headers["location"] == "/login"
