"""Tests for the dashboard and login pages."""
import asyncio
from unittest.mock import MagicMock, patch

import pytest

from backend_client.client import Principal
from backend_client.errors import KIND_STORE, BackendError, BackendResult
from web_app.pages import display_url, load_bookmarks, render_dashboard


@pytest.mark.parametrize(
    "url, shown",
    [
        ("https://www.example.com/a/b", "example.com/a/b"),
        ("https://example.com/", "example.com"),
        ("http://docs.python.org", "docs.python.org"),
        ("nonsense", "nonsense"),
    ],
)
def test_display_url(url, shown):
    assert display_url(url) == shown


def test_dashboard_shows_name_count_and_items(web_client, sign_in):
    sign_in(web_client)
    web_client.post("/api/bookmarks", json={"url": "https://www.example.com/post", "title": "First <post>"})
    web_client.post("/api/bookmarks", json={"url": "https://example.org", "title": "Second"})

    r = web_client.get("/")
    assert r.status_code == 200
    assert "Alice Example" in r.text
    assert "2 saved links" in r.text
    assert "First &lt;post&gt;" in r.text
    assert "example.com/post" in r.text
    assert r.text.index("Second") < r.text.index("First &lt;post&gt;")


def test_dashboard_empty_state_and_email_fallback(web_client, sign_in):
    sign_in(web_client, email="grace@example.com", full_name=None)
    r = web_client.get("/")
    assert "Nothing saved yet. Add your first link below." in r.text
    assert "grace" in r.text


def test_single_bookmark_count_is_singular():
    page = render_dashboard(Principal("u1", "a@example.com", {}), [{"id": "b1", "url": "https://x.io", "title": "X"}])
    assert "1 saved link<" in page


def test_login_page_signed_out(web_client):
    r = web_client.get("/login")
    assert r.status_code == 200
    assert "/auth/login?provider=google" in r.text
    assert "could not be completed" not in r.text


def test_login_page_shows_callback_failure(web_client):
    r = web_client.get("/login", params={"error": "auth_callback_failed"})
    assert "Sign-in could not be completed. Please try again." in r.text


def test_login_page_ignores_unknown_error_codes(web_client):
    r = web_client.get("/login", params={"error": "<script>alert(1)</script>"})
    assert "<script>alert(1)</script>" not in r.text


def test_login_page_redirects_signed_in_users(web_client, sign_in):
    sign_in(web_client)
    r = web_client.get("/login", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/"


def test_load_bookmarks_store_failure_is_logged_and_empty():
    query = MagicMock()
    query.select.return_value = query
    query.order.return_value = query

    async def failing():
        return BackendResult(error=BackendError(KIND_STORE, "relation does not exist", 500))

    query.execute = failing
    client = MagicMock()
    client.table.return_value = query

    with patch("web_app.pages.logger") as log:
        rows = asyncio.run(load_bookmarks(client, Principal("u1", "a@example.com", {})))
    assert rows == []
    assert log.error.called
    query.order.assert_called_with("created_at", desc=True)
