"""Tests for the session envelope codec: encoding, chunking, stale-chunk removal, expiry."""
import time

import jwt

from backend_client.cookies import CookieAdapter
from backend_client.envelope import (
    BASE64_PREFIX,
    MAX_CHUNK_SIZE,
    Session,
    SessionStore,
    chunked_writes,
    decode_value,
    encode_value,
    read_chunked,
    storage_key,
)

KEY = "sb-localbackend-auth-token"


class MemoryCookies(CookieAdapter):
    def __init__(self, initial=None):
        self.jar = dict(initial or {})
        self.batches = []

    def read_all(self):
        return list(self.jar.items())

    def write_all(self, writes):
        self.batches.append(list(writes))
        for w in writes:
            if w.is_removal:
                self.jar.pop(w.name, None)
            else:
                self.jar[w.name] = w.value


def _session(user=None, expires_at=None):
    return Session(
        access_token="header.payload.sig",
        refresh_token="refresh-1",
        expires_at=expires_at if expires_at is not None else int(time.time()) + 3600,
        expires_in=3600,
        user=user or {"id": "u1", "email": "alice@example.com"},
    )


def test_storage_key_uses_first_host_label():
    assert storage_key("https://abcd.supabase.co") == "sb-abcd-auth-token"
    assert storage_key("http://localbackend.test") == KEY


def test_encoded_value_is_prefixed_base64():
    value = encode_value(_session())
    assert value.startswith(BASE64_PREFIX)
    assert "=" not in value
    decoded = decode_value(value)
    assert decoded.refresh_token == "refresh-1"
    assert decoded.user["email"] == "alice@example.com"


def test_decode_accepts_plain_json():
    decoded = decode_value('{"access_token": "a", "refresh_token": "r", "expires_in": 60}')
    assert decoded.access_token == "a"
    assert decoded.expires_at >= int(time.time()) + 59


def test_decode_garbage_is_none():
    assert decode_value("base64-!!!not-base64") is None
    assert decode_value("{not json") is None
    assert decode_value('{"access_token": "only"}') is None


def test_small_value_is_one_cookie():
    writes = chunked_writes(KEY, "base64-short", {}, {"path": "/"})
    assert [w.name for w in writes] == [KEY]


def test_large_value_is_chunked_and_reassembled():
    value = "x" * (MAX_CHUNK_SIZE * 2 + 10)
    writes = chunked_writes(KEY, value, {}, {"path": "/"})
    assert [w.name for w in writes] == [f"{KEY}.0", f"{KEY}.1", f"{KEY}.2"]
    assert all(len(w.value) <= MAX_CHUNK_SIZE for w in writes)
    jar = {w.name: w.value for w in writes}
    assert read_chunked(KEY, jar) == value


def test_shrinking_value_expires_stale_chunks():
    old = {f"{KEY}.0": "a", f"{KEY}.1": "b", f"{KEY}.2": "c"}
    writes = chunked_writes(KEY, "y" * (MAX_CHUNK_SIZE + 1), old, {"path": "/"})
    set_names = [w.name for w in writes if not w.is_removal]
    removed = [w.name for w in writes if w.is_removal]
    assert set_names == [f"{KEY}.0", f"{KEY}.1"]
    assert removed == [f"{KEY}.2"]


def test_unchunked_value_replaces_chunks():
    old = {f"{KEY}.0": "a", f"{KEY}.1": "b"}
    writes = chunked_writes(KEY, "small", old, {"path": "/"})
    assert [w.name for w in writes if not w.is_removal] == [KEY]
    assert sorted(w.name for w in writes if w.is_removal) == [f"{KEY}.0", f"{KEY}.1"]


def test_store_save_is_one_batch_and_load_round_trips():
    cookies = MemoryCookies()
    store = SessionStore(cookies, KEY)
    big_user = {"id": "u1", "user_metadata": {"bio": "z" * 5000}}
    store.save(_session(user=big_user))
    assert len(cookies.batches) == 1
    assert f"{KEY}.0" in cookies.jar
    assert store.load().user == big_user

    store.save(_session())
    assert KEY in cookies.jar
    assert f"{KEY}.0" not in cookies.jar
    assert store.load().user["id"] == "u1"


def test_store_clear_removes_every_piece():
    cookies = MemoryCookies({f"{KEY}.0": "a", f"{KEY}.1": "b", "other": "keep"})
    SessionStore(cookies, KEY).clear()
    assert cookies.jar == {"other": "keep"}


def test_write_options_default_to_long_lived_lax_cookies():
    cookies = MemoryCookies()
    SessionStore(cookies, KEY).save(_session())
    options = cookies.batches[0][0].options
    assert options["path"] == "/"
    assert options["samesite"] == "lax"
    assert options["httponly"] is False
    assert options["max_age"] == 400 * 24 * 60 * 60


def test_code_verifier_lives_beside_the_envelope():
    cookies = MemoryCookies()
    store = SessionStore(cookies, KEY)
    store.save_code_verifier("verifier-123")
    assert cookies.jar[f"{KEY}-code-verifier"] == "verifier-123"
    assert store.load_code_verifier() == "verifier-123"
    store.clear_code_verifier()
    assert store.load_code_verifier() is None


def test_expires_within_margin():
    now = time.time()
    assert _session(expires_at=int(now) + 60).expires_within(90, now=now)
    assert not _session(expires_at=int(now) + 600).expires_within(90, now=now)


def test_expiry_falls_back_to_token_claim():
    token = jwt.encode({"sub": "u1", "exp": int(time.time()) + 3600}, "k" * 32, algorithm="HS256")
    session = Session(access_token=token, refresh_token="r")
    assert not session.expires_within(90)
    assert Session(access_token="opaque", refresh_token="r").expires_within(90)
