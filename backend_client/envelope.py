"""
Session envelope codec. A session is stored as "base64-<base64url(json)>" under sb-<ref>-auth-token, split into
<key>.0, <key>.1, ... cookies when longer than MAX_CHUNK_SIZE. Every save is one write_all batch that also
expires chunks the new value no longer needs, so the envelope rotates atomically.
"""
import json
import logging
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass
from urllib.parse import urlsplit

import jwt

from backend_client.cookies import DEFAULT_COOKIE_OPTIONS, CookieAdapter, CookieWrite, removal

logger = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 3180
BASE64_PREFIX = "base64-"


def storage_key(backend_url: str) -> str:
    """sb-<first host label>-auth-token, e.g. sb-abcd-auth-token for https://abcd.example.co."""
    host = urlsplit(backend_url).hostname or "local"
    return f"sb-{host.split('.')[0]}-auth-token"


def _token_exp(access_token: str) -> int | None:
    """exp claim without verification; the backend verifies, we only schedule refresh."""
    try:
        claims = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    exp = claims.get("exp")
    return int(exp) if isinstance(exp, (int, float)) else None


@dataclass
class Session:
    access_token: str
    refresh_token: str
    expires_at: int | None = None
    expires_in: int | None = None
    token_type: str = "bearer"
    user: dict | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Session | None":
        if not isinstance(data, dict):
            return None
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not refresh_token:
            return None
        expires_at = data.get("expires_at")
        expires_in = data.get("expires_in")
        if expires_at is None and isinstance(expires_in, (int, float)):
            expires_at = int(time.time()) + int(expires_in)
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=int(expires_at) if expires_at is not None else None,
            expires_in=int(expires_in) if expires_in is not None else None,
            token_type=data.get("token_type") or "bearer",
            user=data.get("user"),
        )

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
            "user": self.user,
        }

    def expires_within(self, margin_seconds: int, now: float | None = None) -> bool:
        """True when the access token is expired or expires within margin_seconds. Unknown expiry counts as expired."""
        expires_at = self.expires_at if self.expires_at is not None else _token_exp(self.access_token)
        if expires_at is None:
            return True
        now = time.time() if now is None else now
        return expires_at - now <= margin_seconds


def encode_value(session: Session) -> str:
    raw = json.dumps(session.to_dict(), separators=(",", ":")).encode("utf-8")
    return BASE64_PREFIX + urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_value(value: str) -> Session | None:
    try:
        if value.startswith(BASE64_PREFIX):
            b64 = value[len(BASE64_PREFIX):]
            raw = urlsafe_b64decode(b64 + "=" * (-len(b64) % 4)).decode("utf-8")
        else:
            raw = value
        return Session.from_dict(json.loads(raw))
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug("Unreadable session cookie: %s", e.__class__.__name__)
        return None


def _chunk_names(key: str, cookies: dict[str, str]) -> list[str]:
    names = []
    i = 0
    while f"{key}.{i}" in cookies:
        names.append(f"{key}.{i}")
        i += 1
    return names


def read_chunked(key: str, cookies: dict[str, str]) -> str | None:
    """Whole value under key, or the concatenation of key.0, key.1, ... (first gap ends the value)."""
    if cookies.get(key):
        return cookies[key]
    parts = [cookies[name] for name in _chunk_names(key, cookies)]
    return "".join(parts) or None


def chunked_writes(key: str, value: str, cookies: dict[str, str], options: dict) -> list[CookieWrite]:
    """Writes for value plus removals for every stale piece of the previous value."""
    chunks = [value[i:i + MAX_CHUNK_SIZE] for i in range(0, len(value), MAX_CHUNK_SIZE)] or [""]
    if len(chunks) == 1:
        writes = [CookieWrite(key, value, options)]
        keep = {key}
    else:
        writes = [CookieWrite(f"{key}.{i}", chunk, options) for i, chunk in enumerate(chunks)]
        keep = {w.name for w in writes}
    stale = [name for name in [key, *_chunk_names(key, cookies)] if name in cookies and name not in keep]
    return writes + [removal(name, options) for name in stale]


class SessionStore:
    """Load/save/clear the session envelope and the PKCE verifier through a CookieAdapter."""

    def __init__(self, cookies: CookieAdapter, key: str, options: dict | None = None):
        self.cookies = cookies
        self.key = key
        self.options = options or DEFAULT_COOKIE_OPTIONS

    @property
    def verifier_key(self) -> str:
        return f"{self.key}-code-verifier"

    def _jar(self) -> dict[str, str]:
        return dict(self.cookies.read_all())

    def load(self) -> Session | None:
        value = read_chunked(self.key, self._jar())
        if not value:
            return None
        return decode_value(value)

    def save(self, session: Session) -> None:
        self.cookies.write_all(chunked_writes(self.key, encode_value(session), self._jar(), self.options))

    def clear(self) -> None:
        jar = self._jar()
        names = [name for name in [self.key, *_chunk_names(self.key, jar)] if name in jar]
        if names:
            self.cookies.write_all([removal(name, self.options) for name in names])

    def save_code_verifier(self, verifier: str) -> None:
        self.cookies.write_all([CookieWrite(self.verifier_key, verifier, self.options)])

    def load_code_verifier(self) -> str | None:
        return self._jar().get(self.verifier_key) or None

    def clear_code_verifier(self) -> None:
        if self.verifier_key in self._jar():
            self.cookies.write_all([removal(self.verifier_key, self.options)])
