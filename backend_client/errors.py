"""
Structured results for the backend client. Failures come back as values, never as raised exceptions.
"""
from dataclasses import dataclass
from typing import Any

import httpx

KIND_NETWORK = "network"
KIND_AUTH = "auth"
KIND_SESSION_MISSING = "session_missing"
KIND_PKCE_VERIFIER_MISSING = "pkce_verifier_missing"
KIND_INVALID_GRANT = "invalid_grant"
KIND_STORE = "store"
KIND_REALTIME = "realtime"


@dataclass(frozen=True)
class BackendError:
    kind: str
    message: str
    status: int | None = None


@dataclass
class BackendResult:
    data: Any = None
    error: BackendError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def network_error(exc: httpx.HTTPError) -> BackendResult:
    return BackendResult(error=BackendError(KIND_NETWORK, f"{exc.__class__.__name__}: {exc}"))


def error_from_response(response: httpx.Response, kind: str) -> BackendError:
    """Pull the human message out of an auth-style or REST-style error body."""
    message = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("msg", "message", "error_description", "error"):
            if body.get(key):
                message = str(body[key])
                break
    if not message:
        message = response.text or f"HTTP {response.status_code}"
    return BackendError(kind, message, response.status_code)
