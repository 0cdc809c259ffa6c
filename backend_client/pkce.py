"""
PKCE (RFC 7636) helpers for sign-in initiation. S256 only.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from urllib.parse import urlencode


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    # 32 bytes -> 43 chars base64url (RFC 7636 recommendation)
    code_verifier = secrets.token_urlsafe(32)
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


def build_authorize_url(
    *,
    backend_url: str,
    provider: str,
    redirect_to: str,
    code_challenge: str,
    scopes: str | None = None,
) -> str:
    """Build the backend's /auth/v1/authorize URL for an external provider."""
    params = {
        "provider": provider,
        "redirect_to": redirect_to,
        "code_challenge": code_challenge,
        "code_challenge_method": "s256",
    }
    if scopes:
        params["scopes"] = scopes
    return f"{backend_url.rstrip('/')}/auth/v1/authorize?{urlencode(params)}"
