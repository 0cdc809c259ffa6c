"""
API key check, access token issue/verify, and caller resolution for the local backend.
"""
import logging
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException, Request

from local_backend.config import (
    ACCESS_TOKEN_EXPIRES,
    ANON_KEY,
    JWT_AUDIENCE,
    JWT_ISSUER,
    JWT_SECRET,
)
from local_backend.models import User

logger = logging.getLogger(__name__)


def auth_error(status_code: int, error: str, description: str) -> HTTPException:
    """Auth-style error body: {"error", "error_description"}."""
    return HTTPException(status_code=status_code, detail={"error": error, "error_description": description})


def rest_error(status_code: int, code: str, message: str) -> HTTPException:
    """REST-style error body: {"code", "message"}."""
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def require_apikey(request: Request) -> None:
    """Dependency: every call carries the public API key (header, or query for websockets)."""
    key = request.headers.get("apikey") or request.query_params.get("apikey")
    if key != ANON_KEY:
        raise HTTPException(status_code=401, detail={"message": "Invalid API key"})


def issue_access_token(user: User) -> tuple[str, int]:
    """Sign an HS256 access token for user. Returns (token, expires_at epoch seconds)."""
    now = datetime.now(timezone.utc)
    exp = int((now + timedelta(seconds=ACCESS_TOKEN_EXPIRES)).timestamp())
    payload = {
        "iss": JWT_ISSUER,
        "sub": user.id,
        "aud": JWT_AUDIENCE,
        "exp": exp,
        "iat": int(now.timestamp()),
        "email": user.email,
        "role": "authenticated",
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256"), exp


def decode_access_token(token: str) -> dict:
    """Verify signature, audience, issuer and expiry. Raises jwt.InvalidTokenError."""
    return jwt.decode(
        token,
        JWT_SECRET,
        algorithms=["HS256"],
        audience=JWT_AUDIENCE,
        issuer=JWT_ISSUER,
        options={"require": ["sub", "exp"]},
    )


def bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if not auth.lower().startswith("bearer "):
        return None
    return auth[7:].strip() or None


def caller_user_id(request: Request) -> str | None:
    """
    Resolve the row-level-policy identity for a data request.
    None = anonymous (no bearer, or the bearer is the public key). Invalid JWT -> 401.
    """
    token = bearer_token(request)
    if token is None or token == ANON_KEY:
        return None
    try:
        claims = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        raise rest_error(401, "PGRST303", "JWT expired")
    except jwt.InvalidTokenError as e:
        logger.debug("REST bearer rejected: %s", e)
        raise rest_error(401, "PGRST301", "JWT could not be verified")
    return claims["sub"]
