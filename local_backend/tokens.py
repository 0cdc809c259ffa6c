"""
Session endpoints under /auth/v1: token (pkce and refresh_token grants), user, logout.
Refresh tokens rotate on every use; a used refresh token is revoked.
"""
import hashlib
import logging
import secrets
from base64 import urlsafe_b64encode
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import APIRouter, Body, Depends, Request, Response
from sqlalchemy.orm import Session

from local_backend.config import ACCESS_TOKEN_EXPIRES, REFRESH_TOKEN_EXPIRES
from local_backend.database import get_db
from local_backend.models import AuthorizationCode, RefreshToken, User
from local_backend.security import (
    auth_error,
    bearer_token,
    decode_access_token,
    issue_access_token,
    require_apikey,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth/v1", dependencies=[Depends(require_apikey)])


def _pkce_verify(code_verifier: str, code_challenge: str, method: str | None) -> bool:
    """Verify PKCE: S256 only; SHA256(verifier) base64url == challenge."""
    if (method or "").lower() != "s256":
        return False
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    computed = urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return computed == code_challenge


def _issue_session(user: User, db: Session) -> dict:
    """New access token + new refresh token row; returns the session body."""
    access_token, expires_at = issue_access_token(user)
    refresh_value = secrets.token_urlsafe(48)
    db.add(
        RefreshToken(
            token=refresh_value,
            user_id=user.id,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=REFRESH_TOKEN_EXPIRES),
        )
    )
    db.commit()
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": ACCESS_TOKEN_EXPIRES,
        "expires_at": expires_at,
        "refresh_token": refresh_value,
        "user": user.to_dict(),
    }


@router.post("/token")
def token(
    grant_type: str,
    payload: dict = Body(default_factory=dict),
    db: Session = Depends(get_db),
):
    """
    pkce: exchange a one-time auth_code + code_verifier for a session.
    refresh_token: exchange a refresh token for a new session; the old refresh token is revoked.
    """
    if grant_type == "pkce":
        return _token_pkce(payload.get("auth_code"), payload.get("code_verifier"), db)
    if grant_type == "refresh_token":
        return _token_refresh(payload.get("refresh_token"), db)
    raise auth_error(400, "unsupported_grant_type", "Only pkce and refresh_token are supported")


def _token_pkce(auth_code: str | None, code_verifier: str | None, db: Session) -> dict:
    if not auth_code or not code_verifier:
        raise auth_error(400, "invalid_request", "auth_code and code_verifier are required")

    code = db.query(AuthorizationCode).filter(AuthorizationCode.code == auth_code).first()
    if not code:
        raise auth_error(400, "invalid_grant", "Invalid or expired authorization code")
    if code.used:
        raise auth_error(400, "invalid_grant", "Authorization code already used")
    if code.expires_at.replace(tzinfo=timezone.utc) < datetime.now(timezone.utc):
        raise auth_error(400, "invalid_grant", "Authorization code expired")
    if not _pkce_verify(code_verifier, code.code_challenge, code.code_challenge_method):
        raise auth_error(400, "invalid_grant", "code challenge does not match previously saved code verifier")

    code.used = True
    db.commit()

    user = db.query(User).filter(User.id == code.user_id).first()
    if not user:
        raise auth_error(500, "server_error", "User not found")
    logger.info("pkce grant: session issued for sub=%s", user.id)
    return _issue_session(user, db)


def _token_refresh(refresh_token: str | None, db: Session) -> dict:
    if not refresh_token:
        raise auth_error(400, "invalid_request", "refresh_token is required")
    rt = db.query(RefreshToken).filter(RefreshToken.token == refresh_token).first()
    if not rt:
        raise auth_error(400, "invalid_grant", "Invalid Refresh Token: Refresh Token Not Found")
    if rt.revoked:
        raise auth_error(400, "invalid_grant", "Invalid Refresh Token: Already Used")
    if rt.expires_at.replace(tzinfo=timezone.utc) < datetime.now(timezone.utc):
        raise auth_error(400, "invalid_grant", "Invalid Refresh Token: Expired")

    user = db.query(User).filter(User.id == rt.user_id).first()
    if not user:
        raise auth_error(500, "server_error", "User not found")

    # Rotate: revoke old, issue new refresh token
    rt.revoked = True
    db.commit()
    logger.info("refresh_token grant: session rotated for sub=%s", user.id)
    return _issue_session(user, db)


def _user_from_bearer(request: Request, db: Session) -> User:
    token = bearer_token(request)
    if not token:
        raise auth_error(401, "invalid_token", "Bearer token required")
    try:
        claims = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        raise auth_error(401, "invalid_token", "Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug("User lookup with invalid token: %s", e)
        raise auth_error(401, "invalid_token", "Invalid token")
    user = db.query(User).filter(User.id == claims["sub"]).first()
    if not user:
        raise auth_error(401, "invalid_token", "User not found")
    return user


@router.get("/user")
def get_user(request: Request, db: Session = Depends(get_db)):
    """Return the user the bearer access token belongs to."""
    return _user_from_bearer(request, db).to_dict()


@router.post("/logout", status_code=204)
def logout(request: Request, db: Session = Depends(get_db)):
    """Revoke every refresh token of the caller (global sign-out)."""
    user = _user_from_bearer(request, db)
    db.query(RefreshToken).filter(
        RefreshToken.user_id == user.id, RefreshToken.revoked.is_(False)
    ).update({"revoked": True})
    db.commit()
    logger.info("logout: refresh tokens revoked for sub=%s", user.id)
    return Response(status_code=204)
