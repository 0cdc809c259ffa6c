"""
Sign-in endpoint standing in for the external identity provider.
GET /auth/v1/authorize: validate params, show sign-in form. POST: find or create the user, issue a one-time code,
redirect to redirect_to?code=...
"""
import html
import logging
import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode, urlsplit

from fastapi import APIRouter, Depends, Form
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from local_backend.config import ALLOWED_REDIRECT_ORIGINS, CODE_TTL_SECONDS
from local_backend.database import get_db
from local_backend.models import AuthorizationCode, User

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth/v1")


def _redirect_allowed(redirect_to: str | None) -> bool:
    if not redirect_to:
        return False
    parts = urlsplit(redirect_to)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return False
    return f"{parts.scheme}://{parts.netloc}" in ALLOWED_REDIRECT_ORIGINS


def _with_query(url: str, params: dict) -> str:
    return f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"


@router.get("/authorize", response_class=HTMLResponse)
def authorize_get(
    provider: str | None = None,
    redirect_to: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
):
    """
    Validates redirect_to against the allow-list and requires an S256 PKCE challenge.
    Renders the sign-in form on success.
    """
    if not provider:
        return HTMLResponse("<h1>Invalid request</h1><p>provider is required.</p>", status_code=400)
    if not _redirect_allowed(redirect_to):
        return HTMLResponse("<h1>Invalid request</h1><p>redirect_to not allowed.</p>", status_code=400)
    if not code_challenge or (code_challenge_method or "").lower() != "s256":
        return HTMLResponse(
            "<h1>Invalid request</h1><p>code_challenge with method s256 is required.</p>",
            status_code=400,
        )

    def e(s: str) -> str:
        return html.escape(s or "")

    body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Sign in</title></head>
<body>
  <h1>Sign in with {e(provider)}</h1>
  <form method="post" action="/auth/v1/authorize">
    <input type="hidden" name="redirect_to" value="{e(redirect_to)}"/>
    <input type="hidden" name="code_challenge" value="{e(code_challenge)}"/>
    <input type="hidden" name="code_challenge_method" value="{e(code_challenge_method)}"/>
    <label>Email: <input type="email" name="email" required/></label><br/>
    <label>Name: <input type="text" name="full_name"/></label><br/>
    <button type="submit">Continue</button>
  </form>
</body>
</html>"""
    return HTMLResponse(body)


@router.post("/authorize")
def authorize_post(
    redirect_to: str = Form(...),
    code_challenge: str = Form(...),
    code_challenge_method: str = Form(...),
    email: str = Form(...),
    full_name: str | None = Form(None),
    avatar_url: str | None = Form(None),
    db: Session = Depends(get_db),
):
    """Find or create the user by email, store a PKCE-bound code, redirect back with ?code=."""
    if not _redirect_allowed(redirect_to):
        return HTMLResponse("<h1>Invalid request</h1>", status_code=400)
    if code_challenge_method.lower() != "s256":
        return RedirectResponse(
            url=_with_query(redirect_to, {"error": "invalid_request", "error_description": "s256 required"}),
            status_code=302,
        )

    email = email.strip().lower()
    if not email:
        return HTMLResponse("<h1>Invalid request</h1><p>email is required.</p>", status_code=400)
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        user = User(email=email, full_name=(full_name or "").strip() or None, avatar_url=avatar_url or None)
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info("Created user %s", user.id)

    code = secrets.token_urlsafe(32)
    db.add(
        AuthorizationCode(
            code=code,
            user_id=user.id,
            redirect_to=redirect_to,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method.lower(),
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=CODE_TTL_SECONDS),
        )
    )
    db.commit()
    return RedirectResponse(url=_with_query(redirect_to, {"code": code}), status_code=302)
