"""
Sign-in, OAuth callback and sign-out.

GET /auth/login starts a PKCE sign-in with the external provider; the provider sends the browser back to
GET /auth/callback?code=...&next=..., which trades the code for a session and writes the envelope.
"""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse

from web_app import config
from web_app.cookies import RequestCookies
from web_app.session import backend_for

logger = logging.getLogger(__name__)
router = APIRouter()

CALLBACK_FAILED = "auth_callback_failed"


def request_origin(request: Request) -> str:
    return f"{request.url.scheme}://{request.url.netloc}"


def safe_next(next_path: str | None) -> str:
    """Only same-site absolute paths; anything else falls back to "/"."""
    if not next_path or not next_path.startswith("/") or next_path.startswith("//") or "\\" in next_path:
        return "/"
    return next_path


def redirect_base(request: Request) -> str:
    """
    Origin to send the signed-in browser to. Behind a load balancer the request origin is the internal one,
    so production prefers https://<x-forwarded-host>; development always uses the request origin.
    """
    origin = request_origin(request)
    if config.is_development():
        return origin
    forwarded_host = request.headers.get("x-forwarded-host")
    if forwarded_host:
        return f"https://{forwarded_host}"
    return origin


@router.get("/auth/login")
async def login_start(request: Request, provider: str = config.OAUTH_PROVIDER, next: str = "/"):
    """Store a PKCE verifier and redirect to the provider's authorize page."""
    cookies = RequestCookies(request)
    redirect_to = f"{request_origin(request)}/auth/callback?{urlencode({'next': safe_next(next)})}"
    result = backend_for(request, cookies).sign_in_with_oauth(provider, redirect_to)
    return cookies.apply(RedirectResponse(url=result.data, status_code=302))


@router.get("/auth/callback")
async def callback(request: Request, code: str | None = None, next: str = "/"):
    """
    Exchange code for a session. Any failure ends on /login?error=auth_callback_failed; the provider's
    error text is logged, never shown.
    """
    cookies = RequestCookies(request)
    if code:
        result = await backend_for(request, cookies).exchange_authorization_code(code)
        if result.ok:
            response = RedirectResponse(url=f"{redirect_base(request)}{safe_next(next)}", status_code=302)
            return cookies.apply(response)
        logger.warning("Code exchange failed: kind=%s message=%s", result.error.kind, result.error.message)
    else:
        logger.info("Callback without code")

    failed = f"{request_origin(request)}{config.LOGIN_PATH}?{urlencode({'error': CALLBACK_FAILED})}"
    return cookies.apply(RedirectResponse(url=failed, status_code=302))


@router.post("/auth/signout")
async def signout(request: Request):
    """Revoke at the backend, drop the envelope, back to the login page."""
    cookies = RequestCookies(request)
    await backend_for(request, cookies).sign_out()
    return cookies.apply(RedirectResponse(url=config.LOGIN_PATH, status_code=303))
