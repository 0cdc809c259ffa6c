"""
Session refresh at the edge. Runs before every matched request: rotates an expiring envelope and gates
protected paths (pages redirect to the login page, /api/* answers 401).
"""
import logging
import re

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from backend_client.client import BackendClient, Principal, create_backend_client
from backend_client.cookies import CookieAdapter
from web_app import config
from web_app.cookies import ForwardingCookies

logger = logging.getLogger(__name__)

# Everything except static assets, optimizer outputs, favicon, images and the health check
DEFAULT_MATCHER = re.compile(
    r"^/(?!static/|_image/|favicon\.ico$|health$)(?!.*\.(?:svg|png|jpg|jpeg|gif|webp)$).*",
    re.IGNORECASE,
)


def backend_for(request: Request, cookies: CookieAdapter) -> BackendClient:
    """A fresh client bound to cookies; tests swap the wire via app.state.backend_transport."""
    return create_backend_client(
        config.BACKEND_URL,
        config.BACKEND_ANON_KEY,
        cookies,
        transport=getattr(request.app.state, "backend_transport", None),
    )


def is_public_path(path: str) -> bool:
    login = config.LOGIN_PATH.rstrip("/")
    return path == login or path.startswith(f"{login}/") or path.startswith("/auth/")


async def authenticate_request(request: Request, cookies: CookieAdapter) -> Principal | None:
    """
    Construct a client and fetch the principal as its very first call.

    Nothing may run between construction and current_principal(): that call is what rotates an expiring
    envelope, and any other backend call made first would go out with stale credentials.
    """
    result = await backend_for(request, cookies).current_principal()
    if result.error is not None:
        logger.debug("No principal for %s: %s", request.url.path, result.error.kind)
    return result.data


class SessionRefreshMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, matcher: re.Pattern = DEFAULT_MATCHER):
        super().__init__(app)
        self.matcher = matcher

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not self.matcher.match(path):
            return await call_next(request)

        cookies = ForwardingCookies(request)
        principal = await authenticate_request(request, cookies)

        if principal is None and not is_public_path(path):
            if path.startswith("/api/"):
                response = JSONResponse({"error": "Unauthorized"}, status_code=401)
            else:
                response = RedirectResponse(url=config.LOGIN_PATH, status_code=302)
            return cookies.apply(response)

        response = await call_next(request)
        return cookies.apply(response)
