"""
Credential store adapters for the web app.

RequestCookies serves route handlers: reads the request's cookies and collects writes for the response the
handler returns (or drops them in read-only contexts such as page renders).
ForwardingCookies serves the session middleware: every write also lands in the forwarded request's Cookie
header, so handlers downstream see the rotated envelope, and the batch is replayed onto whichever response
finally leaves the app.
"""
import logging

from fastapi import Request
from starlette.responses import Response

from backend_client.cookies import CookieAdapter, CookieWrite
from web_app import config

logger = logging.getLogger(__name__)


def apply_cookie_writes(response: Response, writes: list[CookieWrite]) -> Response:
    for w in writes:
        options = dict(w.options)
        if config.COOKIE_SECURE:
            options.setdefault("secure", True)
        response.set_cookie(key=w.name, value=w.value, **options)
    return response


class RequestCookies(CookieAdapter):
    def __init__(self, request: Request, *, read_only: bool = False):
        self._jar = dict(request.cookies)
        self.read_only = read_only
        self.pending: list[CookieWrite] = []

    def read_all(self) -> list[tuple[str, str]]:
        return list(self._jar.items())

    def write_all(self, writes: list[CookieWrite]) -> None:
        if self.read_only:
            # Page renders cannot set cookies; the next request's middleware rotates durably
            logger.debug("Dropped %d cookie write(s) in read-only context", len(writes))
            return
        for w in writes:
            if w.is_removal:
                self._jar.pop(w.name, None)
            else:
                self._jar[w.name] = w.value
        self.pending.extend(writes)

    def apply(self, response: Response) -> Response:
        return apply_cookie_writes(response, self.pending)


class ForwardingCookies(RequestCookies):
    def __init__(self, request: Request):
        super().__init__(request)
        self._scope = request.scope

    def write_all(self, writes: list[CookieWrite]) -> None:
        super().write_all(writes)
        cookie_header = "; ".join(f"{name}={value}" for name, value in self._jar.items())
        headers = [(k, v) for k, v in self._scope["headers"] if k != b"cookie"]
        if cookie_header:
            headers.append((b"cookie", cookie_header.encode("latin-1")))
        self._scope["headers"] = headers

    def apply(self, response: Response) -> Response:
        """Replay the batch, except cookies the handler already set on this response (the handler's write is newer)."""
        already_set = {
            value.decode("latin-1").split("=", 1)[0].strip()
            for key, value in response.raw_headers
            if key == b"set-cookie"
        }
        return apply_cookie_writes(response, [w for w in self.pending if w.name not in already_set])
