"""
Credential store contract: the session envelope lives in cookies, read and written in batches.
Adapters bind the contract to a concrete jar (request/response pair, or a client-side httpx jar).
"""
from dataclasses import dataclass, field

import httpx

# Defaults applied to every envelope cookie (400 days, readable by page scripts)
DEFAULT_COOKIE_OPTIONS = {
    "path": "/",
    "samesite": "lax",
    "httponly": False,
    "max_age": 400 * 24 * 60 * 60,
}


@dataclass(frozen=True)
class CookieWrite:
    """One cookie to set (or expire, when max_age == 0). options map onto Starlette's set_cookie kwargs."""

    name: str
    value: str
    options: dict = field(default_factory=dict)

    @property
    def is_removal(self) -> bool:
        return self.options.get("max_age") == 0


def removal(name: str, options: dict | None = None) -> CookieWrite:
    return CookieWrite(name, "", {**(options or DEFAULT_COOKIE_OPTIONS), "max_age": 0})


class CookieAdapter:
    """
    read_all() -> [(name, value)]; write_all([CookieWrite]) applies one batch.
    A batch is the unit of rotation: callers never split one envelope across calls.
    """

    def read_all(self) -> list[tuple[str, str]]:
        raise NotImplementedError

    def write_all(self, writes: list[CookieWrite]) -> None:
        raise NotImplementedError


def _effective_domain(host: str) -> str:
    # http.cookiejar stores host-only cookies for dotless hosts under "<host>.local"
    return host if "." in host else f"{host}.local"


class JarCookies(CookieAdapter):
    """Adapter over an httpx.Cookies jar; the headless tab's equivalent of document.cookie."""

    def __init__(self, jar: httpx.Cookies, host: str):
        self.jar = jar
        self.domain = _effective_domain(host)

    def read_all(self) -> list[tuple[str, str]]:
        return [(c.name, c.value) for c in self.jar.jar]

    def write_all(self, writes: list[CookieWrite]) -> None:
        for w in writes:
            self.jar.delete(w.name)
            if not w.is_removal:
                self.jar.set(w.name, w.value, domain=self.domain, path=w.options.get("path", "/"))
