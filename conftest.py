"""
Pytest configuration shared by every package. Environment is set before any app module is imported:
in-memory SQLite for the local backend, and the web app pointed at it with matching keys.
"""
import asyncio
import os
from urllib.parse import parse_qs, urlsplit

os.environ["LOCAL_BACKEND_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LOCAL_BACKEND_URL"] = "http://localbackend.test"
os.environ["LOCAL_BACKEND_ANON_KEY"] = "test-anon-key"
os.environ["LOCAL_BACKEND_ALLOWED_REDIRECT_ORIGINS"] = "http://testserver,http://app.test,https://app.example.com"
os.environ["BACKEND_URL"] = "http://localbackend.test"
os.environ["BACKEND_ANON_KEY"] = "test-anon-key"
os.environ["APP_ENV"] = "development"

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from local_backend.database import reset_db  # noqa: E402
from local_backend.main import app as backend_app  # noqa: E402
from web_app.main import app as web_app  # noqa: E402

ANON_KEY = "test-anon-key"
BACKEND_URL = "http://localbackend.test"


class ASGIWebSocket:
    """
    Client end of a websocket served in-process by an ASGI app. Quacks like a websockets connection
    (send, close, async iteration over text frames) so RealtimeChannel runs unchanged against local_backend.
    """

    def __init__(self, app, url: str):
        parts = urlsplit(url)
        self._app = app
        self._scope = {
            "type": "websocket",
            "asgi": {"version": "3.0"},
            "scheme": "ws",
            "http_version": "1.1",
            "path": parts.path,
            "raw_path": parts.path.encode(),
            "root_path": "",
            "query_string": parts.query.encode(),
            "headers": [(b"host", parts.netloc.encode())],
            "client": ("testclient", 50000),
            "server": (parts.hostname, parts.port or 80),
            "subprotocols": [],
            "state": {},
        }
        self._to_app: asyncio.Queue = asyncio.Queue()
        self._from_app: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self.closed = False

    async def start(self) -> None:
        await self._to_app.put({"type": "websocket.connect"})
        self._task = asyncio.create_task(self._app(self._scope, self._to_app.get, self._from_app.put))
        first = await self._from_app.get()
        if first["type"] != "websocket.accept":
            self.closed = True
            raise ConnectionRefusedError(f"websocket rejected: {first}")

    async def send(self, text: str) -> None:
        await self._to_app.put({"type": "websocket.receive", "text": text})

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        message = await self._from_app.get()
        if message["type"] == "websocket.send":
            return message.get("text") or message.get("bytes")
        self.closed = True
        raise StopAsyncIteration

    async def close(self) -> None:
        if self._task is None or self._task.done():
            return
        await self._to_app.put({"type": "websocket.disconnect", "code": 1000})
        await asyncio.wait_for(self._task, timeout=5)
        self.closed = True


def asgi_connect(app):
    """A connect(url) stand-in yielding one in-process connection."""
    def connect(url: str):
        async def connections():
            ws = ASGIWebSocket(app, url)
            await ws.start()
            try:
                yield ws
            finally:
                await ws.close()
        return connections()
    return connect


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds (change notifications arrive asynchronously)."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture(autouse=True)
def fresh_db():
    reset_db()
    yield


@pytest.fixture
def backend_transport():
    return httpx.ASGITransport(app=backend_app)


@pytest.fixture
def backend_api():
    """Direct calls to the local backend."""
    return TestClient(backend_app, base_url=BACKEND_URL)


@pytest.fixture
def realtime_connect():
    return asgi_connect(backend_app)


@pytest.fixture
def web_client():
    """Web app wired to the in-process local backend."""
    web_app.state.backend_transport = httpx.ASGITransport(app=backend_app)
    try:
        yield TestClient(web_app)
    finally:
        web_app.state.backend_transport = None


@pytest.fixture
def sign_in(backend_api):
    """
    Complete the browser sign-in for client: /auth/login, the provider form, then /auth/callback.
    Returns the final callback response (302 on success).
    """
    def _sign_in(client: TestClient, email: str = "alice@example.com", full_name: str | None = "Alice Example",
                 next_path: str = "/", headers: dict | None = None):
        start = client.get("/auth/login", params={"next": next_path}, follow_redirects=False)
        assert start.status_code == 302
        params = {k: v[0] for k, v in parse_qs(urlsplit(start.headers["location"]).query).items()}
        form = {
            "redirect_to": params["redirect_to"],
            "code_challenge": params["code_challenge"],
            "code_challenge_method": params["code_challenge_method"],
            "email": email,
        }
        if full_name:
            form["full_name"] = full_name
        provider = backend_api.post("/auth/v1/authorize", data=form, follow_redirects=False)
        assert provider.status_code == 302
        back = urlsplit(provider.headers["location"])
        return client.get(f"{back.path}?{back.query}", headers=headers, follow_redirects=False)
    return _sign_in


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until
