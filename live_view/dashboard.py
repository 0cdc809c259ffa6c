"""
Headless tab: what the dashboard page does in a browser, driven from Python.

    async with BookmarkDashboard("http://127.0.0.1:8000", cookies=jar) as tab:
        await tab.add_bookmark("https://example.com", "Example")
        print(tab.view.snapshot())

The tab talks to the web app for the snapshot and mutations, and to the backend directly (with the same
cookie jar) for the principal and the change subscription.
"""
import logging
from urllib.parse import urlsplit

import httpx

from backend_client.client import BackendClient, Principal, create_backend_client
from backend_client.cookies import JarCookies
from backend_client.errors import KIND_AUTH, KIND_REALTIME, KIND_STORE, BackendError, BackendResult, network_error
from backend_client.realtime import RealtimeChannel, RealtimeError, websockets_connect
from live_view.reconciler import LiveView
from web_app import config

logger = logging.getLogger(__name__)


class SignedOutError(Exception):
    """The tab has no valid session; the user must sign in again."""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return "Something went wrong"


class BookmarkDashboard:
    def __init__(
        self,
        app_url: str,
        *,
        cookies: httpx.Cookies | None = None,
        backend_url: str = config.BACKEND_URL,
        anon_key: str = config.BACKEND_ANON_KEY,
        transport: httpx.AsyncBaseTransport | None = None,
        backend_transport: httpx.AsyncBaseTransport | None = None,
        realtime_connect=websockets_connect,
    ):
        self.app_url = app_url.rstrip("/")
        self._http = httpx.AsyncClient(base_url=self.app_url, cookies=cookies, transport=transport, timeout=10.0)
        # The client copies the jar it is given; the tab reads and writes the client's own jar
        host = urlsplit(self.app_url).hostname or "localhost"
        self.backend: BackendClient = create_backend_client(
            backend_url,
            anon_key,
            JarCookies(self._http.cookies, host),
            transport=backend_transport,
            realtime_connect=realtime_connect,
        )
        self.principal: Principal | None = None
        self.view: LiveView | None = None
        self.channel: RealtimeChannel | None = None
        self.last_error: BackendError | None = None

    @property
    def cookies(self) -> httpx.Cookies:
        return self._http.cookies

    async def open(self) -> "BookmarkDashboard":
        """Principal, snapshot, then the owner-filtered subscription. Raises SignedOutError or RealtimeError."""
        result = await self.backend.current_principal()
        if result.data is None:
            raise SignedOutError(result.error.message if result.error else "not signed in")
        self.principal = result.data
        self.view = LiveView(self.principal.user_id)

        response = await self._http.get("/api/bookmarks")
        if response.status_code == 401:
            raise SignedOutError(_error_message(response))
        response.raise_for_status()
        self.view.seed(response.json()["bookmarks"])

        user_id = self.principal.user_id
        channel = self.backend.channel(f"bookmarks-{user_id}")
        for event in ("INSERT", "DELETE"):
            channel.on_postgres_changes(
                event,
                table="bookmarks",
                filter=f"owner_id=eq.{user_id}",
                callback=self.view.apply_change,
            )
        try:
            await channel.subscribe()
        except RealtimeError as e:
            self.last_error = BackendError(KIND_REALTIME, str(e))
            raise
        self.channel = channel
        logger.info("Tab open for sub=%s with %d bookmark(s)", user_id, len(self.view))
        return self

    def _require_open(self) -> LiveView:
        if self.view is None:
            raise SignedOutError("tab is not open; call open() first")
        return self.view

    async def refresh_channel_token(self) -> None:
        """Hand the channel the session's current access token once the envelope has rotated."""
        if self.channel is None:
            return
        token = await self.backend.fresh_access_token()
        if token and token != self.channel.access_token:
            await self.channel.set_auth(token)

    async def add_bookmark(self, url: str, title: str) -> BackendResult:
        """Applied to the view only once the server answers 201; failures leave the view untouched."""
        view = self._require_open()
        await self.refresh_channel_token()
        try:
            response = await self._http.post("/api/bookmarks", json={"url": url.strip(), "title": title.strip()})
        except httpx.HTTPError as e:
            return self._failed(network_error(e).error)
        if response.status_code != 201:
            kind = KIND_AUTH if response.status_code == 401 else KIND_STORE
            return self._failed(BackendError(kind, _error_message(response), response.status_code))
        bookmark = response.json()["bookmark"]
        view.apply_insert(bookmark)
        self.last_error = None
        return BackendResult(data=bookmark)

    async def delete_bookmark(self, bookmark_id: str) -> BackendResult:
        """Removed from the view first; not restored when the request fails."""
        view = self._require_open()
        view.apply_delete(bookmark_id)
        # Rotate before the request so both use the same envelope
        await self.refresh_channel_token()
        try:
            response = await self._http.delete("/api/bookmarks", params={"id": bookmark_id})
        except httpx.HTTPError as e:
            return self._failed(network_error(e).error)
        if response.status_code != 200:
            kind = KIND_AUTH if response.status_code == 401 else KIND_STORE
            return self._failed(BackendError(kind, _error_message(response), response.status_code))
        self.last_error = None
        return BackendResult(data=True)

    def _failed(self, error: BackendError) -> BackendResult:
        logger.warning("Tab mutation failed: %s", error.message)
        self.last_error = error
        return BackendResult(error=error)

    async def sign_out(self) -> BackendResult:
        """Revoke the session and drop the envelope from the jar, then release the tab."""
        result = await self.backend.sign_out()
        await self.close()
        return result

    async def close(self) -> None:
        """Release the channel and the HTTP client."""
        if self.channel is not None:
            await self.channel.unsubscribe()
            self.channel = None
        await self._http.aclose()

    async def __aenter__(self) -> "BookmarkDashboard":
        try:
            return await self.open()
        except BaseException:
            await self.close()
            raise

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
