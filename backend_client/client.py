"""
Backend client: identity, tabular data and change feed of the hosted service, bound to one credential store.

The client holds no state between requests. Construct one per request (server) or per tab (headless client)
with create_backend_client(); every method returns a BackendResult and never raises for backend failures.
"""
import logging
from dataclasses import dataclass, field

import httpx

from backend_client.cookies import CookieAdapter
from backend_client.envelope import Session, SessionStore, storage_key
from backend_client.errors import (
    KIND_AUTH,
    KIND_INVALID_GRANT,
    KIND_PKCE_VERIFIER_MISSING,
    KIND_SESSION_MISSING,
    BackendError,
    BackendResult,
    error_from_response,
    network_error,
)
from backend_client.pkce import build_authorize_url, generate_pkce
from backend_client.query import QueryBuilder
from backend_client.realtime import RealtimeChannel, socket_url, websockets_connect

logger = logging.getLogger(__name__)

# Refresh the access token when it expires within this many seconds
EXPIRY_MARGIN_SECONDS = 90

# Refresh responses that mean the refresh token itself is dead; anything else keeps the envelope
REJECTED_STATUSES = (400, 401, 403)

_UNLOADED = object()


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_user(cls, user: dict) -> "Principal":
        return cls(
            user_id=user["id"],
            email=user.get("email"),
            metadata=dict(user.get("user_metadata") or {}),
        )

    @property
    def display_name(self) -> str:
        """full_name, else the local part of the email, else "User"."""
        full_name = self.metadata.get("full_name")
        if full_name:
            return full_name
        if self.email:
            return self.email.split("@")[0]
        return "User"

    @property
    def avatar_url(self) -> str | None:
        return self.metadata.get("avatar_url")


class BackendClient:
    def __init__(
        self,
        url: str,
        anon_key: str,
        cookies: CookieAdapter,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
        realtime_connect=websockets_connect,
    ):
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.store = SessionStore(cookies, storage_key(self.url))
        self._transport = transport
        self._timeout = timeout
        self._realtime_connect = realtime_connect
        self._session = _UNLOADED

    async def request(
        self,
        method: str,
        path: str,
        *,
        params=None,
        json=None,
        headers: dict | None = None,
        access_token: str | None = None,
    ) -> httpx.Response:
        """
        One call to the backend with apikey and bearer headers. The bearer is the given access token,
        else the current session's (refreshed if expiring), else the public key. Raises httpx.HTTPError.
        """
        if access_token is None:
            session, _ = await self._current_session()
            access_token = session.access_token if session else self.anon_key
        all_headers = {"apikey": self.anon_key, "Authorization": f"Bearer {access_token}", **(headers or {})}
        async with httpx.AsyncClient(base_url=self.url, transport=self._transport, timeout=self._timeout) as client:
            return await client.request(method, path, params=params, json=json, headers=all_headers)

    async def _post_token(self, grant_type: str, body: dict) -> httpx.Response:
        return await self.request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": grant_type},
            json=body,
            access_token=self.anon_key,
        )

    async def _current_session(self) -> tuple[Session | None, BackendError | None]:
        """The stored session, rotated first when it is expired or about to expire."""
        cached = self._session
        # A cached session is reused until it nears expiry; long-lived clients (tabs) then rotate again
        if cached is not _UNLOADED and (cached is None or not cached.expires_within(EXPIRY_MARGIN_SECONDS)):
            return cached, None
        session = self.store.load()
        if session is None:
            self._session = None
            return None, BackendError(KIND_SESSION_MISSING, "Auth session missing!")
        if not session.expires_within(EXPIRY_MARGIN_SECONDS):
            self._session = session
            return session, None
        return await self._refresh(session)

    async def _refresh(self, session: Session) -> tuple[Session | None, BackendError | None]:
        try:
            response = await self._post_token("refresh_token", {"refresh_token": session.refresh_token})
        except httpx.HTTPError as e:
            # Envelope left intact; the next request tries again
            logger.warning("Session refresh failed: %s", e.__class__.__name__)
            self._session = None
            return None, network_error(e).error
        if response.status_code != 200:
            error = error_from_response(response, KIND_AUTH)
            if response.status_code in REJECTED_STATUSES:
                logger.info("Refresh token rejected (%s); clearing session", response.status_code)
                self.store.clear()
            else:
                logger.warning("Session refresh failed with status %s", response.status_code)
            self._session = None
            return None, error
        refreshed = Session.from_dict(response.json())
        if refreshed is None:
            self._session = None
            return None, BackendError(KIND_AUTH, "Refresh response did not contain a session")
        self.store.save(refreshed)
        self._session = refreshed
        logger.info("Session rotated for sub=%s", (refreshed.user or {}).get("id"))
        return refreshed, None

    async def current_principal(self) -> BackendResult:
        """
        Verify the session with the backend and return the Principal (data=None when signed out).
        Rotates an expiring envelope through the credential store before verifying.
        """
        session, error = await self._current_session()
        if session is None:
            return BackendResult(error=error)
        try:
            response = await self.request("GET", "/auth/v1/user", access_token=session.access_token)
        except httpx.HTTPError as e:
            logger.warning("User lookup failed: %s", e.__class__.__name__)
            return network_error(e)
        if response.status_code != 200:
            return BackendResult(error=error_from_response(response, KIND_AUTH))
        return BackendResult(data=Principal.from_user(response.json()))

    async def exchange_authorization_code(self, code: str) -> BackendResult:
        """Trade a one-time code plus the stored PKCE verifier for a session, and persist it."""
        verifier = self.store.load_code_verifier()
        if not verifier:
            return BackendResult(
                error=BackendError(KIND_PKCE_VERIFIER_MISSING, "PKCE code verifier not found in storage")
            )
        try:
            response = await self._post_token("pkce", {"auth_code": code, "code_verifier": verifier})
        except httpx.HTTPError as e:
            return network_error(e)
        finally:
            # One-time: a verifier is never reused, whatever the outcome
            self.store.clear_code_verifier()
        if response.status_code != 200:
            kind = KIND_INVALID_GRANT if response.status_code == 400 else KIND_AUTH
            return BackendResult(error=error_from_response(response, kind))
        session = Session.from_dict(response.json())
        if session is None:
            return BackendResult(error=BackendError(KIND_AUTH, "Token response did not contain a session"))
        self.store.save(session)
        self._session = session
        logger.info("Authorization code exchanged for sub=%s", (session.user or {}).get("id"))
        return BackendResult(data=session)

    def sign_in_with_oauth(self, provider: str, redirect_to: str, scopes: str | None = None) -> BackendResult:
        """Start a PKCE sign-in: store the verifier, return the provider authorize URL to redirect to."""
        code_verifier, code_challenge = generate_pkce()
        self.store.save_code_verifier(code_verifier)
        url = build_authorize_url(
            backend_url=self.url,
            provider=provider,
            redirect_to=redirect_to,
            code_challenge=code_challenge,
            scopes=scopes,
        )
        return BackendResult(data=url)

    async def sign_out(self) -> BackendResult:
        """Revoke the session at the backend and remove the envelope. The envelope is removed even on failure."""
        session = self.store.load()
        error = None
        if session is not None:
            try:
                response = await self.request("POST", "/auth/v1/logout", access_token=session.access_token)
                # 401 means the token is already dead; nothing left to revoke
                if response.status_code >= 400 and response.status_code != 401:
                    error = error_from_response(response, KIND_AUTH)
            except httpx.HTTPError as e:
                error = network_error(e).error
            if error is not None:
                logger.warning("Sign-out at backend failed: %s", error.message)
        self.store.clear()
        self._session = None
        return BackendResult(error=error)

    def table(self, name: str) -> QueryBuilder:
        return QueryBuilder(self, name)

    async def fresh_access_token(self) -> str | None:
        """The current session's access token, rotated first when it nears expiry. None when signed out."""
        session, _ = await self._current_session()
        return session.access_token if session else None

    def channel(self, name: str) -> RealtimeChannel:
        """
        A change-notification channel authorised with the current session's access token.
        Every rejoin after a dropped connection asks this client for a fresh token.
        """
        session = self._session if self._session is not _UNLOADED else self.store.load()
        return RealtimeChannel(
            socket_url(self.url, self.anon_key),
            name,
            session.access_token if session else None,
            connect=self._realtime_connect,
            token_provider=self.fresh_access_token,
        )


def create_backend_client(
    url: str,
    anon_key: str,
    cookies: CookieAdapter,
    transport: httpx.AsyncBaseTransport | None = None,
    **kwargs,
) -> BackendClient:
    """One client per request or per tab; nothing is shared between calls."""
    return BackendClient(url, anon_key, cookies, transport=transport, **kwargs)
