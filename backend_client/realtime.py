"""
Filtered change-notification subscription over the backend's realtime websocket (Phoenix channel JSON).

A channel joins one topic with postgres_changes bindings and dispatches INSERT/DELETE rows to callbacks.
Reconnection is the websockets library's: its connect() iterator yields a fresh connection after a drop,
and the channel re-sends its join on every new connection. Events missed while disconnected are not replayed.
"""
import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable
from urllib.parse import urlencode, urlsplit

from websockets.asyncio.client import connect as websockets_connect
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 25.0
JOIN_TIMEOUT = 10.0

CLOSED = "closed"
JOINING = "joining"
JOINED = "joined"
ERRORED = "errored"


class RealtimeError(Exception):
    """The channel could not be joined."""


@dataclass(frozen=True)
class ChangeEvent:
    type: str
    table: str
    record: dict
    old_record: dict
    commit_timestamp: str | None = None


def socket_url(backend_url: str, apikey: str) -> str:
    """ws(s)://<host>/realtime/v1/websocket?apikey=...&vsn=1.0.0"""
    parts = urlsplit(backend_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    query = urlencode({"apikey": apikey, "vsn": "1.0.0"})
    return f"{scheme}://{parts.netloc}{parts.path.rstrip('/')}/realtime/v1/websocket?{query}"


class RealtimeChannel:
    def __init__(
        self,
        url: str,
        name: str,
        access_token: str | None,
        *,
        connect: Callable = websockets_connect,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        token_provider: Callable[[], Awaitable[str | None]] | None = None,
    ):
        self.url = url
        self.topic = name if name.startswith("realtime:") else f"realtime:{name}"
        self.access_token = access_token
        self.state = CLOSED
        self._connect = connect
        # Consulted before every join so a rejoin after a drop carries a current token
        self._token_provider = token_provider
        self._heartbeat_interval = heartbeat_interval
        self._bindings: list[tuple[dict, Callable[[ChangeEvent], None]]] = []
        self._refs = itertools.count(1)
        self._join_ref: str | None = None
        self._join_error: str | None = None
        self._joined = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._ws = None

    def on_postgres_changes(
        self,
        event: str,
        *,
        table: str,
        callback: Callable[[ChangeEvent], None],
        schema: str = "public",
        filter: str | None = None,
    ) -> "RealtimeChannel":
        """Register a binding; must be called before subscribe()."""
        binding = {"event": event.upper(), "schema": schema, "table": table}
        if filter:
            binding["filter"] = filter
        self._bindings.append((binding, callback))
        return self

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def subscribe(self, timeout: float = JOIN_TIMEOUT) -> "RealtimeChannel":
        """Connect and join. Raises RealtimeError when the join is rejected, times out, or cannot connect."""
        if self._task is not None:
            return self
        self._joined.clear()
        self._join_error = None
        self.state = JOINING
        self._task = asyncio.create_task(self._run())
        waiter = asyncio.ensure_future(self._joined.wait())
        done, _ = await asyncio.wait({waiter, self._task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if waiter not in done:
            waiter.cancel()
            failure = None
            if self._task in done and not self._task.cancelled():
                failure = self._task.exception()
            await self.unsubscribe()
            if failure is not None:
                raise RealtimeError(f"could not connect: {failure}") from failure
            raise RealtimeError(f"join of {self.topic} did not complete")
        if self._join_error is not None:
            reason = self._join_error
            await self.unsubscribe()
            raise RealtimeError(f"join of {self.topic} rejected: {reason}")
        return self

    async def unsubscribe(self) -> None:
        """Leave the topic and close the connection. Safe to call more than once."""
        task, self._task = self._task, None
        ws = self._ws
        if ws is not None and self.state == JOINED:
            try:
                await ws.send(json.dumps(self._message(self.topic, "phx_leave", {})))
            except ConnectionClosed:
                logger.debug("Connection already closed while leaving %s", self.topic)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("Channel %s ended with %s", self.topic, e.__class__.__name__)
        if ws is not None:
            await ws.close()
        self._ws = None
        self.state = CLOSED

    def _message(self, topic: str, event: str, payload: dict, ref: str | None = None) -> dict:
        return {
            "topic": topic,
            "event": event,
            "payload": payload,
            "ref": ref or self._next_ref(),
            "join_ref": self._join_ref,
        }

    async def set_auth(self, access_token: str | None) -> None:
        """Swap the token used for joins; a joined channel also pushes it to the server."""
        self.access_token = access_token
        ws = self._ws
        if ws is not None and self.state == JOINED and access_token:
            try:
                await ws.send(json.dumps(self._message(self.topic, "access_token", {"access_token": access_token})))
            except ConnectionClosed:
                logger.debug("Connection closed before the new token for %s was sent", self.topic)

    def _decode(self, raw) -> dict | None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Dropped undecodable frame on %s", self.topic)
            return None
        if not isinstance(message, dict):
            logger.warning("Dropped non-object frame on %s", self.topic)
            return None
        return message

    async def _run(self) -> None:
        async for ws in self._connect(self.url):
            self._ws = ws
            heartbeat = None
            try:
                await self._send_join(ws)
                heartbeat = asyncio.create_task(self._heartbeat(ws))
                async for raw in ws:
                    message = self._decode(raw)
                    if message is not None:
                        self._dispatch(message)
            except ConnectionClosed:
                logger.info("Realtime connection lost for %s; waiting for reconnect", self.topic)
            finally:
                if heartbeat is not None:
                    heartbeat.cancel()
                self._ws = None
                if self.state == JOINED:
                    self.state = JOINING

    async def _send_join(self, ws) -> None:
        if self._token_provider is not None:
            token = await self._token_provider()
            if token:
                self.access_token = token
        self._join_ref = self._next_ref()
        payload = {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [binding for binding, _ in self._bindings],
            },
            "access_token": self.access_token,
        }
        await ws.send(json.dumps(self._message(self.topic, "phx_join", payload, ref=self._join_ref)))

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            await ws.send(json.dumps(self._message("phoenix", "heartbeat", {})))

    def _dispatch(self, message: dict) -> None:
        event = message.get("event")
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        if event == "phx_reply" and message.get("ref") == self._join_ref:
            if payload.get("status") == "ok":
                self.state = JOINED
                logger.info("Joined %s", self.topic)
            else:
                self.state = ERRORED
                self._join_error = str((payload.get("response") or {}).get("reason") or payload.get("status"))
                logger.warning("Join of %s rejected: %s", self.topic, self._join_error)
            self._joined.set()
            return
        if event in ("phx_error", "phx_close"):
            logger.info("Channel %s received %s", self.topic, event)
            return
        if event != "postgres_changes" or message.get("topic") != self.topic:
            return
        data = payload.get("data")
        if not isinstance(data, dict):
            logger.warning("Dropped malformed change on %s", self.topic)
            return
        change = ChangeEvent(
            type=(data.get("type") or "").upper(),
            table=data.get("table") or "",
            record=data.get("record") or {},
            old_record=data.get("old_record") or {},
            commit_timestamp=data.get("commit_timestamp"),
        )
        for binding, callback in self._bindings:
            if binding["table"] != change.table or binding["event"] not in ("*", change.type):
                continue
            try:
                callback(change)
            except Exception:
                logger.exception("Change callback failed on %s", self.topic)
