"""
Change feed for the local backend: /realtime/v1/websocket speaking the Phoenix channel JSON protocol.
Clients join a topic with postgres_changes bindings; REST writes publish INSERT/DELETE rows to matching
subscriptions. Row-level policy applies: a subscriber only ever sees rows it owns.
"""
import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

import jwt
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from local_backend.config import ANON_KEY
from local_backend.security import decode_access_token

logger = logging.getLogger(__name__)
router = APIRouter()


@dataclass
class Binding:
    id: int
    event: str
    schema: str
    table: str
    filter: str | None = None

    def matches(self, change_type: str, table: str, row: dict) -> bool:
        if self.table != table:
            return False
        if self.event not in ("*", change_type):
            return False
        if not self.filter:
            return True
        # Only "column=eq.value" filters are supported
        column, _, condition = self.filter.partition("=")
        op, _, value = condition.partition(".")
        if op != "eq":
            return False
        return str(row.get(column)) == value

    def describe(self) -> dict:
        return {"id": self.id, "event": self.event, "schema": self.schema, "table": self.table, "filter": self.filter}


@dataclass
class Subscription:
    topic: str
    user_id: str
    bindings: list[Binding]
    outbox: asyncio.Queue
    loop: asyncio.AbstractEventLoop
    join_ref: str | None = None


class ChangeHub:
    """Fan-out of row changes to websocket subscriptions. publish() is safe to call from worker threads."""

    def __init__(self) -> None:
        self._subs: list[Subscription] = []
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def next_binding_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def add(self, sub: Subscription) -> None:
        with self._lock:
            self._subs.append(sub)

    def remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def publish(self, change_type: str, table: str, row: dict) -> None:
        """
        Deliver one committed change. row is the full row (for DELETE, the row as it was);
        DELETE notifications only carry the primary key.
        """
        with self._lock:
            subs = list(self._subs)
        commit_timestamp = datetime.now(timezone.utc).isoformat()
        for sub in subs:
            if row.get("owner_id") != sub.user_id:
                continue
            ids = [b.id for b in sub.bindings if b.matches(change_type, table, row)]
            if not ids:
                continue
            data = {
                "type": change_type,
                "schema": "public",
                "table": table,
                "commit_timestamp": commit_timestamp,
                "record": dict(row) if change_type != "DELETE" else {},
                "old_record": {"id": row.get("id")} if change_type == "DELETE" else {},
                "errors": None,
            }
            message = {
                "topic": sub.topic,
                "event": "postgres_changes",
                "payload": {"ids": ids, "data": data},
                "ref": None,
            }
            try:
                sub.loop.call_soon_threadsafe(sub.outbox.put_nowait, message)
            except RuntimeError:
                # Event loop of a dead socket; drop the subscription
                logger.debug("Dropping subscription on closed loop: topic=%s", sub.topic)
                self.remove(sub)


hub = ChangeHub()


def _reply(message: dict, status: str, response: dict) -> dict:
    return {
        "topic": message.get("topic"),
        "event": "phx_reply",
        "payload": {"status": status, "response": response},
        "ref": message.get("ref"),
        "join_ref": message.get("join_ref"),
    }


def _handle_join(message: dict, joined: dict, outbox: asyncio.Queue, loop) -> dict:
    topic = message.get("topic") or ""
    payload = message.get("payload") or {}
    token = payload.get("access_token")
    if not token:
        return _reply(message, "error", {"reason": "access_token required"})
    try:
        claims = decode_access_token(token)
    except jwt.InvalidTokenError as e:
        logger.debug("Realtime join rejected: %s", e)
        return _reply(message, "error", {"reason": "invalid access token"})

    changes = ((payload.get("config") or {}).get("postgres_changes")) or []
    bindings = [
        Binding(
            id=hub.next_binding_id(),
            event=(c.get("event") or "*").upper(),
            schema=c.get("schema") or "public",
            table=c.get("table") or "",
            filter=c.get("filter"),
        )
        for c in changes
    ]
    previous = joined.pop(topic, None)
    if previous is not None:
        hub.remove(previous)
    sub = Subscription(
        topic=topic,
        user_id=claims["sub"],
        bindings=bindings,
        outbox=outbox,
        loop=loop,
        join_ref=message.get("join_ref"),
    )
    joined[topic] = sub
    hub.add(sub)
    logger.info("Realtime join: topic=%s sub=%s bindings=%d", topic, claims["sub"], len(bindings))
    return _reply(message, "ok", {"postgres_changes": [b.describe() for b in bindings]})


def _handle(message: dict, joined: dict, outbox: asyncio.Queue, loop) -> dict:
    event = message.get("event")
    if message.get("topic") == "phoenix" and event == "heartbeat":
        return _reply(message, "ok", {})
    if event == "phx_join":
        return _handle_join(message, joined, outbox, loop)
    if event == "phx_leave":
        sub = joined.pop(message.get("topic"), None)
        if sub is not None:
            hub.remove(sub)
        return _reply(message, "ok", {})
    if event == "access_token":
        return _reply(message, "ok", {})
    return _reply(message, "error", {"reason": f"unknown event {event!r}"})


async def _drain(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        message = await outbox.get()
        await websocket.send_json(message)


@router.websocket("/realtime/v1/websocket")
async def realtime_socket(websocket: WebSocket):
    """One socket, many topics. Subscriptions die with the socket."""
    if websocket.query_params.get("apikey") != ANON_KEY:
        await websocket.close(code=4001)
        return
    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()
    loop = asyncio.get_running_loop()
    joined: dict[str, Subscription] = {}
    sender = asyncio.create_task(_drain(websocket, outbox))
    try:
        while True:
            message = await websocket.receive_json()
            outbox.put_nowait(_handle(message, joined, outbox, loop))
    except WebSocketDisconnect:
        logger.debug("Realtime socket closed with %d topic(s)", len(joined))
    finally:
        for sub in joined.values():
            hub.remove(sub)
        sender.cancel()
