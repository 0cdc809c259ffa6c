"""
Per-tab live list of the owner's bookmarks, newest first, keyed by id.

Three sources feed it on the tab's event loop: the initial snapshot, responses to the tab's own mutations,
and change notifications. Every local insert is also echoed by the change feed, so inserts are deduplicated
by id and deletes are idempotent. Entries are prepended as they arrive and never re-sorted.
"""
import logging
from typing import Callable

from backend_client.realtime import ChangeEvent

logger = logging.getLogger(__name__)


class LiveView:
    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        self._items: list[dict] = []
        self._listeners: list[Callable[[list[dict]], None]] = []

    def on_change(self, listener: Callable[[list[dict]], None]) -> None:
        """listener(snapshot) runs after every change that altered the list."""
        self._listeners.append(listener)

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Live view listener failed")

    def _owned(self, record: dict) -> bool:
        if record.get("owner_id") != self.owner_id:
            logger.debug("Discarded record %s of another owner", record.get("id"))
            return False
        return True

    def seed(self, records: list[dict]) -> None:
        """Replace the list with a server snapshot (already newest first)."""
        items = []
        seen = set()
        for record in records:
            if not record.get("id") or record["id"] in seen or not self._owned(record):
                continue
            seen.add(record["id"])
            items.append(dict(record))
        self._items = items
        self._notify()

    def apply_insert(self, record: dict) -> bool:
        """Prepend record unless its id is already present. Returns True when the list changed."""
        if not record.get("id") or not self._owned(record):
            return False
        if record["id"] in self:
            logger.debug("Duplicate insert of %s discarded", record["id"])
            return False
        self._items.insert(0, dict(record))
        self._notify()
        return True

    def apply_delete(self, bookmark_id: str | None) -> bool:
        """Remove bookmark_id if present. Deleting an absent id is a no-op."""
        if not bookmark_id or bookmark_id not in self:
            return False
        self._items = [b for b in self._items if b["id"] != bookmark_id]
        self._notify()
        return True

    def apply_change(self, change: ChangeEvent) -> bool:
        """Route a change notification to insert or delete."""
        if change.type == "INSERT":
            return self.apply_insert(change.record)
        if change.type == "DELETE":
            return self.apply_delete(change.old_record.get("id"))
        logger.debug("Ignored %s notification", change.type)
        return False

    def snapshot(self) -> list[dict]:
        return [dict(b) for b in self._items]

    def ids(self) -> list[str]:
        return [b["id"] for b in self._items]

    def __contains__(self, bookmark_id: str) -> bool:
        return any(b["id"] == bookmark_id for b in self._items)

    def __len__(self) -> int:
        return len(self._items)
