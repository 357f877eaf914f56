"""
Hydrated item cache with optimistic-write reconciliation.

Holds every hydrated item as ``log_id -> ref -> Item``. Each log's map is
swapped wholesale on write (copy-on-write), so a reader that grabbed the
map before an update keeps a consistent view and never observes a
half-applied supersession.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping

from .events import ChangeEvent, ChangeNotifier, ChangeType
from .local.state_store import LocalStateStore
from .types import Item, ItemRef, ItemStatus

logger = logging.getLogger(__name__)


class ItemCache:
    """Single source of truth for hydrated items, keyed by log and ref."""

    def __init__(
        self,
        store: LocalStateStore | None = None,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            store: Persistence backend for confirmed items (None = memory only)
            notifier: Receives ITEMS_CHANGED events
        """
        self._store = store
        self._notifier = notifier
        self._logs: dict[str, Mapping[ItemRef, Item]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, log_id: str) -> asyncio.Lock:
        if log_id not in self._locks:
            self._locks[log_id] = asyncio.Lock()
        return self._locks[log_id]

    async def load(self, log_id: str) -> int:
        """Populate a log's items from persisted state.

        Items already in memory win over persisted copies.

        Returns:
            Number of items loaded from disk
        """
        if self._store is None:
            return 0
        persisted = await self._store.load_items(log_id)
        async with self._lock(log_id):
            current = self._logs.get(log_id, {})
            merged = {item.ref: item for item in persisted}
            merged.update(current)
            self._logs[log_id] = merged
        return len(persisted)

    async def upsert(self, item: Item) -> Item | None:
        """Insert or overwrite an item by ref.

        A confirmed item removes the oldest pending item of the same log
        with the same author and payload, in the same swap. Re-upserting a
        ref that is already cached never supersedes anything.

        Returns:
            The superseded pending item, if any
        """
        async with self._lock(item.log_id):
            updated = dict(self._logs.get(item.log_id, {}))
            superseded = self._apply(updated, item)
            self._logs[item.log_id] = updated

            if self._store is not None and item.status == ItemStatus.CONFIRMED:
                await self._store.save_items(item.log_id, list(updated.values()))

        self._notify(
            item.log_id,
            refs={item.ref},
            removed={superseded.ref} if superseded else set(),
        )
        return superseded

    async def upsert_many(self, log_id: str, items: Iterable[Item]) -> set[ItemRef]:
        """Insert or overwrite a batch of items of one log in a single swap.

        Each item is applied as by :meth:`upsert`, in order, and the log is
        persisted once for the whole batch.

        Returns:
            Refs of the batch that were not cached before the call
        """
        items = list(items)
        if not items:
            return set()
        for item in items:
            if item.log_id != log_id:
                raise ValueError(f"item {item.ref} belongs to log {item.log_id}, not {log_id}")

        added: set[ItemRef] = set()
        removed: set[ItemRef] = set()
        async with self._lock(log_id):
            updated = dict(self._logs.get(log_id, {}))
            for item in items:
                if item.ref not in updated:
                    added.add(item.ref)
                superseded = self._apply(updated, item)
                if superseded is not None:
                    removed.add(superseded.ref)
            self._logs[log_id] = updated

            if self._store is not None and any(i.status == ItemStatus.CONFIRMED for i in items):
                await self._store.save_items(log_id, list(updated.values()))

        self._notify(log_id, refs={i.ref for i in items}, removed=removed)
        return added - removed

    def _apply(self, updated: dict[ItemRef, Item], item: Item) -> Item | None:
        superseded: Item | None = None
        # A ref seen before already had its pending twin removed
        if item.status == ItemStatus.CONFIRMED and item.ref not in updated:
            superseded = self._find_pending_match(updated, item)
            if superseded is not None:
                del updated[superseded.ref]
                logger.debug(
                    "Confirmed item %s superseded pending %s in log %s",
                    item.ref,
                    superseded.ref,
                    item.log_id,
                )
        updated[item.ref] = item
        return superseded

    async def add_pending(self, item: Item) -> Item:
        """Insert a locally authored item so it is visible immediately."""
        if item.status != ItemStatus.PENDING:
            item = item.with_status(ItemStatus.PENDING)
        async with self._lock(item.log_id):
            self._logs[item.log_id] = {**self._logs.get(item.log_id, {}), item.ref: item}
        self._notify(item.log_id, refs={item.ref})
        return item

    async def mark_error(self, log_id: str, ref: ItemRef) -> Item | None:
        """Flag a pending item whose write the remote rejected.

        Returns:
            The updated item, or None if it is gone (already superseded)
        """
        async with self._lock(log_id):
            current = self._logs.get(log_id, {})
            item = current.get(ref)
            if item is None or item.status != ItemStatus.PENDING:
                return None
            item = item.with_status(ItemStatus.ERROR)
            self._logs[log_id] = {**current, ref: item}
        self._notify(log_id, refs={ref})
        return item

    def get(self, log_id: str, ref: ItemRef) -> Item | None:
        return self._logs.get(log_id, {}).get(ref)

    def list(self, log_id: str) -> list[Item]:
        """Items of a log, oldest first."""
        snapshot = self._logs.get(log_id, {})
        return sorted(snapshot.values(), key=lambda i: (i.timestamp, i.ref))

    def latest(self, log_id: str) -> Item | None:
        """Newest item of a log, or None if the log is empty."""
        snapshot = self._logs.get(log_id, {})
        if not snapshot:
            return None
        return max(snapshot.values(), key=lambda i: (i.timestamp, i.ref))

    def pending(self, log_id: str) -> list[Item]:
        return [i for i in self.list(log_id) if i.status == ItemStatus.PENDING]

    def count(self, log_id: str) -> int:
        return len(self._logs.get(log_id, {}))

    def log_ids(self) -> list[str]:
        return list(self._logs)

    @staticmethod
    def _find_pending_match(current: Mapping[ItemRef, Item], confirmed: Item) -> Item | None:
        candidates = [
            i
            for i in current.values()
            if i.status == ItemStatus.PENDING
            and i.author_id == confirmed.author_id
            and i.payload == confirmed.payload
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda i: i.timestamp)

    def _notify(self, log_id: str, refs: set[ItemRef], removed: set[ItemRef] | None = None) -> None:
        if self._notifier is None:
            return
        self._notifier.notify(
            ChangeEvent(
                log_id,
                ChangeType.ITEMS_CHANGED,
                refs=frozenset(refs),
                removed=frozenset(removed or ()),
            )
        )
