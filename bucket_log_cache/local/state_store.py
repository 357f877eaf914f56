"""
Persisted state for the log cache.

Each log gets its own directory holding the bucket index and the
confirmed items:

    {base_path}/
      {encoded_log_id}/
        index.json    # {"log": {...}, "buckets": {"3": ["ref", ...]}}
        items.json    # {"items": [{...}, ...]}

Pending and errored items are session-local and never written here.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from urllib.parse import quote

from ..types import Item, ItemRef, ItemStatus, LogInfo
from .file_ops import load_document, store_document

logger = logging.getLogger(__name__)


class LocalStateStore:
    """JSON-file persistence for bucket indexes and hydrated items."""

    def __init__(self, base_path: Path | str) -> None:
        """Initialize the store.

        Args:
            base_path: Root directory for persisted state
        """
        self.base_path = Path(base_path)
        self._write_locks: dict[str, asyncio.Lock] = {}

    def _log_dir(self, log_id: str) -> Path:
        # Log ids may be base64 and contain '/'
        return self.base_path / quote(log_id, safe="")

    def _index_file(self, log_id: str) -> Path:
        return self._log_dir(log_id) / "index.json"

    def _items_file(self, log_id: str) -> Path:
        return self._log_dir(log_id) / "items.json"

    def _lock(self, path: Path) -> asyncio.Lock:
        key = str(path)
        if key not in self._write_locks:
            self._write_locks[key] = asyncio.Lock()
        return self._write_locks[key]

    async def load_index(self, log_id: str) -> dict[int, frozenset[ItemRef]]:
        """Load the persisted bucket index of a log.

        Returns:
            Mapping of bucket number to known refs (empty if never saved)
        """
        data = await load_document(self._index_file(log_id))
        if not data:
            return {}
        return {int(bucket): frozenset(refs) for bucket, refs in data.get("buckets", {}).items()}

    async def save_index(
        self, log: LogInfo, buckets: dict[int, frozenset[ItemRef]]
    ) -> None:
        """Persist the bucket index of a log."""
        path = self._index_file(log.log_id)
        payload = {
            "log": log.to_dict(),
            "buckets": {str(bucket): sorted(refs) for bucket, refs in sorted(buckets.items())},
        }
        async with self._lock(path):
            await store_document(path, payload)

    async def load_items(self, log_id: str) -> list[Item]:
        """Load the persisted confirmed items of a log."""
        data = await load_document(self._items_file(log_id))
        if not data:
            return []
        return [Item.from_dict(raw) for raw in data.get("items", [])]

    async def save_items(self, log_id: str, items: list[Item]) -> None:
        """Persist the confirmed items of a log."""
        path = self._items_file(log_id)
        confirmed = [i.to_dict() for i in items if i.status == ItemStatus.CONFIRMED]
        async with self._lock(path):
            await store_document(path, {"items": confirmed})
        logger.debug("Persisted %d items for log %s", len(confirmed), log_id)
