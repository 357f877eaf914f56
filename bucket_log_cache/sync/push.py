"""
Merging of pushed items.

New remote writes can arrive asynchronously, outside pagination. They go
through the same hydration step as paginated items, so pending
supersession and bucket indexing behave identically, but they never touch
the pagination cursor.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..attachments import AttachmentFetcher
from ..buckets import BucketIndex
from ..cache import ItemCache
from ..types import Item, ItemBody
from .ingest import ingest_item

logger = logging.getLogger(__name__)

# Notification previews: long content is cut to a short prefix
PREVIEW_MAX_LENGTH = 125
PREVIEW_CUT_LENGTH = 50


def notification_preview(item: Item) -> str:
    """Short text for a user-facing notification about an item."""
    payload: Any = item.payload
    if isinstance(payload, dict):
        payload = payload.get("content", "")
    text = payload if isinstance(payload, str) else str(payload)
    if len(text) > PREVIEW_MAX_LENGTH:
        return text[:PREVIEW_CUT_LENGTH] + "..."
    return text


class PushMerger:
    """Absorbs pushed items into the cache and bucket index."""

    def __init__(
        self,
        cache: ItemCache,
        index_for: Callable[[str], BucketIndex],
        attachments: AttachmentFetcher | None = None,
        author_id: str | None = None,
    ) -> None:
        """Initialize the merger.

        Args:
            cache: Item cache receiving pushed items
            index_for: Returns the bucket index of a log
            attachments: Fetcher triggered for referenced attachments
            author_id: Local author; own items never mark a log unread
        """
        self.cache = cache
        self.index_for = index_for
        self.attachments = attachments
        self.author_id = author_id
        self._unread: set[str] = set()

    async def on_push(self, log_id: str, body: ItemBody) -> Item:
        """Merge one pushed item and return its reconciled cache entry.

        The item is filed under the bucket its author declared, or the
        bucket of its timestamp when none was declared.
        """
        index = self.index_for(log_id)
        bucket = body.bucket if body.bucket is not None else index.bucket_of(body.timestamp)

        item = await ingest_item(
            Item.from_body(log_id, bucket, body),
            self.cache,
            index,
            self.attachments,
        )

        if self.author_id is None or item.author_id != self.author_id:
            self._unread.add(log_id)
        logger.debug("Merged pushed item %s into log %s bucket %d", item.ref, log_id, bucket)
        return item

    def has_unread(self, log_id: str) -> bool:
        return log_id in self._unread

    def mark_read(self, log_id: str) -> None:
        self._unread.discard(log_id)

    def unread_logs(self) -> set[str]:
        return set(self._unread)
