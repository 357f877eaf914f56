"""
Shared hydration step for pagination and push.

Both paths end the same way: upsert the items into the cache (where
pending supersession happens), register their refs in the bucket index
and kick off attachment downloads. Pagination ingests a whole page at
once so each persisted document is written once per pass; a push
ingests a single item.
"""

from __future__ import annotations

from collections.abc import Sequence

from ..attachments import AttachmentFetcher
from ..buckets import BucketIndex
from ..cache import ItemCache
from ..types import Item, ItemRef


async def ingest_item(
    item: Item,
    cache: ItemCache,
    index: BucketIndex,
    attachments: AttachmentFetcher | None = None,
) -> Item:
    """Store a hydrated item and return its reconciled cache entry."""
    await cache.upsert(item)
    await index.record_known(item.bucket_number, {item.ref})
    if attachments is not None and item.attachment_refs:
        attachments.prefetch(item.attachment_refs)
    return cache.get(item.log_id, item.ref) or item


async def ingest_items(
    items: Sequence[Item],
    cache: ItemCache,
    index: BucketIndex,
    attachments: AttachmentFetcher | None = None,
) -> set[ItemRef]:
    """Store a page of hydrated items of one log.

    Returns:
        Refs that were not cached before, excluding any that another path
        (such as a push) cached first
    """
    if not items:
        return set()

    added = await cache.upsert_many(index.log_id, items)

    refs_by_bucket: dict[int, set[ItemRef]] = {}
    for item in items:
        refs_by_bucket.setdefault(item.bucket_number, set()).add(item.ref)
    await index.record_known_many(refs_by_bucket)

    if attachments is not None:
        referenced = [ref for item in items for ref in item.attachment_refs]
        if referenced:
            attachments.prefetch(referenced)
    return added
