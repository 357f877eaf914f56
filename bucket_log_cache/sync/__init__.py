"""
Synchronization with the remote log.

Provides backward pagination (SyncEngine), merging of pushed items
(PushMerger) and the push channel client (PushClient).
"""

from .client import PushClient, PushEvent, PushEventType
from .engine import SyncEngine, SyncResult
from .ingest import ingest_item, ingest_items
from .push import PushMerger, notification_preview

__all__ = [
    "SyncEngine",
    "SyncResult",
    "PushMerger",
    "PushClient",
    "PushEvent",
    "PushEventType",
    "ingest_item",
    "ingest_items",
    "notification_preview",
]
