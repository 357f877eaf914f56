"""
Bucket Log Cache

Client-side cache for an append-only, peer-replicated log partitioned
into fixed-width time buckets.

Provides:
- A persisted per-log bucket index of known item refs
- Backward pagination until a target number of items is visible
- Optimistic writes reconciled against confirmed remote entries
- Attachment downloads with bounded retry and request coalescing
- Merging of pushed items outside the pagination path

Usage:

    >>> from bucket_log_cache import CacheConfig, HttpRemoteLog, LogCacheClient, LogInfo
    >>> remote = HttpRemoteLog("https://gateway.example.com")
    >>> config = CacheConfig.from_environment(author_id="agent-me")
    >>> async with LogCacheClient(remote, config) as client:
    ...     await client.register_log(LogInfo("conv-1", epoch))
    ...
    ...     # Newest page, then older pages on demand
    ...     await client.load_current_window("conv-1")
    ...     await client.load_older("conv-1")
    ...
    ...     # Visible immediately, reconciled when the remote confirms
    ...     await client.send_optimistic("conv-1", {"content": "hello"})
    ...     items = client.list("conv-1")
"""

from .attachments import AttachmentFetcher
from .buckets import BucketIndex, bucket_of
from .cache import ItemCache
from .client import LogCacheClient
from .config import CacheConfig
from .events import ChangeEvent, ChangeNotifier, ChangeType

# Exceptions
from .exceptions import (
    DownloadExhaustedError,
    InvariantViolationError,
    LogCacheError,
    LogNotRegisteredError,
    NetworkUnavailableError,
    StorageIOError,
)
from .local import LocalStateStore
from .logging_utils import configure_structured_logging
from .remote import HttpRemoteLog, RemoteLog
from .resilience import RetryConfig, retry_with_backoff
from .sync import PushClient, PushMerger, SyncEngine, SyncResult, notification_preview
from .types import (
    AttachmentEntry,
    AttachmentRef,
    AttachmentStatus,
    Item,
    ItemBody,
    ItemRef,
    ItemStatus,
    LogInfo,
)

__version__ = "0.1.0"

__all__ = [
    # Client
    "LogCacheClient",
    "CacheConfig",
    # Core components
    "BucketIndex",
    "bucket_of",
    "ItemCache",
    "AttachmentFetcher",
    "SyncEngine",
    "SyncResult",
    "PushMerger",
    "PushClient",
    "notification_preview",
    "ChangeNotifier",
    "ChangeEvent",
    "ChangeType",
    "LocalStateStore",
    # Remote
    "RemoteLog",
    "HttpRemoteLog",
    "RetryConfig",
    "retry_with_backoff",
    # Types
    "LogInfo",
    "Item",
    "ItemBody",
    "ItemRef",
    "ItemStatus",
    "AttachmentRef",
    "AttachmentEntry",
    "AttachmentStatus",
    # Exceptions
    "LogCacheError",
    "NetworkUnavailableError",
    "DownloadExhaustedError",
    "InvariantViolationError",
    "LogNotRegisteredError",
    "StorageIOError",
    # Logging
    "configure_structured_logging",
]
