"""
Caller-facing entry point of the log cache.

Wires the cache, the bucket indexes, the sync engine, the push merger
and the attachment fetcher around one injected RemoteLog. When a push
URL is configured it also owns the push channel client.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from .attachments import AttachmentFetcher
from .cache import ItemCache
from .config import CacheConfig
from .events import ChangeEvent, ChangeNotifier
from .local.state_store import LocalStateStore
from .remote.base import RemoteLog
from .sync.engine import SyncEngine
from .sync.client import PushClient
from .sync.push import PushMerger
from .types import (
    AttachmentEntry,
    AttachmentRef,
    AttachmentStatus,
    Item,
    ItemBody,
    ItemStatus,
    LogInfo,
)

logger = logging.getLogger(__name__)

PENDING_REF_PREFIX = "pending-"


class LogCacheClient:
    """Local, queryable mirror of one or more remote logs.

    Example:
        >>> config = CacheConfig(local_path="/tmp/cache", author_id="agent-me")
        >>> async with LogCacheClient(remote, config) as client:
        ...     await client.register_log(LogInfo("conv-1", epoch))
        ...     await client.load_current_window("conv-1")
        ...     await client.start_push()
        ...     pending = await client.send_optimistic("conv-1", {"content": "hi"})
        ...     items = client.list("conv-1")
    """

    def __init__(
        self,
        remote: RemoteLog,
        config: CacheConfig | None = None,
        persist: bool = True,
    ) -> None:
        """Initialize the client.

        Args:
            remote: Remote log transport
            config: Cache configuration
            persist: Persist indexes and items under config.state_path
        """
        self.remote = remote
        self.config = config or CacheConfig()
        self.notifier = ChangeNotifier()
        self.store = LocalStateStore(self.config.state_path) if persist else None
        self.cache = ItemCache(self.store, self.notifier)
        self.attachments = AttachmentFetcher(remote, self.config.attachment_retry())
        self.engine = SyncEngine(
            remote,
            self.cache,
            self.attachments,
            config=self.config,
            store=self.store,
            notifier=self.notifier,
        )
        self.merger = PushMerger(
            self.cache,
            self.engine.index,
            self.attachments,
            author_id=self.config.author_id,
        )
        self.push: PushClient | None = None
        if self.config.push_url:
            self.push = PushClient(
                self.merger,
                self.config.push_url,
                auth_token=self.config.push_auth_token,
                use_websocket=self.config.push_use_websocket,
                reconnect_delay=self.config.push_reconnect_delay,
            )
        self._confirmations: set[asyncio.Task[Item | None]] = set()

    async def __aenter__(self) -> LogCacheClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def register_log(self, log: LogInfo) -> None:
        """Track a log and, with a push channel configured, subscribe to it."""
        await self.engine.register_log(log)
        if self.push is not None:
            await self.push.subscribe(log.log_id)

    # Pagination

    async def load_current_window(
        self, log_id: str, target_count: int | None = None, now: datetime | None = None
    ) -> int:
        """Load the newest items of a log until ``target_count`` are visible."""
        return await self.engine.load_current_window(log_id, target_count, now)

    async def load_older(self, log_id: str, target_count: int | None = None) -> int:
        """Load the next page of older history."""
        return await self.engine.load_older(log_id, target_count)

    # Reads

    def list(self, log_id: str) -> list[Item]:
        return self.cache.list(log_id)

    def get(self, log_id: str, ref: str) -> Item | None:
        return self.cache.get(log_id, ref)

    def latest(self, log_id: str) -> Item | None:
        return self.cache.latest(log_id)

    def subscribe(self, log_id: str, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        """Register for change notifications; returns the unsubscribe function."""
        return self.notifier.subscribe(log_id, callback)

    # Optimistic writes

    async def send_optimistic(
        self,
        log_id: str,
        payload: Any,
        attachments: Iterable[AttachmentRef] = (),
        now: datetime | None = None,
    ) -> Item:
        """Show a write immediately and append it to the remote in the background.

        The returned pending item carries a temporary ref. When the remote
        confirms the write, the confirmed item supersedes it; if the append
        fails the pending item is flagged ERROR.
        """
        if self.config.author_id is None:
            raise ValueError("author_id must be configured to send items")

        index = self.engine.index(log_id)
        timestamp = now or datetime.now(UTC)
        pending = await self.cache.add_pending(
            Item(
                ref=f"{PENDING_REF_PREFIX}{uuid.uuid4()}",
                log_id=log_id,
                bucket_number=index.bucket_of(timestamp),
                author_id=self.config.author_id,
                timestamp=timestamp,
                payload=payload,
                attachment_refs=tuple(attachments),
                status=ItemStatus.PENDING,
            )
        )

        task = asyncio.create_task(self._confirm(pending))
        self._confirmations.add(task)
        task.add_done_callback(self._confirmations.discard)
        return pending

    async def _confirm(self, pending: Item) -> Item | None:
        try:
            body = await self.remote.append_item(
                pending.log_id,
                pending.payload,
                pending.bucket_number,
                pending.attachment_refs,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Append failed for pending item %s: %s", pending.ref, e)
            await self.cache.mark_error(pending.log_id, pending.ref)
            return None
        return await self.merger.on_push(pending.log_id, body)

    async def drain(self) -> None:
        """Wait until every outstanding optimistic write has settled."""
        while self._confirmations:
            await asyncio.gather(*list(self._confirmations), return_exceptions=True)

    # Push

    async def on_push(self, log_id: str, body: ItemBody) -> Item:
        return await self.merger.on_push(log_id, body)

    async def start_push(self) -> None:
        """Connect the configured push channel for every registered log.

        The channel subscribes to the logs registered so far when it
        connects, so register logs first.

        Raises:
            ValueError: If no push URL is configured
        """
        if self.push is None:
            raise ValueError("push_url must be configured to receive pushes")
        await self.push.start()

    # Attachments

    def get_attachment(self, attachment: AttachmentRef) -> AttachmentEntry:
        """Current attachment state, starting a download if none was requested.

        Never raises; failures show up as an ERROR entry.
        """
        entry = self.attachments.get(attachment.ref)
        if entry is None:
            self.attachments.prefetch([attachment])
            entry = self.attachments.get(attachment.ref) or AttachmentEntry(
                ref=attachment.ref, status=AttachmentStatus.LOADING
            )
        return entry

    async def fetch_attachment(self, attachment: AttachmentRef) -> bytes:
        """Download an attachment, retrying a previous failure.

        Raises:
            DownloadExhaustedError: If every allowed attempt failed
        """
        return await self.attachments.fetch(attachment)

    async def close(self) -> None:
        """Cancel background work and release the remote."""
        if self.push is not None:
            await self.push.stop()
        for task in list(self._confirmations):
            task.cancel()
        if self._confirmations:
            await asyncio.gather(*list(self._confirmations), return_exceptions=True)
        await self.attachments.close()
        await self.remote.close()
