"""
Attachment downloads with bounded retry.

Attachments are fetched independently of item bodies because they can be
large and are rendered lazily. Each ref moves through
loading -> loaded | error; an errored ref can be fetched again at any
time. Concurrent fetches of the same ref share one in-flight download.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from .exceptions import DownloadExhaustedError
from .remote.base import RemoteLog
from .resilience import RetryConfig, retry_with_backoff
from .types import AttachmentEntry, AttachmentRef, AttachmentStatus

logger = logging.getLogger(__name__)


def default_attachment_retry() -> RetryConfig:
    """Ten attempts, 1s backoff doubling per attempt, capped at 10s."""
    return RetryConfig(
        max_attempts=10,
        backoff_base=1.0,
        backoff_max=10.0,
        backoff_multiplier=2.0,
        retryable_exceptions=(Exception,),
    )


class AttachmentFetcher:
    """Retrying, coalescing downloader for attachment blobs."""

    def __init__(self, remote: RemoteLog, retry_config: RetryConfig | None = None) -> None:
        """Initialize the fetcher.

        Args:
            remote: Remote log used for downloads
            retry_config: Retry policy (defaults to :func:`default_attachment_retry`)
        """
        self.remote = remote
        self.retry_config = retry_config or default_attachment_retry()
        self._entries: dict[str, AttachmentEntry] = {}
        # One task per ref currently downloading; the coalescing point
        self._inflight: dict[str, asyncio.Task[bytes]] = {}
        self._background: set[asyncio.Task[None]] = set()

    def get(self, ref: str) -> AttachmentEntry | None:
        """Current state of an attachment, or None if never requested."""
        return self._entries.get(ref)

    def status(self, ref: str) -> AttachmentStatus | None:
        entry = self._entries.get(ref)
        return entry.status if entry else None

    async def fetch(self, attachment: AttachmentRef) -> bytes:
        """Return the blob of an attachment, downloading it if needed.

        Raises:
            DownloadExhaustedError: If every allowed attempt failed
        """
        entry = self._entries.get(attachment.ref)
        if entry is not None and entry.status == AttachmentStatus.LOADED and entry.blob is not None:
            return entry.blob

        task = self._inflight.get(attachment.ref)
        if task is None:
            self._entries[attachment.ref] = AttachmentEntry(
                ref=attachment.ref, status=AttachmentStatus.LOADING
            )
            task = asyncio.create_task(self._download(attachment))
            self._inflight[attachment.ref] = task
            task.add_done_callback(lambda _t, ref=attachment.ref: self._inflight.pop(ref, None))

        # Shield so one caller's cancellation leaves the shared download running
        return await asyncio.shield(task)

    def prefetch(self, attachments: Iterable[AttachmentRef]) -> None:
        """Start background downloads; failures only show up as ERROR status."""
        for attachment in attachments:
            entry = self._entries.get(attachment.ref)
            if entry is not None and entry.status != AttachmentStatus.ERROR:
                continue
            task = asyncio.create_task(self._fetch_quietly(attachment))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _fetch_quietly(self, attachment: AttachmentRef) -> None:
        try:
            await self.fetch(attachment)
        except DownloadExhaustedError:
            pass

    async def _download(self, attachment: AttachmentRef) -> bytes:
        attempts = 0

        async def attempt() -> bytes:
            nonlocal attempts
            attempts += 1
            return await self.remote.download_attachment(attachment)

        try:
            blob = await retry_with_backoff(
                attempt,
                config=self.retry_config,
                context_msg=f"attachment {attachment.ref}",
            )
        except asyncio.CancelledError:
            self._entries.pop(attachment.ref, None)
            raise
        except Exception as e:
            logger.error(
                "Giving up on attachment %s after %d attempts: %s", attachment.ref, attempts, e
            )
            self._entries[attachment.ref] = AttachmentEntry(
                ref=attachment.ref,
                status=AttachmentStatus.ERROR,
                error=str(e),
                attempts=attempts,
                updated=datetime.now(UTC),
            )
            raise DownloadExhaustedError(attachment.ref, attempts, e) from e

        self._entries[attachment.ref] = AttachmentEntry(
            ref=attachment.ref,
            status=AttachmentStatus.LOADED,
            blob=blob,
            attempts=attempts,
            updated=datetime.now(UTC),
        )
        return blob

    async def close(self) -> None:
        """Cancel outstanding downloads."""
        tasks = [*self._background, *self._inflight.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._inflight.clear()
        # Downloads cancelled before their first step never cleaned up
        self._entries = {
            ref: entry
            for ref, entry in self._entries.items()
            if entry.status != AttachmentStatus.LOADING
        }
