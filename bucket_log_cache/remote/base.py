"""
Abstract remote log interface.

Defines the contract the cache consumes from the replicated log. The
cache never talks to a transport directly; implementations are injected
into the sync engine, the push merger and the attachment fetcher.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from ..types import AttachmentRef, ItemBody, ItemRef


class RemoteLog(ABC):
    """Interface to the authoritative remote log.

    Implementations raise NetworkUnavailableError when the transport
    cannot be reached.
    """

    @abstractmethod
    async def list_bucket_ids(self, log_id: str, bucket: int) -> set[ItemRef]:
        """List every ref the remote holds for a bucket.

        Must be idempotent and side-effect free. May return an empty set.
        """
        ...

    @abstractmethod
    async def fetch_items(self, log_id: str, refs: Iterable[ItemRef]) -> list[ItemBody]:
        """Fetch bodies for many refs in one call.

        Refs the remote can no longer resolve are simply absent from the
        result.
        """
        ...

    @abstractmethod
    async def append_item(
        self,
        log_id: str,
        payload: Any,
        bucket: int,
        attachments: Iterable[AttachmentRef] = (),
    ) -> ItemBody:
        """Append a new entry and return it as confirmed by the remote."""
        ...

    @abstractmethod
    async def download_attachment(self, attachment: AttachmentRef) -> bytes:
        """Download the raw bytes of an attachment."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        return None
