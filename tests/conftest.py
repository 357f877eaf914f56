"""
Shared test configuration and fixtures.

Provides an in-memory remote log that records every call, so tests can
assert on round trips, inject failures and hold calls open to interleave
concurrent operations.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from bucket_log_cache.buckets import bucket_of
from bucket_log_cache.cache import ItemCache
from bucket_log_cache.config import CacheConfig
from bucket_log_cache.exceptions import NetworkUnavailableError
from bucket_log_cache.remote.base import RemoteLog
from bucket_log_cache.sync.engine import SyncEngine
from bucket_log_cache.types import AttachmentRef, ItemBody, ItemRef, LogInfo

logger = logging.getLogger(__name__)

T0 = datetime(2024, 1, 1, tzinfo=UTC)
DAY = timedelta(days=1)
LOG_ID = "conv-1"


class FakeRemoteLog(RemoteLog):
    """In-memory remote log for tests."""

    def __init__(self) -> None:
        self.logs: dict[str, LogInfo] = {}
        # log_id -> ref -> (bucket, body)
        self.entries: dict[str, dict[ItemRef, tuple[int, ItemBody]]] = {}
        self.blobs: dict[str, bytes] = {}

        self.list_calls: list[tuple[str, int]] = []
        self.fetch_calls: list[tuple[str, set[ItemRef]]] = []
        self.append_calls: list[tuple[str, Any]] = []
        self.download_calls: list[str] = []

        self.unresolvable: set[ItemRef] = set()
        self.failing_buckets: set[int] = set()
        self.fail_fetch = False
        self.fail_append = False
        self.download_failures: dict[str, int] = {}
        self.fetch_gate: asyncio.Event | None = None
        self.download_gate: asyncio.Event | None = None
        self.closed = False
        self._counter = 0

    def add_log(self, log: LogInfo) -> None:
        self.logs[log.log_id] = log
        self.entries.setdefault(log.log_id, {})

    def add_item(
        self,
        log_id: str,
        ref: ItemRef,
        timestamp: datetime,
        author_id: str = "agent-other",
        payload: Any = None,
        attachments: Iterable[AttachmentRef] = (),
        bucket: int | None = None,
    ) -> ItemBody:
        log = self.logs[log_id]
        if bucket is None:
            bucket = bucket_of(timestamp, log.epoch, log.width)
        body = ItemBody(
            ref=ref,
            author_id=author_id,
            timestamp=timestamp,
            payload=payload if payload is not None else {"content": f"message {ref}"},
            attachments=tuple(attachments),
            bucket=bucket,
        )
        self.entries[log_id][ref] = (bucket, body)
        return body

    def populate(self, log_id: str, buckets: Iterable[int], per_bucket: int) -> list[ItemBody]:
        """Add ``per_bucket`` items spread over the first hours of each bucket."""
        log = self.logs[log_id]
        bodies = []
        for b in buckets:
            for i in range(per_bucket):
                ts = log.epoch + b * log.width + timedelta(minutes=i)
                bodies.append(self.add_item(log_id, f"b{b}-i{i}", ts))
        return bodies

    def refs_in(self, log_id: str, bucket: int) -> set[ItemRef]:
        return {ref for ref, (b, _) in self.entries[log_id].items() if b == bucket}

    async def list_bucket_ids(self, log_id: str, bucket: int) -> set[ItemRef]:
        self.list_calls.append((log_id, bucket))
        await asyncio.sleep(0)
        if bucket in self.failing_buckets:
            raise NetworkUnavailableError("list_bucket_ids", log_id)
        return self.refs_in(log_id, bucket)

    async def fetch_items(self, log_id: str, refs: Iterable[ItemRef]) -> list[ItemBody]:
        refs = set(refs)
        self.fetch_calls.append((log_id, refs))
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fail_fetch:
            raise ConnectionError("transport down")
        entries = self.entries[log_id]
        return [entries[r][1] for r in refs if r in entries and r not in self.unresolvable]

    async def append_item(
        self,
        log_id: str,
        payload: Any,
        bucket: int,
        attachments: Iterable[AttachmentRef] = (),
    ) -> ItemBody:
        self.append_calls.append((log_id, payload))
        await asyncio.sleep(0)
        if self.fail_append:
            raise NetworkUnavailableError("append_item", log_id)
        self._counter += 1
        log = self.logs[log_id]
        return self.add_item(
            log_id,
            f"remote-{self._counter}",
            log.epoch + bucket * log.width,
            author_id="agent-me",
            payload=payload,
            attachments=attachments,
            bucket=bucket,
        )

    async def download_attachment(self, attachment: AttachmentRef) -> bytes:
        self.download_calls.append(attachment.ref)
        if self.download_gate is not None:
            await self.download_gate.wait()
        remaining = self.download_failures.get(attachment.ref, 0)
        if remaining > 0:
            self.download_failures[attachment.ref] = remaining - 1
            raise NetworkUnavailableError("download_attachment")
        return self.blobs.get(attachment.ref, b"blob:" + attachment.ref.encode())

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def log_info() -> LogInfo:
    return LogInfo(LOG_ID, T0, DAY)


@pytest.fixture
def remote(log_info: LogInfo) -> FakeRemoteLog:
    fake = FakeRemoteLog()
    fake.add_log(log_info)
    return fake


@pytest.fixture
def config() -> CacheConfig:
    return CacheConfig(author_id="agent-me", attachment_backoff_base=0.0)


@pytest.fixture
def cache() -> ItemCache:
    return ItemCache()


@pytest.fixture
async def engine(
    remote: FakeRemoteLog, cache: ItemCache, config: CacheConfig, log_info: LogInfo
) -> SyncEngine:
    sync_engine = SyncEngine(remote, cache, config=config)
    await sync_engine.register_log(log_info)
    return sync_engine
