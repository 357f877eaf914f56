"""
Bucket partitioning and the per-log bucket index.

A log is partitioned into fixed-width time buckets numbered from the
log's creation epoch. Every writer and reader must compute the same
bucket for the same timestamp, so :func:`bucket_of` is the only place
the partition is defined.

The index records which item refs are known to exist in each bucket. It
only ever grows, and it only records refs whose bodies were actually
hydrated, so it is always a lower bound of what the remote log holds.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta

from .events import ChangeEvent, ChangeNotifier, ChangeType
from .exceptions import InvariantViolationError
from .local.state_store import LocalStateStore
from .types import ItemRef, LogInfo

logger = logging.getLogger(__name__)


def bucket_of(timestamp: datetime, epoch: datetime, bucket_width: timedelta) -> int:
    """Bucket number containing ``timestamp``.

    Rounds half up, matching JavaScript ``Math.round`` so peers written in
    other languages agree on the partition.

    Raises:
        InvariantViolationError: If the timestamp falls in a negative bucket
    """
    bucket = math.floor((timestamp - epoch) / bucket_width + 0.5)
    if bucket < 0:
        raise InvariantViolationError(
            f"timestamp {timestamp.isoformat()} precedes log epoch {epoch.isoformat()}",
            bucket=bucket,
        )
    return bucket


def _check_bucket(bucket: int, log_id: str) -> None:
    if bucket < 0:
        raise InvariantViolationError("negative bucket number", log_id=log_id, bucket=bucket)


class BucketIndex:
    """Known item refs per bucket for a single log.

    Mutations are serialized through one lock per index. Each bucket's set
    is replaced rather than mutated, so readers always see a consistent
    snapshot.
    """

    def __init__(
        self,
        log: LogInfo,
        store: LocalStateStore | None = None,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        """Initialize an empty index.

        Args:
            log: Log this index belongs to
            store: Persistence backend (None keeps the index in memory)
            notifier: Receives INDEX_CHANGED events
        """
        self.log = log
        self._store = store
        self._notifier = notifier
        self._buckets: dict[int, frozenset[ItemRef]] = {}
        self._lock = asyncio.Lock()

    @classmethod
    async def load(
        cls,
        log: LogInfo,
        store: LocalStateStore | None = None,
        notifier: ChangeNotifier | None = None,
    ) -> BucketIndex:
        """Create an index populated from persisted state."""
        index = cls(log, store, notifier)
        if store is not None:
            index._buckets = await store.load_index(log.log_id)
            logger.debug(
                "Loaded index for log %s: %d buckets, %d refs",
                log.log_id,
                len(index._buckets),
                index.total_known(),
            )
        return index

    @property
    def log_id(self) -> str:
        return self.log.log_id

    def bucket_of(self, timestamp: datetime) -> int:
        return bucket_of(timestamp, self.log.epoch, self.log.width)

    def known_ids(self, bucket: int) -> frozenset[ItemRef]:
        """Refs known in a bucket; empty if the bucket was never touched."""
        _check_bucket(bucket, self.log_id)
        return self._buckets.get(bucket, frozenset())

    def missing_against(self, bucket: int, remote_ids: Iterable[ItemRef]) -> set[ItemRef]:
        """Remote refs of a bucket that the index does not know yet."""
        return set(remote_ids) - self.known_ids(bucket)

    async def record_known(self, bucket: int, ids: Iterable[ItemRef]) -> None:
        """Union refs into a bucket and persist. Idempotent."""
        await self.record_known_many({bucket: ids})

    async def record_known_many(self, refs_by_bucket: Mapping[int, Iterable[ItemRef]]) -> None:
        """Union refs into several buckets with a single swap and write."""
        incoming = {}
        for bucket, ids in refs_by_bucket.items():
            _check_bucket(bucket, self.log_id)
            incoming[bucket] = frozenset(ids)

        added: set[ItemRef] = set()
        async with self._lock:
            buckets = dict(self._buckets)
            for bucket, ids in incoming.items():
                current = buckets.get(bucket, frozenset())
                new = ids - current
                if new:
                    buckets[bucket] = current | new
                    added |= new
            if not added:
                return
            self._buckets = buckets
            if self._store is not None:
                await self._store.save_index(self.log, self._buckets)

        if self._notifier is not None:
            self._notifier.notify(
                ChangeEvent(self.log_id, ChangeType.INDEX_CHANGED, refs=frozenset(added))
            )

    def buckets(self) -> list[int]:
        """Bucket numbers with at least one known ref, newest first."""
        return sorted((b for b, refs in self._buckets.items() if refs), reverse=True)

    def oldest_bucket(self) -> int | None:
        known = self.buckets()
        return known[-1] if known else None

    def total_known(self) -> int:
        return sum(len(refs) for refs in self._buckets.values())

    def snapshot(self) -> dict[int, frozenset[ItemRef]]:
        return dict(self._buckets)
