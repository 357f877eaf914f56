"""
Backward pagination over a bucketed remote log.

Drives the cache until a target number of items is visible, using as
few remote calls as possible:

1. List bucket refs backward in chunks (parallel within a chunk) until
   the target is reached, history starts, or the bucket ceiling is hit.
2. Trim trailing buckets that only exist because of chunk overshoot.
3. Diff the listed refs against the bucket index.
4. Fetch all missing bodies in one batched call.
5. Hydrate the page, then upsert and index it as one batch.

Remote failures propagate to the caller as NetworkUnavailableError;
anything merged before the failure stays merged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..attachments import AttachmentFetcher
from ..buckets import BucketIndex
from ..cache import ItemCache
from ..config import CacheConfig
from ..events import ChangeNotifier
from ..exceptions import LogCacheError, LogNotRegisteredError, NetworkUnavailableError
from ..local.state_store import LocalStateStore
from ..logging_utils import CacheLoggerAdapter
from ..remote.base import RemoteLog
from ..types import Item, ItemBody, ItemRef, ItemStatus, LogInfo
from .ingest import ingest_items

logger = logging.getLogger(__name__)

NO_CURSOR = -1


@dataclass
class SyncResult:
    """Outcome of one pagination pass."""

    log_id: str
    start_bucket: int
    buckets_listed: list[int] = field(default_factory=list)
    buckets_retained: list[int] = field(default_factory=list)
    remote_count: int = 0
    requested: int = 0
    hydrated: int = 0
    unresolved: set[ItemRef] = field(default_factory=set)
    duration_ms: int = 0

    @property
    def exhausted(self) -> bool:
        """True when the pass reached bucket 0."""
        return 0 in self.buckets_listed


@dataclass
class _LogState:
    log: LogInfo
    index: BucketIndex
    log_adapter: CacheLoggerAdapter
    cursor: int = NO_CURSOR
    last_result: SyncResult | None = None

    def advance_cursor(self, bucket: int) -> None:
        # Only ever moves toward older buckets
        if self.cursor == NO_CURSOR or bucket < self.cursor:
            self.cursor = bucket


class SyncEngine:
    """Bucketed pagination and missing-item fetch for registered logs.

    Example:
        >>> engine = SyncEngine(remote, cache, attachments)
        >>> await engine.register_log(LogInfo("conv-1", epoch))
        >>> await engine.load_current_window("conv-1", target_count=20)
        >>> await engine.load_older("conv-1", target_count=20)
    """

    def __init__(
        self,
        remote: RemoteLog,
        cache: ItemCache,
        attachments: AttachmentFetcher | None = None,
        config: CacheConfig | None = None,
        store: LocalStateStore | None = None,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            remote: Remote log to paginate
            cache: Item cache receiving hydrated items
            attachments: Fetcher triggered for referenced attachments
            config: Pagination defaults
            store: Persistence backend for bucket indexes
            notifier: Receives index change events
        """
        self.remote = remote
        self.cache = cache
        self.attachments = attachments
        self.config = config or CacheConfig()
        self.store = store
        self.notifier = notifier
        self._logs: dict[str, _LogState] = {}

    async def register_log(self, log: LogInfo) -> BucketIndex:
        """Start tracking a log, loading any persisted index and items.

        A log without its own bucket width uses the configured one.
        Registering a log twice returns the existing index.
        """
        existing = self._logs.get(log.log_id)
        if existing is not None:
            return existing.index

        log = log.with_default_width(self.config.bucket_width)
        index = await BucketIndex.load(log, self.store, self.notifier)
        loaded = await self.cache.load(log.log_id)
        self._logs[log.log_id] = _LogState(
            log=log,
            index=index,
            log_adapter=CacheLoggerAdapter(logger, {"log_id": log.log_id}),
        )
        logger.info(
            "Registered log %s (%d known refs, %d cached items)",
            log.log_id,
            index.total_known(),
            loaded,
        )
        return index

    def is_registered(self, log_id: str) -> bool:
        return log_id in self._logs

    def _state(self, log_id: str) -> _LogState:
        state = self._logs.get(log_id)
        if state is None:
            raise LogNotRegisteredError(log_id)
        return state

    def index(self, log_id: str) -> BucketIndex:
        return self._state(log_id).index

    def log_info(self, log_id: str) -> LogInfo:
        return self._state(log_id).log

    def cursor(self, log_id: str) -> int:
        """Oldest bucket with a completed pass, or -1 if none."""
        return self._state(log_id).cursor

    def reset_log(self, log_id: str) -> None:
        """Forget pagination progress after the log itself was reset."""
        self._state(log_id).cursor = NO_CURSOR

    def last_result(self, log_id: str) -> SyncResult | None:
        return self._state(log_id).last_result

    def current_bucket(self, log_id: str, now: datetime | None = None) -> int:
        return self._state(log_id).index.bucket_of(now or datetime.now(UTC))

    async def load_current_window(
        self,
        log_id: str,
        target_count: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Establish the initial visible window, starting from now's bucket."""
        return await self.load_backward(
            log_id, self.current_bucket(log_id, now), target_count
        )

    async def load_older(self, log_id: str, target_count: int | None = None) -> int:
        """Load history older than what pagination has covered so far.

        Returns:
            Newly hydrated items; 0 once the start of history was reached
        """
        state = self._state(log_id)
        if state.cursor != NO_CURSOR:
            start = state.cursor - 1
        else:
            confirmed = [i for i in self.cache.list(log_id) if i.status == ItemStatus.CONFIRMED]
            if confirmed:
                start = confirmed[0].bucket_number - 1
            else:
                start = self.current_bucket(log_id)

        if start < 0:
            state.log_adapter.debug("Start of history reached, nothing older to load")
            return 0
        return await self.load_backward(log_id, start, target_count)

    async def load_backward(
        self,
        log_id: str,
        start_bucket: int,
        target_count: int | None = None,
        bucket_chunk_size: int | None = None,
        max_buckets_to_fetch: int | None = None,
    ) -> int:
        """Paginate backward from ``start_bucket`` until ``target_count`` is met.

        ``target_count`` is a lower bound on effort rather than an exact
        output size: chunked listing may overshoot by part of a chunk.

        Args:
            log_id: Registered log to paginate
            start_bucket: Newest bucket to examine
            target_count: Remote refs to accumulate before stopping
            bucket_chunk_size: Buckets listed in parallel per round
            max_buckets_to_fetch: Ceiling on buckets listed

        Returns:
            Number of newly hydrated items (0 means nothing new)

        Raises:
            NetworkUnavailableError: If listing or fetching fails
        """
        state = self._state(log_id)
        target = self.config.target_count if target_count is None else target_count
        chunk_size = (
            self.config.bucket_chunk_size if bucket_chunk_size is None else bucket_chunk_size
        )
        max_buckets = (
            self.config.max_buckets_to_fetch
            if max_buckets_to_fetch is None
            else max_buckets_to_fetch
        )
        if chunk_size < 1:
            raise ValueError(f"bucket_chunk_size must be >= 1, got {chunk_size}")

        started = time.monotonic()
        result = SyncResult(log_id=log_id, start_bucket=start_bucket)

        listed = await self._list_backward(state, start_bucket, target, chunk_size, max_buckets)
        result.buckets_listed = [bucket for bucket, _ in listed]

        retained = self._trim_overshoot(listed, target)
        result.buckets_retained = [bucket for bucket, _ in retained]
        result.remote_count = sum(len(ids) for _, ids in retained)

        missing: set[ItemRef] = set()
        listed_in: dict[ItemRef, int] = {}
        for bucket, remote_ids in retained:
            bucket_missing = state.index.missing_against(bucket, remote_ids)
            missing |= bucket_missing
            for ref in bucket_missing:
                listed_in[ref] = bucket
        result.requested = len(missing)

        if missing:
            bodies = await self._fetch_items(log_id, missing)
            resolved, added = await self._hydrate(state, bodies, listed_in)
            # A concurrent push may have cached some of these first
            result.hydrated = len(added)
            result.unresolved = missing - resolved
            if result.unresolved:
                state.log_adapter.warning(
                    "PARTIAL_FETCH: %d of %d requested items could not be resolved",
                    len(result.unresolved),
                    len(missing),
                )

        if retained:
            state.advance_cursor(retained[-1][0])

        result.duration_ms = int((time.monotonic() - started) * 1000)
        state.last_result = result
        state.log_adapter.info(
            "Paginated from bucket %d: listed=%d retained=%d requested=%d hydrated=%d",
            start_bucket,
            len(result.buckets_listed),
            len(result.buckets_retained),
            result.requested,
            result.hydrated,
        )
        return result.hydrated

    async def _list_backward(
        self,
        state: _LogState,
        start_bucket: int,
        target: int,
        chunk_size: int,
        max_buckets: int,
    ) -> list[tuple[int, frozenset[ItemRef]]]:
        """List buckets newest-to-oldest in chunks.

        Returns:
            (bucket, remote refs) pairs, newest bucket first
        """
        listed: list[tuple[int, frozenset[ItemRef]]] = []
        count = 0
        buckets_fetched = 0
        bucket = start_bucket

        while count <= target and bucket >= 0 and buckets_fetched <= max_buckets:
            # Oldest-first within the chunk
            chunk = list(range(max(bucket - chunk_size + 1, 0), bucket + 1))
            results = await asyncio.gather(
                *(self._list_bucket(state.log.log_id, b) for b in chunk)
            )
            for b, ids in reversed(list(zip(chunk, results))):
                listed.append((b, frozenset(ids)))
                count += len(ids)
            buckets_fetched += len(chunk)
            bucket -= chunk_size
            state.log_adapter.debug(
                "Listed buckets %d..%d (%d refs so far)", chunk[0], chunk[-1], count
            )

        return listed

    @staticmethod
    def _trim_overshoot(
        listed: list[tuple[int, frozenset[ItemRef]]], target: int
    ) -> list[tuple[int, frozenset[ItemRef]]]:
        """Drop oldest buckets while the rest still exceeds the target."""
        retained = list(listed)
        while len(retained) > 1 and sum(len(ids) for _, ids in retained[:-1]) > target:
            retained.pop()
        return retained

    async def _list_bucket(self, log_id: str, bucket: int) -> set[ItemRef]:
        try:
            return set(await self.remote.list_bucket_ids(log_id, bucket))
        except LogCacheError:
            raise
        except (ConnectionError, TimeoutError, OSError) as e:
            raise NetworkUnavailableError("list_bucket_ids", log_id, e) from e

    async def _fetch_items(self, log_id: str, refs: Iterable[ItemRef]) -> list[ItemBody]:
        try:
            return list(await self.remote.fetch_items(log_id, set(refs)))
        except LogCacheError:
            raise
        except (ConnectionError, TimeoutError, OSError) as e:
            raise NetworkUnavailableError("fetch_items", log_id, e) from e

    async def _hydrate(
        self,
        state: _LogState,
        bodies: list[ItemBody],
        listed_in: dict[ItemRef, int],
    ) -> tuple[set[ItemRef], set[ItemRef]]:
        """Ingest fetched bodies under the bucket they were listed in.

        Returns:
            (refs the remote resolved, refs that were new to the cache)
        """
        items: list[Item] = []
        for body in bodies:
            bucket = listed_in.get(body.ref)
            if bucket is None:
                state.log_adapter.warning("Ignoring unrequested item %s", body.ref)
                continue
            if body.bucket is not None and body.bucket != bucket:
                state.log_adapter.warning(
                    "Item %s declares bucket %d but was listed in bucket %d",
                    body.ref,
                    body.bucket,
                    bucket,
                )
            items.append(Item.from_body(state.log.log_id, bucket, body))

        added = await ingest_items(items, self.cache, state.index, self.attachments)
        return {item.ref for item in items}, added
