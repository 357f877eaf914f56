"""Tests for merging pushed items and the push channel client."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
from conftest import DAY, LOG_ID, T0, FakeRemoteLog

from bucket_log_cache.cache import ItemCache
from bucket_log_cache.exceptions import LogNotRegisteredError
from bucket_log_cache.sync.client import PushClient, PushEventType, split_sse_fields
from bucket_log_cache.sync.engine import SyncEngine
from bucket_log_cache.sync.push import PushMerger, notification_preview
from bucket_log_cache.types import Item, ItemBody, ItemStatus


@pytest.fixture
def merger(engine: SyncEngine, cache: ItemCache) -> PushMerger:
    return PushMerger(cache, engine.index, author_id="agent-me")


def pushed(ref: str, timestamp=None, author_id="agent-other", payload=None, bucket=None):
    return ItemBody(
        ref=ref,
        author_id=author_id,
        timestamp=timestamp or T0 + 2 * DAY,
        payload=payload if payload is not None else {"content": f"pushed {ref}"},
        bucket=bucket,
    )


def sse_frame(
    log_id: str, ref: str, event: str = "item_appended", content: str = "pushed"
) -> str:
    data = {
        "log_id": log_id,
        "item": {
            "ref": ref,
            "author_id": "agent-other",
            "timestamp": (T0 + DAY).isoformat(),
            "payload": {"content": content},
            "bucket": 1,
        },
    }
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}"


class TestPushMerger:
    """Tests for PushMerger."""

    async def test_declared_bucket_is_used(
        self, merger: PushMerger, engine: SyncEngine, cache: ItemCache
    ):
        item = await merger.on_push(LOG_ID, pushed("p1", timestamp=T0 + 2 * DAY, bucket=4))

        assert item.bucket_number == 4
        assert engine.index(LOG_ID).known_ids(4) == {"p1"}
        assert cache.get(LOG_ID, "p1").is_confirmed

    async def test_bucket_derived_from_timestamp(self, merger: PushMerger, engine: SyncEngine):
        item = await merger.on_push(LOG_ID, pushed("p1", timestamp=T0 + 3 * DAY))

        assert item.bucket_number == 3
        assert engine.index(LOG_ID).known_ids(3) == {"p1"}

    async def test_push_leaves_cursor_alone(self, merger: PushMerger, engine: SyncEngine):
        await merger.on_push(LOG_ID, pushed("p1"))

        assert engine.cursor(LOG_ID) == -1

    async def test_push_supersedes_pending(self, merger: PushMerger, cache: ItemCache):
        payload = {"content": "on my way"}
        await cache.add_pending(
            Item(
                ref="pending-1",
                log_id=LOG_ID,
                bucket_number=2,
                author_id="agent-me",
                timestamp=T0 + 2 * DAY,
                payload=payload,
                status=ItemStatus.PENDING,
            )
        )

        await merger.on_push(LOG_ID, pushed("C", author_id="agent-me", payload=payload))

        visible = cache.list(LOG_ID)
        assert [i.ref for i in visible] == ["C"]
        assert visible[0].is_confirmed

    async def test_duplicate_push_is_idempotent(
        self, merger: PushMerger, engine: SyncEngine, cache: ItemCache
    ):
        body = pushed("p1")
        await merger.on_push(LOG_ID, body)
        await merger.on_push(LOG_ID, body)

        assert cache.count(LOG_ID) == 1
        assert engine.index(LOG_ID).total_known() == 1

    async def test_unknown_log_raises(self, merger: PushMerger):
        with pytest.raises(LogNotRegisteredError):
            await merger.on_push("conv-unknown", pushed("p1"))


class TestUnread:
    """Tests for unread tracking."""

    async def test_other_author_marks_unread(self, merger: PushMerger):
        await merger.on_push(LOG_ID, pushed("p1", author_id="agent-other"))

        assert merger.has_unread(LOG_ID)
        assert merger.unread_logs() == {LOG_ID}

    async def test_own_item_does_not_mark_unread(self, merger: PushMerger):
        await merger.on_push(LOG_ID, pushed("p1", author_id="agent-me"))

        assert not merger.has_unread(LOG_ID)

    async def test_mark_read(self, merger: PushMerger):
        await merger.on_push(LOG_ID, pushed("p1"))

        merger.mark_read(LOG_ID)

        assert not merger.has_unread(LOG_ID)
        assert merger.unread_logs() == set()


class TestPushDuringPagination:
    """Tests for pushes that interleave with a pagination pass."""

    async def test_push_while_fetch_in_flight(
        self,
        merger: PushMerger,
        engine: SyncEngine,
        remote: FakeRemoteLog,
        cache: ItemCache,
    ):
        remote.populate(LOG_ID, [5], per_bucket=4)
        remote.fetch_gate = asyncio.Event()

        task = asyncio.create_task(engine.load_backward(LOG_ID, 5, target_count=20))
        while not remote.fetch_calls:
            await asyncio.sleep(0)

        # Same item arrives by push before the batched fetch returns
        await merger.on_push(LOG_ID, remote.entries[LOG_ID]["b5-i0"][1])
        fresh = remote.add_item(LOG_ID, "fresh", T0 + 5 * DAY + timedelta(hours=2))
        await merger.on_push(LOG_ID, fresh)

        remote.fetch_gate.set()
        hydrated = await task

        # b5-i0 was already cached by the push
        assert hydrated == 3
        assert engine.last_result(LOG_ID).unresolved == set()
        refs = [i.ref for i in cache.list(LOG_ID)]
        assert len(refs) == len(set(refs))
        assert set(refs) == {"b5-i0", "b5-i1", "b5-i2", "b5-i3", "fresh"}
        assert engine.index(LOG_ID).known_ids(5) == set(refs)

    async def test_pushed_item_not_fetched_again(
        self, merger: PushMerger, engine: SyncEngine, remote: FakeRemoteLog
    ):
        remote.populate(LOG_ID, [5], per_bucket=3)
        await merger.on_push(LOG_ID, remote.entries[LOG_ID]["b5-i0"][1])

        await engine.load_backward(LOG_ID, 5, target_count=20)

        assert remote.fetch_calls[0][1] == {"b5-i1", "b5-i2"}


class TestNotificationPreview:
    """Tests for notification text."""

    def make(self, payload) -> Item:
        return Item(
            ref="r", log_id=LOG_ID, bucket_number=0, author_id="a", timestamp=T0, payload=payload
        )

    def test_short_content_unchanged(self):
        assert notification_preview(self.make({"content": "hello there"})) == "hello there"

    def test_long_content_cut(self):
        text = "x" * 126

        assert notification_preview(self.make({"content": text})) == "x" * 50 + "..."

    def test_boundary_not_cut(self):
        text = "y" * 125

        assert notification_preview(self.make({"content": text})) == text

    def test_plain_string_payload(self):
        assert notification_preview(self.make("plain")) == "plain"


class TestPushClient:
    """Tests for push channel event handling."""

    @pytest.fixture
    def client(self, merger: PushMerger) -> PushClient:
        return PushClient(merger, push_url="https://gateway.example.com/push/")

    def test_strips_trailing_slash(self, client: PushClient):
        assert client.push_url == "https://gateway.example.com/push"

    def test_parse_sse_event(self, client: PushClient):
        event = client._parse_sse_event(sse_frame(LOG_ID, "p1"))

        assert event.event_type == PushEventType.ITEM_APPENDED
        assert event.log_id == LOG_ID
        assert event.body.ref == "p1"
        assert event.body.bucket == 1

    def test_parse_sse_event_without_data(self, client: PushClient):
        assert client._parse_sse_event("event: item_appended") is None

    def test_parse_sse_event_bad_json(self, client: PushClient):
        assert client._parse_sse_event("data: {not json") is None

    async def test_subscribed_log_is_merged(self, client: PushClient, cache: ItemCache):
        received = []
        client.on_item = received.append
        await client.subscribe(LOG_ID)

        item = await client._handle_event(client._parse_sse_event(sse_frame(LOG_ID, "p1")))

        assert item.ref == "p1"
        assert cache.get(LOG_ID, "p1") is not None
        assert received == [item]

    async def test_unsubscribed_log_is_ignored(self, client: PushClient, cache: ItemCache):
        await client.subscribe(LOG_ID)
        await client.unsubscribe(LOG_ID)

        item = await client._handle_event(client._parse_sse_event(sse_frame(LOG_ID, "p1")))

        assert item is None
        assert cache.count(LOG_ID) == 0
        assert client.subscribed_logs == set()

    async def test_error_event_reported(self, client: PushClient):
        errors = []
        client.on_error = errors.append
        event = client._parse_event({"type": "push_error", "error": "overloaded"})

        await client._handle_event(event)

        assert errors == ["overloaded"]

    async def test_start_and_stop(self, client: PushClient, monkeypatch):
        async def idle_loop():
            await asyncio.Event().wait()

        monkeypatch.setattr(client, "_sse_loop", idle_loop)

        await client.start()
        assert client.is_connected()
        await client.stop()

        assert not client.is_connected()


class ChunkedContent:
    """Stands in for a response body delivered in arbitrary byte chunks."""

    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = chunks

    async def iter_any(self):
        for chunk in self.chunks:
            yield chunk


class TestPushStream:
    """Tests for SSE stream framing and the reconnect loop."""

    @pytest.fixture
    def client(self, merger: PushMerger) -> PushClient:
        return PushClient(merger, push_url="https://gateway.example.com/push")

    async def collect(self, client: PushClient, chunks: list[bytes]) -> list:
        return [event async for event in client._parse_sse_stream(ChunkedContent(chunks))]

    async def test_character_split_across_chunks(self, client: PushClient):
        raw = (sse_frame(LOG_ID, "p1", content="café") + "\n\n").encode()
        cut = raw.index("é".encode()) + 1

        events = await self.collect(client, [raw[:cut], raw[cut:]])

        assert [e.body.payload for e in events] == [{"content": "café"}]

    async def test_crlf_delimited_events(self, client: PushClient):
        frames = [sse_frame(LOG_ID, ref).replace("\n", "\r\n") for ref in ("p1", "p2")]
        raw = "".join(frame + "\r\n\r\n" for frame in frames).encode()
        cut = raw.index(b"\r\n\r\n") + 1

        events = await self.collect(client, [raw[:cut], raw[cut:]])

        assert [e.body.ref for e in events] == ["p1", "p2"]

    async def test_incomplete_trailing_frame_is_held(self, client: PushClient):
        raw = (sse_frame(LOG_ID, "p1") + "\n\n" + sse_frame(LOG_ID, "p2")).encode()

        events = await self.collect(client, [raw])

        assert [e.body.ref for e in events] == ["p1"]

    def test_comment_lines_and_multiline_data(self):
        frame = ': keep-alive\nevent: item_appended\ndata: {"log_id":\ndata: "conv-1"}'

        assert split_sse_fields(frame) == ("item_appended", '{"log_id":\n"conv-1"}')

    async def test_clean_close_waits_before_reconnecting(self, client: PushClient, monkeypatch):
        connections = 0
        delays = []

        async def closed_by_server():
            nonlocal connections
            connections += 1

        async def fake_sleep(delay):
            delays.append(delay)
            if len(delays) == 2:
                client._running = False

        monkeypatch.setattr(client, "_sse_loop", closed_by_server)
        monkeypatch.setattr("bucket_log_cache.sync.client.asyncio.sleep", fake_sleep)
        client._running = True

        await client._connection_loop()

        assert connections == 2
        assert delays == [5.0, 5.0]

    async def test_clean_close_without_auto_reconnect_ends(self, merger: PushMerger, monkeypatch):
        client = PushClient(
            merger, push_url="https://gateway.example.com/push", auto_reconnect=False
        )
        connections = []

        async def closed_by_server():
            connections.append(1)

        monkeypatch.setattr(client, "_sse_loop", closed_by_server)
        client._running = True

        await client._connection_loop()

        assert connections == [1]
