"""
Push channel client.

Keeps a long-lived connection to the gateway's push endpoint and hands
every appended item it announces to a PushMerger. Two transports are
supported:

- Server-Sent Events on ``{push_url}/events?logs=a,b`` (default, plain
  HTTP so it passes through proxies)
- WebSocket on ``{push_url}/ws``, subscribing with a JSON message

Either way a frame carries ``{"type": ..., "log_id": ..., "item": {...}}``.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import aiohttp

from ..exceptions import NetworkUnavailableError
from ..types import Item, ItemBody
from .push import PushMerger

logger = logging.getLogger(__name__)


class PushEventType(Enum):
    """Kinds of frames sent over the push channel."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ITEM_APPENDED = "item_appended"
    PUSH_ERROR = "push_error"


@dataclass
class PushEvent:
    """One decoded push frame."""

    event_type: PushEventType
    log_id: str | None = None
    body: ItemBody | None = None
    data: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None


def split_sse_fields(frame: str) -> tuple[str | None, str | None]:
    """Extract the ``event`` name and joined ``data`` of one SSE frame.

    Comment lines (starting with ``:``) are skipped and repeated ``data``
    lines are joined with newlines.
    """
    event_name: str | None = None
    data_lines: list[str] = []
    for line in frame.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value.strip()
        elif name == "data":
            data_lines.append(value)
    return event_name, "\n".join(data_lines) if data_lines else None


class PushClient:
    """Receives pushed items for the subscribed logs.

    Example:
        >>> push = PushClient(merger, push_url="https://gateway.example.com/push")
        >>> push.on_item = lambda item: print(f"New item: {item.ref}")
        >>> await push.subscribe("conv-1")
        >>> await push.start()
    """

    def __init__(
        self,
        merger: PushMerger,
        push_url: str,
        auth_token: str | None = None,
        use_websocket: bool = False,
        auto_reconnect: bool = True,
        reconnect_delay: float = 5.0,
    ) -> None:
        """Initialize the push client.

        Args:
            merger: Receives pushed items
            push_url: Base URL of the push endpoint
            auth_token: Optional bearer token
            use_websocket: Use the WebSocket transport instead of SSE
            auto_reconnect: Reconnect whenever the connection ends
            reconnect_delay: Seconds between connection attempts
        """
        self.merger = merger
        self.push_url = push_url.rstrip("/")
        self.auth_token = auth_token
        self.use_websocket = use_websocket
        self.auto_reconnect = auto_reconnect
        self.reconnect_delay = reconnect_delay

        self._subscribed_logs: set[str] = set()
        self._running = False
        self._connection_task: asyncio.Task[None] | None = None

        self.on_connected: Callable[[], None] | None = None
        self.on_disconnected: Callable[[], None] | None = None
        self.on_item: Callable[[Item], None] | None = None
        self.on_error: Callable[[str], None] | None = None

    async def start(self) -> None:
        """Connect in the background. A second call is a no-op."""
        if self._running:
            return
        self._running = True
        self._connection_task = asyncio.create_task(self._connection_loop())
        logger.info("Push client started: %s", self.push_url)

    async def stop(self) -> None:
        self._running = False
        task, self._connection_task = self._connection_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Push client stopped")

    async def subscribe(self, log_id: str) -> None:
        """Receive pushes for a log from the next connection on."""
        self._subscribed_logs.add(log_id)
        logger.debug("Subscribed to log: %s", log_id)

    async def unsubscribe(self, log_id: str) -> None:
        self._subscribed_logs.discard(log_id)
        logger.debug("Unsubscribed from log: %s", log_id)

    @property
    def subscribed_logs(self) -> set[str]:
        return set(self._subscribed_logs)

    def is_connected(self) -> bool:
        return self._running and self._connection_task is not None

    def _headers(self, accept: str | None = None) -> dict[str, str]:
        headers = {}
        if accept:
            headers["Accept"] = accept
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def _connection_loop(self) -> None:
        """Hold the connection open, reconnecting after each drop or close."""
        transport = self._websocket_loop if self.use_websocket else self._sse_loop
        while self._running:
            try:
                await transport()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Push connection error: %s", e)
                if self.on_error:
                    self.on_error(str(e))

            # Also reached when the server closed the stream cleanly
            if not (self.auto_reconnect and self._running):
                break
            logger.info("Reconnecting push channel in %ss", self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    async def _sse_loop(self) -> None:
        """Consume one SSE connection until the server ends it."""
        params = {"logs": ",".join(sorted(self._subscribed_logs))}

        async with aiohttp.ClientSession() as session:
            async with session.get(
                f"{self.push_url}/events",
                params=params,
                headers=self._headers("text/event-stream"),
            ) as response:
                if response.status != 200:
                    raise NetworkUnavailableError(
                        "push_connect", cause=RuntimeError(f"HTTP {response.status}")
                    )
                self._notify_connected()
                async for event in self._parse_sse_stream(response.content):
                    await self._handle_event(event)

        self._notify_disconnected()

    async def _websocket_loop(self) -> None:
        """Consume one WebSocket connection until the server ends it."""
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(
                f"{self.push_url}/ws", headers=self._headers()
            ) as ws:
                self._notify_connected()
                await ws.send_json(
                    {"type": "subscribe", "logs": sorted(self._subscribed_logs)}
                )

                async for message in ws:
                    if message.type == aiohttp.WSMsgType.TEXT:
                        try:
                            frame = json.loads(message.data)
                        except json.JSONDecodeError:
                            logger.warning("Dropping non-JSON push frame")
                            continue
                        await self._handle_event(self._parse_event(frame))
                    elif message.type == aiohttp.WSMsgType.ERROR:
                        raise NetworkUnavailableError(
                            "push_receive",
                            cause=ws.exception() or RuntimeError("WebSocket error"),
                        )

        self._notify_disconnected()

    async def _parse_sse_stream(self, content: Any) -> AsyncIterator[PushEvent]:
        """Split a raw SSE byte stream into events.

        Bytes are decoded incrementally, so a character split across two
        network chunks is reassembled rather than rejected.
        """
        decoder = codecs.getincrementaldecoder("utf-8")()
        pending = ""

        async for chunk in content.iter_any():
            # CRLF-delimited streams are parsed as LF
            pending = (pending + decoder.decode(chunk)).replace("\r\n", "\n")
            *frames, pending = pending.split("\n\n")
            for frame in frames:
                event = self._parse_sse_event(frame)
                if event is not None:
                    yield event

    def _parse_sse_event(self, frame: str) -> PushEvent | None:
        """Decode one SSE frame; None for keep-alives and bad JSON."""
        event_name, data = split_sse_fields(frame)
        if not data:
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Failed to parse SSE data: %s", data)
            return None
        return self._parse_event(payload, event_name)

    def _parse_event(
        self,
        frame: dict[str, Any],
        event_name: str | None = None,
    ) -> PushEvent:
        """Build a PushEvent from a decoded frame.

        Unknown frame types are treated as appended items.
        """
        try:
            event_type = PushEventType(
                event_name or frame.get("type", PushEventType.ITEM_APPENDED.value)
            )
        except ValueError:
            event_type = PushEventType.ITEM_APPENDED

        body = None
        if "item" in frame:
            try:
                body = ItemBody.from_dict(frame["item"])
            except (KeyError, ValueError) as e:
                logger.warning("Dropping malformed pushed item: %s", e)

        return PushEvent(
            event_type=event_type,
            log_id=frame.get("log_id"),
            body=body,
            data=frame,
            error=frame.get("error"),
        )

    async def _handle_event(self, event: PushEvent) -> Item | None:
        """Dispatch one event; returns the merged item for appends."""
        if event.log_id and event.log_id not in self._subscribed_logs:
            return None

        if event.event_type == PushEventType.ITEM_APPENDED:
            if event.body is None or not event.log_id:
                return None
            item = await self.merger.on_push(event.log_id, event.body)
            if self.on_item:
                self.on_item(item)
            return item

        if event.event_type == PushEventType.PUSH_ERROR and self.on_error:
            self.on_error(event.error or "Unknown push error")
        elif event.event_type == PushEventType.DISCONNECTED:
            self._notify_disconnected()
        return None

    def _notify_connected(self) -> None:
        if self.on_connected:
            self.on_connected()

    def _notify_disconnected(self) -> None:
        if self.on_disconnected:
            self.on_disconnected()
