"""
Change notifications for cached logs.

Observers register per log and are called whenever the cache or the
bucket index of that log changes, so a UI layer can re-render without
the cache knowing anything about it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

logger = logging.getLogger(__name__)


class ChangeType(Enum):
    """What changed in a log."""

    ITEMS_CHANGED = "items_changed"
    INDEX_CHANGED = "index_changed"


@dataclass(frozen=True)
class ChangeEvent:
    """A change to one log's cached state."""

    log_id: str
    change_type: ChangeType
    refs: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


ChangeCallback = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """Per-log publish/subscribe for cache changes."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[ChangeCallback]] = {}

    def subscribe(self, log_id: str, callback: ChangeCallback) -> Callable[[], None]:
        """Register a callback for changes to a log.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.setdefault(log_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(log_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def subscriber_count(self, log_id: str) -> int:
        return len(self._subscribers.get(log_id, []))

    def notify(self, event: ChangeEvent) -> None:
        """Deliver an event to every subscriber of its log."""
        for callback in list(self._subscribers.get(event.log_id, [])):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Change subscriber failed for log %s (%s)",
                    event.log_id,
                    event.change_type.value,
                )
