"""
Core types for the bucketed log cache.

Defines the log descriptor, the raw item bodies returned by the remote
log, hydrated items held in the cache, and attachment references.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

ItemRef = str

# Timestamp range of items contained within a single bucket
DEFAULT_BUCKET_WIDTH = timedelta(days=1)


def parse_timestamp(value: Any) -> datetime:
    """Parse a timestamp from ISO text, epoch milliseconds or a datetime.

    Naive datetimes are taken to be UTC.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        ts = datetime.fromtimestamp(value / 1000, tz=UTC)
    elif isinstance(value, str):
        ts = datetime.fromisoformat(value)
    else:
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


class ItemStatus(Enum):
    """Lifecycle of a hydrated item."""

    PENDING = "pending"  # Locally authored, not yet acknowledged
    CONFIRMED = "confirmed"  # Acknowledged by the remote log
    ERROR = "error"  # Remote rejected the write


class AttachmentStatus(Enum):
    """Download state of an attachment blob."""

    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


@dataclass(frozen=True)
class LogInfo:
    """Descriptor of one remote log.

    Attributes:
        log_id: Identifier of the log
        epoch: Creation time of the log; bucket 0 starts here
        bucket_width: Width of one time bucket (None = the cache's
            configured width)
    """

    log_id: str
    epoch: datetime
    bucket_width: timedelta | None = None

    @property
    def width(self) -> timedelta:
        return DEFAULT_BUCKET_WIDTH if self.bucket_width is None else self.bucket_width

    def with_default_width(self, bucket_width: timedelta) -> LogInfo:
        """This descriptor, with ``bucket_width`` filled in if it was unset."""
        if self.bucket_width is not None:
            return self
        return replace(self, bucket_width=bucket_width)

    def to_dict(self) -> dict[str, Any]:
        return {
            "log_id": self.log_id,
            "epoch": self.epoch.isoformat(),
            "bucket_width_seconds": self.width.total_seconds(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogInfo:
        return cls(
            log_id=data["log_id"],
            epoch=parse_timestamp(data["epoch"]),
            bucket_width=timedelta(
                seconds=data.get("bucket_width_seconds", DEFAULT_BUCKET_WIDTH.total_seconds())
            ),
        )


@dataclass(frozen=True)
class AttachmentRef:
    """Reference to an out-of-band binary attachment.

    Attributes:
        ref: Content identifier used to download the blob
        size: Size of the blob in bytes
        mime_type: MIME type of the blob
        last_modified: Modification time reported by the author
        name: Original file name
    """

    ref: str
    size: int = 0
    mime_type: str = "application/octet-stream"
    last_modified: datetime | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref": self.ref,
            "size": self.size,
            "mime_type": self.mime_type,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttachmentRef:
        last_modified = data.get("last_modified")
        return cls(
            ref=data["ref"],
            size=data.get("size", 0),
            mime_type=data.get("mime_type", "application/octet-stream"),
            last_modified=parse_timestamp(last_modified) if last_modified is not None else None,
            name=data.get("name"),
        )


@dataclass(frozen=True)
class ItemBody:
    """An entry as returned by the remote log, before hydration.

    Attributes:
        ref: Remote identifier of the entry
        author_id: Identity of the author
        timestamp: Authoritative timestamp assigned by the remote log
        payload: Entry content
        attachments: Attachments referenced by the entry
        bucket: Bucket declared by the author, if the log records one
    """

    ref: ItemRef
    author_id: str
    timestamp: datetime
    payload: Any
    attachments: tuple[AttachmentRef, ...] = ()
    bucket: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref": self.ref,
            "author_id": self.author_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
            "attachments": [a.to_dict() for a in self.attachments],
            "bucket": self.bucket,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ItemBody:
        return cls(
            ref=data["ref"],
            author_id=data["author_id"],
            timestamp=parse_timestamp(data["timestamp"]),
            payload=data.get("payload"),
            attachments=tuple(AttachmentRef.from_dict(a) for a in data.get("attachments", [])),
            bucket=data.get("bucket"),
        )


@dataclass(frozen=True)
class Item:
    """A hydrated log entry held in the cache.

    Items are immutable; status changes produce a new instance via
    :meth:`with_status`.
    """

    ref: ItemRef
    log_id: str
    bucket_number: int
    author_id: str
    timestamp: datetime
    payload: Any
    attachment_refs: tuple[AttachmentRef, ...] = ()
    status: ItemStatus = ItemStatus.CONFIRMED

    @property
    def is_pending(self) -> bool:
        return self.status == ItemStatus.PENDING

    @property
    def is_confirmed(self) -> bool:
        return self.status == ItemStatus.CONFIRMED

    def with_status(self, status: ItemStatus) -> Item:
        return Item(
            ref=self.ref,
            log_id=self.log_id,
            bucket_number=self.bucket_number,
            author_id=self.author_id,
            timestamp=self.timestamp,
            payload=self.payload,
            attachment_refs=self.attachment_refs,
            status=status,
        )

    @classmethod
    def from_body(cls, log_id: str, bucket_number: int, body: ItemBody) -> Item:
        """Hydrate a remote body into a confirmed item."""
        return cls(
            ref=body.ref,
            log_id=log_id,
            bucket_number=bucket_number,
            author_id=body.author_id,
            timestamp=body.timestamp,
            payload=body.payload,
            attachment_refs=body.attachments,
            status=ItemStatus.CONFIRMED,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for storage."""
        return {
            "ref": self.ref,
            "log_id": self.log_id,
            "bucket_number": self.bucket_number,
            "author_id": self.author_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
            "attachment_refs": [a.to_dict() for a in self.attachment_refs],
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Item:
        """Deserialize from dictionary."""
        return cls(
            ref=data["ref"],
            log_id=data["log_id"],
            bucket_number=data["bucket_number"],
            author_id=data["author_id"],
            timestamp=parse_timestamp(data["timestamp"]),
            payload=data.get("payload"),
            attachment_refs=tuple(
                AttachmentRef.from_dict(a) for a in data.get("attachment_refs", [])
            ),
            status=ItemStatus(data.get("status", ItemStatus.CONFIRMED.value)),
        )


@dataclass
class AttachmentEntry:
    """Cached state of one attachment download."""

    ref: str
    status: AttachmentStatus
    blob: bytes | None = None
    error: str | None = None
    attempts: int = 0
    updated: datetime = field(default_factory=lambda: datetime.now(UTC))
