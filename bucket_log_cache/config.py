"""
Configuration for the bucketed log cache.

Configuration can be provided directly or via environment variables:

Environment Variables:
    BUCKET_LOG_CACHE_PATH: Directory for persisted index and items
        (default: ~/.bucket_log_cache)
    BUCKET_LOG_CACHE_BUCKET_WIDTH_SECONDS: Bucket width (default: 86400)
    BUCKET_LOG_CACHE_TARGET_COUNT: Items to load per page (default: 20)
    BUCKET_LOG_CACHE_CHUNK_SIZE: Buckets listed per round (default: 3)
    BUCKET_LOG_CACHE_MAX_BUCKETS: Bucket ceiling per page (default: 30)
    BUCKET_LOG_CACHE_ATTACHMENT_ATTEMPTS: Download attempts (default: 10)
    BUCKET_LOG_CACHE_PUSH_URL: Push channel endpoint (optional)
    BUCKET_LOG_CACHE_PUSH_WEBSOCKET: "true" to push over WebSocket instead of SSE
    BUCKET_LOG_CACHE_PUSH_RECONNECT_DELAY: Seconds between reconnects (default: 5)
    BUCKET_LOG_CACHE_PUSH_TOKEN: Push channel bearer token (optional)
    BUCKET_LOG_CACHE_AUTHOR_ID: Local author identity (optional)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from .resilience import RetryConfig
from .types import DEFAULT_BUCKET_WIDTH

# Number of items to make visible per pagination request
DEFAULT_TARGET_COUNT = 20


@dataclass
class CacheConfig:
    """Configuration for the log cache.

    Attributes:
        local_path: Directory for persisted state (None disables persistence)
        author_id: Identity of the local author, used for optimistic writes
        bucket_width: Bucket width for logs registered without their own
        target_count: Default visible-item target for pagination
        bucket_chunk_size: Buckets listed in parallel per round
        max_buckets_to_fetch: Hard ceiling on buckets listed per request
        attachment_max_attempts: Download attempts before giving up
        attachment_backoff_base: First backoff delay in seconds
        attachment_backoff_max: Backoff cap in seconds
        attachment_backoff_multiplier: Backoff growth per attempt
        push_url: Push channel base URL
        push_use_websocket: Use WebSocket instead of SSE for pushes
        push_reconnect_delay: Seconds to wait before reconnecting the push channel
        push_auth_token: Bearer token for the push channel
    """

    local_path: str | None = None
    author_id: str | None = None

    bucket_width: timedelta = DEFAULT_BUCKET_WIDTH
    target_count: int = DEFAULT_TARGET_COUNT
    bucket_chunk_size: int = 3
    max_buckets_to_fetch: int = 30

    attachment_max_attempts: int = 10
    attachment_backoff_base: float = 1.0
    attachment_backoff_max: float = 10.0
    attachment_backoff_multiplier: float = 2.0

    push_url: str | None = None
    push_use_websocket: bool = False
    push_reconnect_delay: float = 5.0
    push_auth_token: str | None = None

    def __post_init__(self) -> None:
        if self.bucket_width <= timedelta(0):
            raise ValueError(f"bucket_width must be positive, got {self.bucket_width}")
        if self.bucket_chunk_size < 1:
            raise ValueError(f"bucket_chunk_size must be >= 1, got {self.bucket_chunk_size}")
        if self.attachment_max_attempts < 1:
            raise ValueError(
                f"attachment_max_attempts must be >= 1, got {self.attachment_max_attempts}"
            )

    @property
    def state_path(self) -> Path:
        """Directory holding persisted state."""
        if self.local_path:
            return Path(self.local_path)
        return Path.home() / ".bucket_log_cache"

    def attachment_retry(self) -> RetryConfig:
        """Retry policy for attachment downloads."""
        return RetryConfig(
            max_attempts=self.attachment_max_attempts,
            backoff_base=self.attachment_backoff_base,
            backoff_max=self.attachment_backoff_max,
            backoff_multiplier=self.attachment_backoff_multiplier,
            retryable_exceptions=(Exception,),
        )

    @classmethod
    def from_environment(cls, author_id: str | None = None) -> CacheConfig:
        """Create configuration from environment variables.

        Args:
            author_id: Local author identity (overrides BUCKET_LOG_CACHE_AUTHOR_ID)

        Returns:
            CacheConfig populated from environment variables
        """
        width_seconds = float(
            os.environ.get(
                "BUCKET_LOG_CACHE_BUCKET_WIDTH_SECONDS",
                DEFAULT_BUCKET_WIDTH.total_seconds(),
            )
        )
        return cls(
            local_path=os.environ.get("BUCKET_LOG_CACHE_PATH"),
            author_id=author_id or os.environ.get("BUCKET_LOG_CACHE_AUTHOR_ID"),
            bucket_width=timedelta(seconds=width_seconds),
            target_count=int(
                os.environ.get("BUCKET_LOG_CACHE_TARGET_COUNT", DEFAULT_TARGET_COUNT)
            ),
            bucket_chunk_size=int(os.environ.get("BUCKET_LOG_CACHE_CHUNK_SIZE", 3)),
            max_buckets_to_fetch=int(os.environ.get("BUCKET_LOG_CACHE_MAX_BUCKETS", 30)),
            attachment_max_attempts=int(
                os.environ.get("BUCKET_LOG_CACHE_ATTACHMENT_ATTEMPTS", 10)
            ),
            push_url=os.environ.get("BUCKET_LOG_CACHE_PUSH_URL"),
            push_use_websocket=os.environ.get("BUCKET_LOG_CACHE_PUSH_WEBSOCKET", "").lower()
            == "true",
            push_reconnect_delay=float(
                os.environ.get("BUCKET_LOG_CACHE_PUSH_RECONNECT_DELAY", 5.0)
            ),
            push_auth_token=os.environ.get("BUCKET_LOG_CACHE_PUSH_TOKEN"),
        )
