"""Retry with exponential backoff for remote log calls.

Attachment downloads go through :func:`retry_with_backoff`; pagination
calls deliberately do not (the caller decides whether to retry a page).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from .exceptions import NetworkUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry with exponential backoff.

    ``max_attempts`` counts the first call, so ``max_attempts=10`` means at
    most ten calls and nine sleeps.
    """

    max_attempts: int = 10
    backoff_base: float = 1.0  # seconds
    backoff_max: float = 10.0  # cap
    backoff_multiplier: float = 2.0
    retryable_status_codes: tuple[int, ...] = (429, 500, 502, 503, 504)
    retryable_exceptions: tuple[type[Exception], ...] = (
        NetworkUnavailableError,
        ConnectionError,
        TimeoutError,
        OSError,
    )

    def delay_for(self, attempt: int) -> float:
        """Backoff to sleep after the given failed attempt (1-indexed)."""
        return min(
            self.backoff_base * (self.backoff_multiplier ** (attempt - 1)),
            self.backoff_max,
        )


def _extract_status_code(exc: Exception) -> int | None:
    """Try to extract an HTTP status code from client exceptions."""
    # aiohttp.ClientResponseError
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    return None


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    config: RetryConfig | None = None,
    context_msg: str = "",
    **kwargs: Any,
) -> T:
    """Execute an async function with retry and exponential backoff.

    Args:
        fn: Async callable to execute
        *args: Positional args for fn
        config: Retry configuration (uses defaults if None)
        context_msg: Extra context for log messages (e.g. attachment ref)
        **kwargs: Keyword args for fn

    Returns:
        Result of fn

    Raises:
        Exception: Last exception after all attempts are used, or the first
            non-retryable one
    """
    cfg = config or RetryConfig()
    ctx = f" [{context_msg}]" if context_msg else ""

    for attempt in range(1, cfg.max_attempts + 1):
        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            status_code = _extract_status_code(exc)
            is_retryable = isinstance(exc, cfg.retryable_exceptions) or (
                status_code is not None and status_code in cfg.retryable_status_codes
            )

            if not is_retryable or attempt >= cfg.max_attempts:
                logger.error(
                    "RETRY_EXHAUSTED: attempt=%d/%d status=%s retryable=%s%s: %s",
                    attempt,
                    cfg.max_attempts,
                    status_code,
                    is_retryable,
                    ctx,
                    exc,
                )
                raise

            delay = cfg.delay_for(attempt)
            logger.warning(
                "RETRYING: attempt=%d/%d status=%s delay=%.1fs%s: %s",
                attempt,
                cfg.max_attempts,
                status_code,
                delay,
                ctx,
                exc,
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 1:
                logger.warning(
                    "RETRY_RECOVERED: succeeded on attempt %d/%d%s",
                    attempt,
                    cfg.max_attempts,
                    ctx,
                )
            return result

    # Unreachable, but satisfies type checker
    raise RuntimeError("retry_with_backoff exhausted without raising")  # pragma: no cover
