"""
HTTP remote log adapter.

Talks to a JSON gateway in front of the replicated log:

    GET  {base}/logs/{log_id}/buckets/{bucket}     -> {"refs": [...]}
    POST {base}/logs/{log_id}/items/batch          {"refs": [...]} -> {"items": [...]}
    POST {base}/logs/{log_id}/items                {"payload": ..., "bucket": n} -> {item}
    GET  {base}/attachments/{ref}                  -> raw bytes
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any
from urllib.parse import quote

import aiohttp

from ..exceptions import NetworkUnavailableError
from ..types import AttachmentRef, ItemBody, ItemRef
from .base import RemoteLog

logger = logging.getLogger(__name__)


class HttpRemoteLog(RemoteLog):
    """RemoteLog implementation over HTTP using aiohttp.

    Example:
        >>> async with HttpRemoteLog("https://gateway.example.com") as remote:
        ...     refs = await remote.list_bucket_ids("conv-1", 12)
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            base_url: Gateway base URL
            auth_token: Optional bearer token
            timeout: Total request timeout in seconds
            session: Existing client session to reuse (not closed by us)
        """
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> HttpRemoteLog:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self._headers())
            self._owns_session = True
        return self._session

    def _log_url(self, log_id: str) -> str:
        return f"{self.base_url}/logs/{quote(log_id, safe='')}"

    async def _request_json(
        self, operation: str, log_id: str | None, method: str, url: str, **kwargs: Any
    ) -> Any:
        try:
            async with self._client().request(method, url, **kwargs) as response:
                if response.status >= 500:
                    raise NetworkUnavailableError(
                        operation, log_id, RuntimeError(f"HTTP {response.status}")
                    )
                response.raise_for_status()
                return await response.json()
        except (aiohttp.ClientConnectionError, TimeoutError) as e:
            raise NetworkUnavailableError(operation, log_id, e) from e

    async def list_bucket_ids(self, log_id: str, bucket: int) -> set[ItemRef]:
        data = await self._request_json(
            "list_bucket_ids", log_id, "GET", f"{self._log_url(log_id)}/buckets/{bucket}"
        )
        return set(data.get("refs", []))

    async def fetch_items(self, log_id: str, refs: Iterable[ItemRef]) -> list[ItemBody]:
        refs = sorted(refs)
        if not refs:
            return []
        data = await self._request_json(
            "fetch_items",
            log_id,
            "POST",
            f"{self._log_url(log_id)}/items/batch",
            json={"refs": refs},
        )
        bodies = []
        for raw in data.get("items", []):
            try:
                bodies.append(ItemBody.from_dict(raw))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping malformed item in log %s: %s", log_id, e)
        return bodies

    async def append_item(
        self,
        log_id: str,
        payload: Any,
        bucket: int,
        attachments: Iterable[AttachmentRef] = (),
    ) -> ItemBody:
        data = await self._request_json(
            "append_item",
            log_id,
            "POST",
            f"{self._log_url(log_id)}/items",
            json={
                "payload": payload,
                "bucket": bucket,
                "attachments": [a.to_dict() for a in attachments],
            },
        )
        return ItemBody.from_dict(data)

    async def download_attachment(self, attachment: AttachmentRef) -> bytes:
        url = f"{self.base_url}/attachments/{quote(attachment.ref, safe='')}"
        try:
            async with self._client().get(url) as response:
                if response.status >= 500:
                    raise NetworkUnavailableError(
                        "download_attachment", None, RuntimeError(f"HTTP {response.status}")
                    )
                response.raise_for_status()
                return await response.read()
        except (aiohttp.ClientConnectionError, TimeoutError) as e:
            raise NetworkUnavailableError("download_attachment", None, e) from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
