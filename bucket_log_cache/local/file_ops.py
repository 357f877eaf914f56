"""
Atomic JSON documents on local disk.

The bucket index and the item snapshot of a log are each one JSON
document, rewritten whole on every change. A write goes to a sibling
temp file that is fsynced and renamed over the target, so a crash leaves
either the previous document or the new one on disk.
"""

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError


async def ensure_directory(path: Path) -> None:
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageIOError("create_directory", str(path), e) from e


async def load_document(path: Path) -> dict[str, Any] | None:
    """Load a persisted state document.

    Args:
        path: Document location

    Returns:
        The decoded object, or None if the document was never written

    Raises:
        StorageIOError: If the file cannot be read or is not a JSON object
    """
    try:
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageIOError("read_state", str(path), e) from e

    if not content.strip():
        return None
    try:
        document = json.loads(content)
    except json.JSONDecodeError as e:
        raise StorageIOError("parse_state", str(path), e) from e
    if not isinstance(document, dict):
        raise StorageIOError("parse_state", str(path), ValueError("expected a JSON object"))
    return document


async def store_document(path: Path, document: dict[str, Any]) -> None:
    """Replace a state document atomically.

    Raises:
        StorageIOError: If encoding or any filesystem step fails
    """
    try:
        text = json.dumps(document, default=_encode, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise StorageIOError("encode_state", str(path), e) from e

    await ensure_directory(path.parent)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    os.close(fd)
    try:
        async with aiofiles.open(temp_name, "w", encoding="utf-8") as f:
            await f.write(text)
            await f.flush()
            os.fsync(f.fileno())
        await aiofiles.os.rename(temp_name, path)
    except OSError as e:
        await _discard(temp_name)
        raise StorageIOError("write_state", str(path), e) from e


async def _discard(temp_name: str) -> None:
    try:
        await aiofiles.os.remove(temp_name)
    except FileNotFoundError:
        pass


def _encode(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
