"""
Local persistence for the log cache.

Stores bucket indexes and confirmed items as JSON files, written
atomically so a crash never leaves a half-written index behind.
"""

from .file_ops import ensure_directory, load_document, store_document
from .state_store import LocalStateStore

__all__ = [
    "LocalStateStore",
    "ensure_directory",
    "load_document",
    "store_document",
]
