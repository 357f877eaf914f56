"""
Remote log adapters.

RemoteLog is the interface the cache consumes; HttpRemoteLog talks to a
JSON gateway over HTTP.
"""

from .base import RemoteLog
from .http import HttpRemoteLog

__all__ = [
    "RemoteLog",
    "HttpRemoteLog",
]
