"""Remote sources -- the contract for external record collections and a generic HTTP implementation."""

from src.recordsync.sources.adapter import RemotePage, RemoteSource, fetch_all_pages, iter_pages
from src.recordsync.sources.http import HttpRemoteSource

__all__ = [
    "RemoteSource",
    "RemotePage",
    "HttpRemoteSource",
    "fetch_all_pages",
    "iter_pages",
]
