"""Provider interfaces for xpmctl."""
from __future__ import annotations

from .remote_manifest import RemoteVersionSource
from .source_sync import SourceSynchronizer, SyncResult

__all__ = [
    "RemoteVersionSource",
    "SourceSynchronizer",
    "SyncResult",
]
