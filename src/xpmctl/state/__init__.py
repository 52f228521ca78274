"""Persisted state: manifest document, registry files and the stores built on them."""
from __future__ import annotations

from .directory import InstanceDirectory
from .history import VersionHistoryLedger
from .jobs import DeploymentJobStore
from .manifest_store import ManifestStore, MarkLatestResult, apply_usage
from .registry import StateRegistry, StateRegistryError

__all__ = [
    "DeploymentJobStore",
    "InstanceDirectory",
    "ManifestStore",
    "MarkLatestResult",
    "StateRegistry",
    "StateRegistryError",
    "VersionHistoryLedger",
    "apply_usage",
]
