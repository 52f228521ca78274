"""Helpers for interacting with the xpmctl state registry.

The registry directory (``/var/lib/xpmctl/registry`` by default) stores YAML
artifacts such as ``instances.yml``, ``history.yml`` and ``jobs.yml``. This
module provides lightweight helpers to read and write those files using atomic
operations so the directory, ledger and job stores can share one format.
"""
from __future__ import annotations

import fcntl
import os
import tempfile
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ..errors import StorageError

INSTANCES_FILE = "instances.yml"
HISTORY_FILE = "history.yml"
JOBS_FILE = "jobs.yml"


class StateRegistryError(StorageError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    @contextmanager
    def locked(self, name: str) -> Iterator[None]:
        """Hold an exclusive lock on registry file *name* for a read-modify-write.

        The lock lives in a hidden sidecar file so the data file itself can be
        replaced atomically while the lock is held.
        """
        self.ensure_root()
        lock_path = self.root / f".{name}.lock"
        with lock_path.open("a+", encoding="utf-8") as lock_handle:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_list(self, name: str, key: str) -> list[dict[str, Any]]:
        """Return the mappings stored under *key* in registry file *name*."""
        value = self.read(name, default={key: []})
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"Registry file {self.path_for(name)} must hold a mapping.")
        raw_entries = value.get(key, [])
        if raw_entries is None:
            return []
        if not isinstance(raw_entries, list):
            raise StateRegistryError(f"Registry key '{key}' in {name} must be a list.")
        return [dict(item) for item in raw_entries if isinstance(item, Mapping)]

    def read_document(self, name: str) -> dict[str, Any]:
        """Return registry file *name* as a mapping (empty when missing)."""
        value = self.read(name, default={})
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"Registry file {self.path_for(name)} must hold a mapping.")
        return dict(value)

    def read_instances(self) -> list[dict[str, Any]]:
        """Return the entries of ``instances.yml``."""
        return self.read_list(INSTANCES_FILE, "instances")

    def read_history(self) -> list[dict[str, Any]]:
        """Return the entries of ``history.yml``."""
        return self.read_list(HISTORY_FILE, "history")

    def read_jobs(self) -> list[dict[str, Any]]:
        """Return the entries of ``jobs.yml``."""
        return self.read_list(JOBS_FILE, "jobs")

    def write_instances(
        self,
        instances: Iterable[Mapping[str, object]],
        *,
        operators: Iterable[Mapping[str, object]] | None = None,
    ) -> None:
        """Persist instance entries (and the operator roster) to ``instances.yml``."""
        document = self.read_document(INSTANCES_FILE)
        payload: dict[str, object] = {"instances": [dict(item) for item in instances]}
        if operators is not None:
            payload["operators"] = [dict(item) for item in operators]
        elif "operators" in document:
            payload["operators"] = document["operators"]
        self.write(INSTANCES_FILE, payload)

    def write_history(self, entries: Iterable[Mapping[str, object]]) -> None:
        """Persist ledger entries to ``history.yml``."""
        self.write(HISTORY_FILE, {"history": [dict(item) for item in entries]})

    def write_jobs(self, jobs: Iterable[Mapping[str, object]]) -> None:
        """Persist deployment jobs to ``jobs.yml``."""
        self.write(JOBS_FILE, {"jobs": [dict(item) for item in jobs]})


__all__ = [
    "HISTORY_FILE",
    "INSTANCES_FILE",
    "JOBS_FILE",
    "StateRegistry",
    "StateRegistryError",
]
