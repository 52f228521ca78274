"""File-based locking primitives.

Locks are ``fcntl.flock`` advisory locks on files under the runtime directory:

* ``xpmctl.lock``: global lock guarding registry-wide mutations.
* ``deploy.lock``: single-flight guard for version deployments.
* ``instances/<id>.lock``: per-instance version transitions.
* ``versions/<version>.lock``: per-version mutations (mark latest, delete).

``flock`` locks belong to the open file description, so two threads of the
same process opening the same lock file exclude each other just like two
processes do. Lock files persist after release and hold JSON metadata about
the last holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout elapses."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock."""

    path: Path
    wait_ms: int
    _handle: IO[str]

    def release(self) -> None:
        """Release the lock and close the underlying file."""
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together (global first)."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire and release xpmctl lock files."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Initialise the manager rooted at *runtime_dir*."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    # ------------------------------------------------------------------
    # Single locks
    # ------------------------------------------------------------------
    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the registry-wide lock."""
        with self._locked(self.runtime_dir / "xpmctl.lock", timeout) as handle:
            yield handle

    @contextmanager
    def deploy_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the deployment single-flight lock."""
        with self._locked(self.runtime_dir / "deploy.lock", timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(
        self,
        instance_id: str,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the lock serialising version transitions of one instance."""
        path = self.runtime_dir / "instances" / f"{_safe(instance_id)}.lock"
        with self._locked(path, timeout) as handle:
            yield handle

    @contextmanager
    def version_lock(self, version: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single version entry."""
        path = self.runtime_dir / "versions" / f"{_safe(version)}.lock"
        with self._locked(path, timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------
    @contextmanager
    def mutate_versions(
        self,
        versions: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-version locks."""
        with ExitStack() as stack:
            handles: list[LockHandle] = []
            if include_global:
                handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for version in sorted(set(versions)):
                handles.append(stack.enter_context(self.version_lock(version, timeout=timeout)))
            yield LockBundle(handles)

    @contextmanager
    def mutate_instances(
        self,
        instance_ids: Iterable[str],
        *,
        include_global: bool = False,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire per-instance locks in a stable order."""
        with ExitStack() as stack:
            handles: list[LockHandle] = []
            if include_global:
                handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for instance_id in sorted(set(instance_ids)):
                handles.append(
                    stack.enter_context(self.instance_lock(instance_id, timeout=timeout))
                )
            yield LockBundle(handles)

    # ------------------------------------------------------------------
    @contextmanager
    def _locked(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        handle = self._acquire(path, self.default_timeout if timeout is None else timeout)
        try:
            yield handle
        finally:
            handle.release()

    def _acquire(self, path: Path, timeout: float) -> LockHandle:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handle = path.open("a+", encoding="utf-8")
        start = time.monotonic()
        deadline = start + max(timeout, 0.0)
        while True:
            try:
                fcntl.flock(file_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    file_handle.close()
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.1f}s waiting for lock {path}"
                    ) from None
                time.sleep(_POLL_INTERVAL)
        wait_ms = int((time.monotonic() - start) * 1000)
        _write_metadata(file_handle, path)
        return LockHandle(path=path, wait_ms=wait_ms, _handle=file_handle)


def _safe(name: str) -> str:
    cleaned = _SAFE_NAME.sub("_", name.strip())
    return cleaned or "_"


def _write_metadata(handle: IO[str], path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    handle.seek(0)
    handle.truncate()
    handle.write(json.dumps(payload))
    handle.flush()


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
