"""Persistence and validated mutations for the version manifest.

The manifest is a single JSON document (``manifests.json`` under the core
root). Every write goes through a temp file and ``os.replace`` and bumps the
document's ``revision``; callers that loaded a manifest earlier pass that
revision back as ``expected_revision`` so a concurrent writer is detected
instead of silently overwritten.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import tempfile
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ..errors import (
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    StorageError,
)
from ..models import (
    Manifest,
    ManifestFormatError,
    VersionEntry,
    VersionStatus,
    now_iso,
)
from ..versioning import same_version, validate_version_id, version_dir_name

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class MarkLatestResult:
    """Outcome of :meth:`ManifestStore.mark_latest`."""

    manifest: Manifest
    changed: bool


class ManifestStore:
    """Read, validate and write the manifest document."""

    def __init__(self, path: Path, versions_root: Path) -> None:
        """Bind the store to the manifest file and the versions directory."""
        self.path = path.expanduser()
        self.versions_root = versions_root.expanduser()

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------
    def exists(self) -> bool:
        """Return ``True`` when the manifest document is present."""
        return self.path.exists()

    def load(self) -> Manifest:
        """Return the persisted manifest."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError(f"Manifest not found at {self.path}") from None
        except OSError as exc:
            raise StorageError(f"Failed to read manifest {self.path}: {exc}") from exc
        try:
            return Manifest.from_dict(json.loads(text))
        except (json.JSONDecodeError, ManifestFormatError) as exc:
            raise StorageError(f"Manifest {self.path} is corrupted: {exc}") from exc

    def save(self, manifest: Manifest, *, expected_revision: int | None = None) -> Manifest:
        """Overwrite the manifest, bumping its revision.

        Raises ``ConflictError`` when *expected_revision* no longer matches the
        persisted document.
        """
        with self._locked():
            return self._compare_and_write(manifest, expected_revision)

    def update(self, mutate: Callable[[Manifest], None]) -> Manifest:
        """Apply *mutate* to the current manifest under the store lock and persist it."""
        with self._locked():
            manifest = self.load()
            revision = manifest.revision
            mutate(manifest)
            return self._compare_and_write(manifest, revision)

    def version_path(self, version_id: str) -> Path:
        """Directory holding the materialized tree of *version_id*."""
        return self.versions_root / version_dir_name(version_id)

    # ------------------------------------------------------------------
    # Validated operations
    # ------------------------------------------------------------------
    def bootstrap(
        self,
        seed_version: str,
        *,
        description: str = "Initial release",
        release_date: str | None = None,
    ) -> Manifest:
        """Create the manifest with *seed_version* as the only (latest) version."""
        version = validate_version_id(seed_version)
        with self._locked():
            if self.exists():
                raise InvalidOperationError(f"Manifest already exists at {self.path}")
            manifest = Manifest(
                latest=version,
                versions=[
                    VersionEntry(
                        version=version,
                        description=description,
                        status=VersionStatus.LATEST,
                        release_date=release_date or now_iso(),
                    )
                ],
            )
            return self._compare_and_write(manifest, None)

    def mark_latest(self, version_id: str) -> MarkLatestResult:
        """Promote *version_id* to latest (no-op when it already is)."""
        with self._locked():
            manifest = self.load()
            entry = manifest.find(version_id)
            if entry is None:
                raise NotFoundError(f"Version {version_id} not found")
            if same_version(entry.version, manifest.latest):
                return MarkLatestResult(manifest=manifest, changed=False)
            revision = manifest.revision
            manifest.promote(entry.version)
            saved = self._compare_and_write(manifest, revision)
        LOGGER.info("Marked version %s as latest", entry.version)
        return MarkLatestResult(manifest=saved, changed=True)

    def delete_version(self, version_id: str, *, instances_using: int) -> Manifest:
        """Remove *version_id* from the manifest and delete its file tree."""
        with self._locked():
            manifest = self.load()
            entry = manifest.find(version_id)
            if entry is None:
                raise NotFoundError(f"Version {version_id} not found")
            is_latest = same_version(entry.version, manifest.latest)
            if is_latest or entry.status is VersionStatus.LATEST:
                raise InvalidOperationError(
                    "Cannot delete the latest version. Mark another version latest first."
                )
            if instances_using > 0:
                raise InvalidOperationError(
                    f"Cannot delete version {entry.version}: "
                    f"{instances_using} instance(s) are using it."
                )
            version_path = self.version_path(entry.version)
            if version_path.exists():
                try:
                    shutil.rmtree(version_path)
                except OSError as exc:
                    raise StorageError(f"Failed to remove {version_path}: {exc}") from exc
            revision = manifest.revision
            manifest.versions = [item for item in manifest.versions if item is not entry]
            saved = self._compare_and_write(manifest, revision)
        LOGGER.info("Deleted version %s", entry.version)
        return saved

    def refresh_usage(self, counts: Mapping[str, int]) -> Manifest:
        """Persist ``stats.instancesUsing`` from *counts* (keyed by version)."""
        return self.update(lambda manifest: apply_usage(manifest, counts))

    # ------------------------------------------------------------------
    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.path.with_name(f".{self.path.name}.lock")
        with lock_path.open("a+", encoding="utf-8") as lock_handle:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def _compare_and_write(self, manifest: Manifest, expected_revision: int | None) -> Manifest:
        current_revision = self.load().revision if self.exists() else 0
        if expected_revision is not None and expected_revision != current_revision:
            raise ConflictError(
                "Manifest changed concurrently "
                f"(expected revision {expected_revision}, found {current_revision})."
            )
        try:
            manifest.check_invariants()
        except ManifestFormatError as exc:
            raise InvalidOperationError(str(exc)) from exc
        manifest.revision = current_revision + 1
        self._write(manifest.to_dict())
        return manifest

    def _write(self, payload: Mapping[str, object]) -> None:
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.path.parent),
            prefix=f".{self.path.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o644)
        except OSError as exc:
            raise StorageError(f"Failed to write manifest {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def apply_usage(manifest: Manifest, counts: Mapping[str, int]) -> Manifest:
    """Set ``instancesUsing`` on every entry from *counts* (in place)."""
    for entry in manifest.versions:
        entry.stats.instances_using = sum(
            count for version, count in counts.items() if manifest.find(version) is entry
        )
    return manifest


__all__ = ["ManifestStore", "MarkLatestResult", "apply_usage"]
