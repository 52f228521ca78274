"""Copy a version's source tree into place and describe its content.

``materialize`` is a pure function over two directories: it copies the
source tree into a staging directory next to the destination, hashes every
file, writes ``.content-manifest.json`` and finally moves the staging
directory to its permanent name. A failed copy never leaves a half-written
destination behind.
"""
from __future__ import annotations

import hashlib
import json
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import IntegrityError, MaterializeError, StorageError
from ..models import ContentManifest, FileDigest, ManifestFormatError

CONTENT_MANIFEST_NAME = ".content-manifest.json"
_CHUNK_SIZE = 1024 * 1024


@dataclass(slots=True)
class VerificationReport:
    """Differences between a version tree and its content manifest."""

    version: str
    path: Path
    algorithm: str
    checked: int = 0
    missing: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    unexpected: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """``True`` when the tree matches its manifest exactly."""
        return not (self.missing or self.modified or self.unexpected)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "version": self.version,
            "path": str(self.path),
            "algorithm": self.algorithm,
            "ok": self.ok,
            "checked": self.checked,
            "missing": list(self.missing),
            "modified": list(self.modified),
            "unexpected": list(self.unexpected),
        }


def hash_file(path: Path, algorithm: str = "sha256") -> FileDigest:
    """Return the digest and size of *path*."""
    hasher = hashlib.new(algorithm)
    size = 0
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
            size += len(chunk)
    return FileDigest(hash=hasher.hexdigest(), size=size)


def iter_tree_files(root: Path) -> list[str]:
    """Return the POSIX relative paths of regular files under *root*, sorted.

    The content manifest itself is excluded.
    """
    paths: list[str] = []
    for current, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in filenames:
            full = Path(current) / name
            relative = full.relative_to(root).as_posix()
            if relative == CONTENT_MANIFEST_NAME or not full.is_file():
                continue
            paths.append(relative)
    return sorted(paths)


def compute_content_manifest(
    root: Path,
    algorithm: str = "sha256",
    *,
    deadline: float | None = None,
) -> ContentManifest:
    """Hash every file under *root*.

    *deadline* is a ``time.monotonic()`` value checked before each file.
    """
    files: dict[str, FileDigest] = {}
    for relative in iter_tree_files(root):
        _check_deadline(deadline, root)
        files[relative] = hash_file(root / relative, algorithm)
    return ContentManifest(algorithm=algorithm, files=files)


def write_content_manifest(root: Path, manifest: ContentManifest) -> Path:
    """Write *manifest* as ``.content-manifest.json`` under *root*."""
    path = root / CONTENT_MANIFEST_NAME
    path.write_text(json.dumps(manifest.to_dict(), indent=2) + "\n", encoding="utf-8")
    return path


def read_content_manifest(root: Path) -> ContentManifest:
    """Load the content manifest stored under *root*."""
    path = root / CONTENT_MANIFEST_NAME
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise IntegrityError(f"Content manifest missing: {path}") from None
    except (OSError, json.JSONDecodeError) as exc:
        raise StorageError(f"Failed to read content manifest {path}: {exc}") from exc
    try:
        return ContentManifest.from_dict(payload)
    except ManifestFormatError as exc:
        raise StorageError(f"Content manifest {path} is corrupted: {exc}") from exc


def materialize(
    source_root: Path,
    dest_root: Path,
    *,
    algorithm: str = "sha256",
    timeout: float | None = None,
) -> ContentManifest:
    """Copy *source_root* to *dest_root* and return its content manifest.

    Raises ``MaterializeError`` when the source is missing, the destination
    already exists, copying fails or copying and hashing together take longer
    than *timeout* seconds.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    if not source_root.is_dir():
        raise MaterializeError(f"Source directory not found: {source_root}")
    if dest_root.exists():
        raise MaterializeError(f"Version directory already exists: {dest_root}")
    try:
        dest_root.parent.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(
            tempfile.mkdtemp(prefix=f".{dest_root.name}-staging-", dir=str(dest_root.parent))
        )
    except OSError as exc:
        raise MaterializeError(f"Failed to prepare {dest_root.parent}: {exc}") from exc

    try:
        staged_tree = staging_dir / "tree"

        def _copy(src: str, dst: str) -> object:
            _check_deadline(deadline, dest_root)
            return shutil.copy2(src, dst)

        shutil.copytree(
            source_root,
            staged_tree,
            ignore=shutil.ignore_patterns(".git", CONTENT_MANIFEST_NAME),
            copy_function=_copy,
        )
        manifest = compute_content_manifest(staged_tree, algorithm, deadline=deadline)
        write_content_manifest(staged_tree, manifest)
        os.replace(staged_tree, dest_root)
    except (OSError, shutil.Error) as exc:
        raise MaterializeError(f"Failed to materialize {dest_root}: {exc}") from exc
    finally:
        shutil.rmtree(staging_dir, ignore_errors=True)
    return manifest


def _check_deadline(deadline: float | None, root: Path) -> None:
    if deadline is not None and time.monotonic() >= deadline:
        raise MaterializeError(f"Timed out while materializing {root}")


def verify_tree(root: Path, *, version: str) -> VerificationReport:
    """Re-hash *root* and compare it with its stored content manifest."""
    manifest = read_content_manifest(root)
    report = VerificationReport(version=version, path=root, algorithm=manifest.algorithm)
    present = set(iter_tree_files(root))
    for relative, expected in sorted(manifest.files.items()):
        if relative not in present:
            report.missing.append(relative)
            continue
        report.checked += 1
        if hash_file(root / relative, manifest.algorithm) != expected:
            report.modified.append(relative)
    report.unexpected = sorted(present - set(manifest.files))
    return report


__all__ = [
    "CONTENT_MANIFEST_NAME",
    "VerificationReport",
    "compute_content_manifest",
    "hash_file",
    "iter_tree_files",
    "materialize",
    "read_content_manifest",
    "verify_tree",
    "write_content_manifest",
]
