"""Raw file access inside a materialized version tree."""
from __future__ import annotations

import hashlib
from pathlib import Path

from .deployment.materialize import read_content_manifest
from .errors import IntegrityError, NotFoundError, StorageError, ValidationError
from .state import ManifestStore
from .versioning import version_dir_name


class CoreFileReader:
    """Serve files from ``<versions_root>/v<version>/``.

    Paths are canonicalised before reading and must stay inside the version
    directory. With ``verify_on_read`` each file is checked against the
    version's content manifest before it is returned.
    """

    def __init__(self, store: ManifestStore, *, verify_on_read: bool = False) -> None:
        """Bind the reader to the manifest store."""
        self.store = store
        self.verify_on_read = verify_on_read

    def resolve(self, version_id: str, relative_path: str) -> tuple[Path, Path]:
        """Return ``(version_root, file_path)`` after the containment check.

        The path is checked before the manifest is consulted, so an escaping
        path is invalid whether or not the version exists.
        """
        if not relative_path or not relative_path.strip():
            raise ValidationError("File path is required.")
        versions_root = self.store.versions_root.resolve()
        version_root = (versions_root / version_dir_name(version_id)).resolve()
        if version_root == versions_root or not version_root.is_relative_to(versions_root):
            raise ValidationError("Invalid version")
        candidate = (version_root / relative_path).resolve()
        if candidate == version_root or not candidate.is_relative_to(version_root):
            raise ValidationError("Invalid file path")
        if self.store.load().find(version_id) is None:
            raise NotFoundError(f"Version {version_id} not found")
        return version_root, candidate

    def get_core_file(self, version_id: str, relative_path: str) -> bytes:
        """Return the raw bytes of *relative_path* within *version_id*."""
        version_root, path = self.resolve(version_id, relative_path)
        if not path.is_file():
            raise NotFoundError("File not found")
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc
        if self.verify_on_read:
            self._verify(version_root, path, content)
        return content

    def _verify(self, version_root: Path, path: Path, content: bytes) -> None:
        manifest = read_content_manifest(version_root)
        relative = path.relative_to(version_root).as_posix()
        expected = manifest.files.get(relative)
        if expected is None:
            raise IntegrityError(f"{relative} is not listed in the content manifest.")
        digest = hashlib.new(manifest.algorithm, content).hexdigest()
        if digest != expected.hash or len(content) != expected.size:
            raise IntegrityError(f"{relative} does not match its recorded digest.")


__all__ = ["CoreFileReader"]
