"""Core file reader tests."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import SOURCE_FILES, write_tree

from xpmctl.core_files import CoreFileReader
from xpmctl.deployment import materialize
from xpmctl.errors import IntegrityError, NotFoundError, ValidationError
from xpmctl.state import ManifestStore


@pytest.fixture()
def materialized(store: ManifestStore, tmp_path: Path) -> Path:
    """Version 1.1.0 materialized with its content manifest."""
    source = write_tree(tmp_path / "source" / "v1.1.0", SOURCE_FILES)
    dest = store.version_path("1.1.0")
    materialize(source, dest)
    return dest


def test_reads_file_bytes(store: ManifestStore, materialized: Path) -> None:
    """Files inside the version tree are returned verbatim."""
    reader = CoreFileReader(store)

    content = reader.get_core_file("1.1.0", "lib/engine.js")

    assert content == SOURCE_FILES["lib/engine.js"].encode()


def test_prefixed_version_resolves(store: ManifestStore, materialized: Path) -> None:
    """The optional ``v`` prefix selects the same version."""
    reader = CoreFileReader(store)

    assert reader.get_core_file("v1.1.0", "index.js") == SOURCE_FILES["index.js"].encode()


@pytest.mark.parametrize(
    "relative_path",
    ["../../etc/passwd", "../v1.0.0/index.js", "/etc/passwd", ".", "lib/.."],
)
def test_escaping_paths_are_rejected(
    store: ManifestStore,
    materialized: Path,
    relative_path: str,
) -> None:
    """Paths resolving outside (or onto) the version root are invalid."""
    reader = CoreFileReader(store)

    with pytest.raises(ValidationError, match="Invalid file path"):
        reader.get_core_file("1.1.0", relative_path)


@pytest.mark.parametrize("relative_path", ["../../etc/passwd", "/etc/passwd"])
def test_escaping_paths_are_invalid_for_unknown_versions(
    store: ManifestStore,
    relative_path: str,
) -> None:
    """The containment check runs before the version is looked up."""
    reader = CoreFileReader(store)

    with pytest.raises(ValidationError, match="Invalid file path"):
        reader.get_core_file("9.9.9", relative_path)


def test_escaping_version_identifiers_are_rejected(store: ManifestStore) -> None:
    """A version identifier cannot point outside the versions root."""
    reader = CoreFileReader(store)

    with pytest.raises(ValidationError, match="Invalid version"):
        reader.get_core_file("/../../etc", "passwd")


def test_symlink_escape_is_rejected(
    store: ManifestStore,
    materialized: Path,
    tmp_path: Path,
) -> None:
    """Symlinks pointing outside the tree are resolved before the check."""
    secret = tmp_path / "secret.txt"
    secret.write_text("top secret", encoding="utf-8")
    (materialized / "leak.txt").symlink_to(secret)
    reader = CoreFileReader(store)

    with pytest.raises(ValidationError, match="Invalid file path"):
        reader.get_core_file("1.1.0", "leak.txt")


def test_empty_path_is_rejected(store: ManifestStore, materialized: Path) -> None:
    """A file path is mandatory."""
    reader = CoreFileReader(store)

    with pytest.raises(ValidationError, match="File path is required"):
        reader.get_core_file("1.1.0", "")


def test_missing_file_and_version(store: ManifestStore, materialized: Path) -> None:
    """Unknown files and versions are NotFound."""
    reader = CoreFileReader(store)

    with pytest.raises(NotFoundError, match="File not found"):
        reader.get_core_file("1.1.0", "lib/missing.js")
    with pytest.raises(NotFoundError, match="Version 9.9.9 not found"):
        reader.get_core_file("9.9.9", "index.js")
    with pytest.raises(NotFoundError, match="File not found"):
        reader.get_core_file("1.1.0", "lib")


def test_verify_on_read_detects_tampering(store: ManifestStore, materialized: Path) -> None:
    """With verification enabled modified files are refused."""
    (materialized / "index.js").write_text("tampered\n", encoding="utf-8")
    reader = CoreFileReader(store, verify_on_read=True)

    with pytest.raises(IntegrityError, match="index.js"):
        reader.get_core_file("1.1.0", "index.js")
    assert reader.get_core_file("1.1.0", "lib/engine.js") == SOURCE_FILES["lib/engine.js"].encode()


def test_verify_on_read_refuses_unlisted_files(store: ManifestStore, materialized: Path) -> None:
    """Files added after materialization are not served when verifying."""
    (materialized / "extra.js").write_text("added later\n", encoding="utf-8")
    reader = CoreFileReader(store, verify_on_read=True)

    with pytest.raises(IntegrityError, match="not listed"):
        reader.get_core_file("1.1.0", "extra.js")
