"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from pathlib import Path

import httpx
import pytest

from xpmctl.config import AppConfig, load_config
from xpmctl.locking import LockManager
from xpmctl.service import VersionService
from xpmctl.state import (
    DeploymentJobStore,
    InstanceDirectory,
    ManifestStore,
    StateRegistry,
    VersionHistoryLedger,
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


REMOTE_URL = "https://upstream.example/core/manifests.json"


def make_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Return a configuration rooted entirely inside *tmp_path*."""
    values: dict[str, object] = {
        "core_root": str(tmp_path / "core"),
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "lock_timeout": 2,
        "remote": {"manifest_url": REMOTE_URL},
        "source": {"root": str(tmp_path / "source"), "sync": False},
    }
    values.update(overrides)
    return load_config(config_file=tmp_path / "missing.yml", env={}, overrides=values)


def write_manifest(path: Path, latest: str, versions: list[tuple[str, str]]) -> None:
    """Write a manifest document listing ``(version, description)`` pairs."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "latest": latest,
        "versions": [
            {
                "version": version,
                "description": description,
                "status": "latest" if version == latest else "stable",
                "releaseDate": "2024-01-01T00:00:00.000Z",
            }
            for version, description in versions
        ],
        "lastDeployed": None,
        "revision": 1,
    }
    path.write_text(json.dumps(payload), encoding="utf-8")


def write_tree(root: Path, files: dict[str, str]) -> Path:
    """Create *files* (relative path to text) under *root*."""
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return root


@pytest.fixture()
def registry(tmp_path: Path) -> StateRegistry:
    """Empty registry rooted in the test directory."""
    return StateRegistry(tmp_path / "state" / "registry")


@pytest.fixture()
def store(tmp_path: Path) -> ManifestStore:
    """Manifest store with 1.0.0 (stable) and 1.1.0 (latest)."""
    core_root = tmp_path / "core"
    manifest_store = ManifestStore(core_root / "manifests.json", core_root / "versions")
    write_manifest(
        manifest_store.path,
        "1.1.0",
        [("1.1.0", "Feature release"), ("1.0.0", "Initial release")],
    )
    return manifest_store


@pytest.fixture()
def directory(registry: StateRegistry) -> InstanceDirectory:
    """Instance directory with ``acme`` on 1.0.0 and an admin plus a regular user."""
    instances = InstanceDirectory(registry)
    instances.add_instance("acme", name="Acme", subdomain="acme", core_version="1.0.0")
    instances.add_user("acme", "alice", email="alice@acme.test", role="admin")
    instances.add_user("acme", "bob", email="bob@acme.test", role="user")
    instances.add_operator("ops", email="ops@example.test")
    return instances


@pytest.fixture()
def ledger(registry: StateRegistry) -> VersionHistoryLedger:
    """Version history ledger sharing the test registry."""
    return VersionHistoryLedger(registry)


@pytest.fixture()
def jobs(registry: StateRegistry) -> DeploymentJobStore:
    """Deployment job store sharing the test registry."""
    return DeploymentJobStore(registry)


@pytest.fixture()
def locks(tmp_path: Path) -> LockManager:
    """Lock manager with a short default timeout."""
    return LockManager(tmp_path / "run", default_timeout=2.0)


REMOTE_MANIFEST: dict[str, object] = {
    "latest": "1.2.0",
    "versions": [
        {
            "version": "1.2.0",
            "description": "bugfixes",
            "status": "latest",
            "releaseDate": "2024-06-01T00:00:00.000Z",
        },
        {"version": "1.1.0", "description": "Feature release", "status": "stable"},
        {"version": "1.0.0", "description": "Initial release", "status": "stable"},
    ],
}

SOURCE_FILES = {
    "index.js": "module.exports = require('./lib/engine');\n",
    "lib/engine.js": "exports.version = '1.2.0';\n",
}


def remote_client(
    payload: object = REMOTE_MANIFEST,
    status_code: int = 200,
) -> httpx.Client:
    """HTTP client answering every request with *payload*."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload)

    return httpx.Client(transport=httpx.MockTransport(handler))


def build_service(
    tmp_path: Path,
    *,
    client: httpx.Client | None = None,
    **overrides: object,
) -> VersionService:
    """Service over *tmp_path* with a 1.2.0 source tree ready to deploy."""
    config = make_config(tmp_path, **overrides)
    write_tree(config.source.versions_dir / "v1.2.0", SOURCE_FILES)
    return VersionService(config, http_client=client or remote_client())


@pytest.fixture()
def service(
    tmp_path: Path,
    store: ManifestStore,
    directory: InstanceDirectory,
) -> Iterator[VersionService]:
    """Service with the seeded manifest, the ``acme`` instance and operator ``ops``."""
    version_service = build_service(tmp_path)
    yield version_service
    version_service.close()
