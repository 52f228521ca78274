"""Version service facade tests."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest
from conftest import build_service, make_config

from xpmctl.errors import (
    AuthorizationError,
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
)
from xpmctl.service import VersionService
from xpmctl.state import InstanceDirectory, ManifestStore


def _deploy(service: VersionService, version: str = "1.2.0") -> None:
    ack = service.deploy_version(version, None, "ops", submit=False)
    service.run_job(str(ack["jobId"]))


def test_list_versions_counts_instances(service: VersionService) -> None:
    """Listing reports live usage per version."""
    service.add_instance("globex", name="Globex", subdomain="globex")

    listing = service.list_versions()

    assert listing["latest"] == "1.1.0"
    usage = {
        item["version"]: item["stats"]["instancesUsing"]  # type: ignore[index]
        for item in listing["versions"]  # type: ignore[union-attr]
    }
    assert usage == {"1.1.0": 1, "1.0.0": 1}


def test_add_instance_defaults_to_latest_and_validates(service: VersionService) -> None:
    """New instances start on latest unless a known version is given."""
    record = service.add_instance("globex", name="Globex", subdomain="globex")
    assert record["coreVersion"] == "1.1.0"

    pinned = service.add_instance(
        "initech", name="Initech", subdomain="initech", core_version="v1.0.0"
    )
    assert pinned["coreVersion"] == "1.0.0"

    with pytest.raises(ValidationError, match="does not exist"):
        service.add_instance("hooli", name="Hooli", subdomain="hooli", core_version="4.0.0")


def test_mark_latest_and_noop(service: VersionService) -> None:
    """Promotion reports whether anything changed."""
    result = service.mark_latest("1.0.0", "ops")
    assert result["success"] is True
    assert result["latestVersion"] == "1.0.0"
    assert result["changed"] is True

    again = service.mark_latest("1.0.0", "ops")
    assert again["changed"] is False

    with pytest.raises(AuthorizationError):
        service.mark_latest("1.1.0", "alice")


def test_delete_version_rules(service: VersionService) -> None:
    """Latest and in-use versions are protected; others are removed."""
    _deploy(service)

    with pytest.raises(InvalidOperationError, match="latest"):
        service.delete_version("1.2.0", "ops")
    with pytest.raises(InvalidOperationError, match="1 instance"):
        service.delete_version("1.0.0", "ops")

    assert service.delete_version("1.1.0", "ops")["success"] is True
    assert service.store.load().find("1.1.0") is None
    with pytest.raises(NotFoundError):
        service.delete_version("1.1.0", "ops")


def test_delete_excludes_concurrent_moves_onto_the_version(
    service: VersionService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An update racing a delete of its target fails instead of dangling."""
    _deploy(service)
    failures: list[BaseException] = []

    def _update() -> None:
        try:
            service.update_instance_version("acme", "1.1.0", "alice")
        except BaseException as exc:  # noqa: BLE001 - asserted below
            failures.append(exc)

    racer = threading.Thread(target=_update)
    original = InstanceDirectory.count_using

    def _count_while_racing(self: InstanceDirectory, version: str) -> int:
        racer.start()
        racer.join(timeout=0.3)
        return original(self, version)

    monkeypatch.setattr(InstanceDirectory, "count_using", _count_while_racing)

    assert service.delete_version("1.1.0", "ops")["success"] is True
    racer.join()

    assert [type(exc) for exc in failures] == [ValidationError]
    assert service.get_instance_version("acme")["currentVersion"] == "1.0.0"
    assert service.store.load().find("1.1.0") is None
    assert service.instance_history("acme") == []


def test_version_lock_contention_is_a_conflict(
    tmp_path: Path,
    store: ManifestStore,
    directory: InstanceDirectory,
) -> None:
    """Timing out on the version locks surfaces as a conflict."""
    service = build_service(tmp_path, lock_timeout=0.2)
    try:
        with service.locks.global_lock():
            with pytest.raises(ConflictError, match="locked by another change"):
                service.mark_latest("1.0.0", "ops")
            with pytest.raises(ConflictError, match="locked by another change"):
                service.delete_version("1.0.0", "ops")
    finally:
        service.close()


def test_core_file_and_verification(service: VersionService) -> None:
    """Deployed trees can be read and re-verified."""
    _deploy(service)

    assert service.get_core_file("1.2.0", "index.js").startswith(b"module.exports")
    report = service.verify_version("1.2.0")
    assert report.ok is True

    (service.store.version_path("1.2.0") / "index.js").write_text("changed", encoding="utf-8")
    assert service.verify_version("1.2.0").modified == ["index.js"]


def test_verify_unknown_or_missing_tree(service: VersionService) -> None:
    """Verification needs a listed version with a directory on disk."""
    with pytest.raises(NotFoundError, match="Version 9.9.9 not found"):
        service.verify_version("9.9.9")
    with pytest.raises(NotFoundError, match="directory"):
        service.verify_version("1.0.0")


def test_instance_operations_round_trip(service: VersionService) -> None:
    """Update, rollback and history flow through the facade."""
    service.update_instance_version("acme", "1.1.0", "alice")
    _deploy(service)
    service.update_instance_version("acme", "1.2.0", "alice")

    rolled = service.rollback_instance_version("acme", "alice")

    assert rolled.to_dict()["instance"]["coreVersion"] == "1.0.0"  # type: ignore[index]
    history = service.instance_history("acme")
    assert [item["status"] for item in history] == ["rolled_back", "completed", "completed"]
    assert service.get_instance_version("acme")["currentVersion"] == "1.0.0"


def test_bootstrap_creates_manifest_and_operator(tmp_path: Path) -> None:
    """A fresh installation gets a manifest and its first operator."""
    service = VersionService(make_config(tmp_path))

    manifest = service.bootstrap("1.0.0", operator="ops")

    assert manifest["latest"] == "1.0.0"
    assert service.directory.is_operator("ops") is True
    with pytest.raises(InvalidOperationError):
        service.bootstrap("1.0.0")


def test_user_and_operator_management(tmp_path: Path) -> None:
    """Users and operators can be added through the facade."""
    service = build_service(tmp_path)
    service.bootstrap("1.0.0")
    service.add_instance("acme", name="Acme", subdomain="acme")

    user = service.add_instance_user("acme", "alice", email="a@acme.test", role="admin")
    operator = service.add_operator("ops", email="ops@example.test")

    assert user == {"id": "alice", "email": "a@acme.test", "role": "admin"}
    assert operator == {"id": "ops", "email": "ops@example.test"}
    assert service.directory.get_user_role("acme", "alice") == "admin"
