"""Instance version tracker tests."""
from __future__ import annotations

import threading

import pytest
from conftest import write_manifest

from xpmctl.errors import (
    AuthorizationError,
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from xpmctl.locking import LockManager
from xpmctl.models import HistoryStatus
from xpmctl.state import InstanceDirectory, ManifestStore, VersionHistoryLedger
from xpmctl.tracker import ROLLBACK_NOTE, InstanceVersionTracker


@pytest.fixture()
def tracker(
    store: ManifestStore,
    directory: InstanceDirectory,
    ledger: VersionHistoryLedger,
    locks: LockManager,
) -> InstanceVersionTracker:
    """Tracker over three released versions with ``acme`` on 1.0.0."""
    write_manifest(
        store.path,
        "1.2.0",
        [("1.2.0", "bugfixes"), ("1.1.0", "Feature release"), ("1.0.0", "Initial release")],
    )
    return InstanceVersionTracker(
        directory=directory,
        ledger=ledger,
        store=store,
        locks=locks,
        lock_timeout=5,
    )


def test_get_current_version(tracker: InstanceVersionTracker) -> None:
    """The current pointer and subdomain are reported."""
    assert tracker.get_current_version("acme") == {
        "instanceId": "acme",
        "currentVersion": "1.0.0",
        "subdomain": "acme",
    }


def test_update_moves_instance_and_records_history(tracker: InstanceVersionTracker) -> None:
    """An update completes a history entry and moves the pointer."""
    result = tracker.update_version("acme", "1.1.0", "alice")

    assert result.message == "Updated from 1.0.0 to 1.1.0"
    assert result.to_dict() == {
        "success": True,
        "message": "Updated from 1.0.0 to 1.1.0",
        "instance": {"id": "acme", "coreVersion": "1.1.0", "subdomain": "acme"},
    }
    (entry,) = tracker.history("acme")
    assert entry.status is HistoryStatus.COMPLETED
    assert (entry.from_version, entry.to_version) == ("1.0.0", "1.1.0")
    assert entry.actor == "alice"
    assert entry.completed_at


def test_update_accepts_prefixed_version(tracker: InstanceVersionTracker) -> None:
    """``v``-prefixed targets resolve to the manifest identifier."""
    result = tracker.update_version("acme", "v1.2.0", "alice")

    assert result.instance["coreVersion"] == "1.2.0"


def test_update_requires_target(tracker: InstanceVersionTracker) -> None:
    """An empty target is a validation error."""
    with pytest.raises(ValidationError, match="targetVersion is required"):
        tracker.update_version("acme", "  ", "alice")


def test_update_unknown_target_changes_nothing(tracker: InstanceVersionTracker) -> None:
    """Unknown versions are rejected before any state is written."""
    with pytest.raises(ValidationError, match="Version 9.9.9 does not exist"):
        tracker.update_version("acme", "9.9.9", "alice")

    assert tracker.get_current_version("acme")["currentVersion"] == "1.0.0"
    assert tracker.history("acme") == []


def test_authorization_order(tracker: InstanceVersionTracker) -> None:
    """Missing actor, unknown instance and non-admin roles are told apart."""
    with pytest.raises(AuthorizationError, match="not authenticated"):
        tracker.update_version("acme", "1.1.0", None)
    with pytest.raises(NotFoundError, match="Instance not found"):
        tracker.update_version("globex", "1.1.0", "alice")
    with pytest.raises(AuthorizationError, match="Only instance admins can update"):
        tracker.update_version("acme", "1.1.0", "bob")
    with pytest.raises(AuthorizationError, match="Only instance admins can rollback"):
        tracker.rollback("acme", "mallory")

    assert tracker.history("acme") == []


def test_rollback_returns_to_version_before_last_update(tracker: InstanceVersionTracker) -> None:
    """Rollback skips the newest completed entry and restores the one before it."""
    tracker.update_version("acme", "1.1.0", "alice")
    tracker.update_version("acme", "1.2.0", "alice")

    result = tracker.rollback("acme", "alice")

    assert result.message == "Rolled back to 1.0.0"
    assert result.instance["coreVersion"] == "1.0.0"
    newest = tracker.history("acme")[0]
    assert newest.status is HistoryStatus.ROLLED_BACK
    assert (newest.from_version, newest.to_version) == ("1.2.0", "1.0.0")
    assert newest.notes == ROLLBACK_NOTE


def test_rollback_requires_two_completed_updates(tracker: InstanceVersionTracker) -> None:
    """With a single completed update there is nothing to roll back to."""
    tracker.update_version("acme", "1.1.0", "alice")

    with pytest.raises(InvalidOperationError, match="No previous version to rollback to"):
        tracker.rollback("acme", "alice")

    assert len(tracker.history("acme")) == 1


def test_rollback_refuses_deleted_target(
    tracker: InstanceVersionTracker,
    store: ManifestStore,
) -> None:
    """Versions removed from the manifest are not valid rollback targets."""
    tracker.update_version("acme", "1.1.0", "alice")
    tracker.update_version("acme", "1.2.0", "alice")
    write_manifest(store.path, "1.2.0", [("1.2.0", "bugfixes"), ("1.1.0", "Feature release")])

    with pytest.raises(InvalidOperationError, match="no longer available"):
        tracker.rollback("acme", "alice")

    assert tracker.get_current_version("acme")["currentVersion"] == "1.2.0"


def test_failed_pointer_write_marks_entry_failed(
    tracker: InstanceVersionTracker,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A storage failure after the pending entry is recorded fails that entry."""

    def _fail(self: InstanceDirectory, instance_id: str, version: str) -> None:
        raise StorageError("registry is read-only")

    monkeypatch.setattr(InstanceDirectory, "set_core_version", _fail)

    with pytest.raises(StorageError):
        tracker.update_version("acme", "1.1.0", "alice")

    (entry,) = tracker.history("acme")
    assert entry.status is HistoryStatus.FAILED
    assert entry.notes == "registry is read-only"
    assert tracker.get_current_version("acme")["currentVersion"] == "1.0.0"


@pytest.mark.mutation_timeout
def test_concurrent_updates_are_serialised(tracker: InstanceVersionTracker) -> None:
    """Parallel updates of one instance chain their from/to versions."""
    errors: list[BaseException] = []

    def _update(target: str) -> None:
        try:
            tracker.update_version("acme", target, "alice")
        except BaseException as exc:  # noqa: BLE001 - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=_update, args=(target,)) for target in ("1.1.0", "1.2.0")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    older, newer = sorted(tracker.history("acme"), key=lambda entry: entry.id)
    assert older.from_version == "1.0.0"
    assert newer.from_version == older.to_version
    assert tracker.get_current_version("acme")["currentVersion"] == newer.to_version


def test_update_holds_the_target_version_lock(
    tracker: InstanceVersionTracker,
    locks: LockManager,
) -> None:
    """A move onto a version waits behind whoever holds that version's lock."""
    tracker.lock_timeout = 0.2

    with locks.version_lock("1.1.0"):
        with pytest.raises(ConflictError, match="busy with another version change"):
            tracker.update_version("acme", "v1.1.0", "alice")

    assert tracker.get_current_version("acme")["currentVersion"] == "1.0.0"
    assert tracker.history("acme") == []
    assert tracker.update_version("acme", "1.1.0", "alice").entry.to_version == "1.1.0"
