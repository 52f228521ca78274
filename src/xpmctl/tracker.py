"""Per-instance version pointer with update, rollback and history."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import (
    AuthorizationError,
    ConflictError,
    InvalidOperationError,
    ValidationError,
)
from .locking import LockManager, LockTimeoutError
from .models import HistoryEntry, HistoryStatus
from .state import InstanceDirectory, ManifestStore, VersionHistoryLedger
from .versioning import same_version, version_key

LOGGER = logging.getLogger(__name__)

ROLLBACK_NOTE = "Rollback initiated"


@dataclass(slots=True)
class TransitionResult:
    """Outcome of an update or rollback."""

    message: str
    instance: dict[str, Any]
    entry: HistoryEntry
    lock_wait_ms: int = 0
    success: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return the response body."""
        return {"success": self.success, "message": self.message, "instance": self.instance}


class InstanceVersionTracker:
    """Move instances between manifest versions, recording every transition."""

    def __init__(
        self,
        *,
        directory: InstanceDirectory,
        ledger: VersionHistoryLedger,
        store: ManifestStore,
        locks: LockManager,
        lock_timeout: float | None = None,
    ) -> None:
        """Wire the tracker to the directory, ledger, manifest and locks."""
        self.directory = directory
        self.ledger = ledger
        self.store = store
        self.locks = locks
        self.lock_timeout = lock_timeout

    def get_current_version(self, instance_id: str) -> dict[str, object]:
        """Return ``{instanceId, currentVersion, subdomain}`` for *instance_id*."""
        instance = self.directory.require_instance(instance_id)
        return {
            "instanceId": instance.get("id"),
            "currentVersion": instance.get("coreVersion"),
            "subdomain": instance.get("subdomain"),
        }

    def update_version(
        self,
        instance_id: str,
        target_version: str | None,
        acting_user: str | None,
    ) -> TransitionResult:
        """Move *instance_id* to *target_version* on behalf of *acting_user*."""
        target = (target_version or "").strip()
        if not target:
            raise ValidationError("targetVersion is required")
        self._authorize(instance_id, acting_user, "update")
        if self.store.load().find(target) is None:
            raise ValidationError(f"Version {target} does not exist")

        def _resolve(_instance: dict[str, Any]) -> tuple[str, str | None]:
            entry = self.store.load().find(target)
            if entry is None:
                raise ValidationError(f"Version {target} does not exist")
            return entry.version, None

        result = self._transition(
            instance_id,
            acting_user,
            resolve=_resolve,
            final_status=HistoryStatus.COMPLETED,
        )
        LOGGER.info(
            "Instance %s moved from %s to %s",
            instance_id,
            result.entry.from_version,
            result.entry.to_version,
        )
        return result

    def rollback(self, instance_id: str, acting_user: str | None) -> TransitionResult:
        """Return *instance_id* to the version it ran before its last update.

        Among the instance's ``completed`` entries (newest first) the most
        recent one is skipped and the ``fromVersion`` of the next one is the
        rollback target.
        """
        self._authorize(instance_id, acting_user, "rollback")

        def _resolve(_instance: dict[str, Any]) -> tuple[str, str | None]:
            previous = self.ledger.find_completed_before(instance_id, skip=1)
            if previous is None or not previous.from_version:
                raise InvalidOperationError("No previous version to rollback to")
            target = previous.from_version
            if not self.store.load().has_version(target):
                raise InvalidOperationError(
                    f"Cannot rollback to {target}: the version is no longer available."
                )
            return target, ROLLBACK_NOTE

        result = self._transition(
            instance_id,
            acting_user,
            resolve=_resolve,
            final_status=HistoryStatus.ROLLED_BACK,
        )
        LOGGER.info("Instance %s rolled back to %s", instance_id, result.entry.to_version)
        return result

    def history(self, instance_id: str) -> list[HistoryEntry]:
        """Return the transitions of *instance_id*, newest first."""
        self.directory.require_instance(instance_id)
        return self.ledger.list_by_instance(instance_id)

    # ------------------------------------------------------------------
    def _authorize(self, instance_id: str, acting_user: str | None, action: str) -> None:
        if not acting_user:
            raise AuthorizationError("User not authenticated")
        self.directory.require_instance(instance_id)
        if self.directory.get_user_role(instance_id, acting_user) != "admin":
            raise AuthorizationError(f"Only instance admins can {action} versions")

    def _transition(
        self,
        instance_id: str,
        acting_user: str | None,
        *,
        resolve: Callable[[dict[str, Any]], tuple[str, str | None]],
        final_status: HistoryStatus,
    ) -> TransitionResult:
        planned, _notes = resolve(self.directory.require_instance(instance_id))
        try:
            with (
                self.locks.version_lock(version_key(planned), timeout=self.lock_timeout) as held,
                self.locks.mutate_instances([instance_id], timeout=self.lock_timeout) as bundle,
            ):
                instance = self.directory.require_instance(instance_id)
                target, notes = resolve(instance)
                if not same_version(target, planned):
                    raise ConflictError(
                        f"Instance {instance_id} changed version while waiting for its lock."
                    )
                current = instance.get("coreVersion")
                entry = self.ledger.append(
                    HistoryEntry(
                        id=0,
                        instance_id=str(instance_id),
                        from_version=str(current) if current is not None else None,
                        to_version=target,
                        status=HistoryStatus.PENDING,
                        notes=notes,
                        actor=acting_user,
                    )
                )
                try:
                    updated = self.directory.set_core_version(instance_id, target)
                    entry = self.ledger.complete(entry.id, final_status)
                except Exception as exc:  # noqa: BLE001 - re-raised after recording
                    self.ledger.complete(entry.id, HistoryStatus.FAILED, notes=str(exc))
                    raise
                wait_ms = held.wait_ms + bundle.wait_ms
        except LockTimeoutError as exc:
            raise ConflictError(
                f"Instance {instance_id} is busy with another version change: {exc}"
            ) from exc

        if final_status is HistoryStatus.ROLLED_BACK:
            message = f"Rolled back to {target}"
        else:
            message = f"Updated from {entry.from_version} to {target}"
        return TransitionResult(
            message=message,
            instance={
                "id": updated.get("id"),
                "coreVersion": updated.get("coreVersion"),
                "subdomain": updated.get("subdomain"),
            },
            entry=entry,
            lock_wait_ms=wait_ms,
        )


__all__ = ["InstanceVersionTracker", "ROLLBACK_NOTE", "TransitionResult"]
