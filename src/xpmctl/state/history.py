"""Append-only ledger of instance version transitions (``history.yml``)."""
from __future__ import annotations

from dataclasses import dataclass

from ..errors import InvalidOperationError, NotFoundError
from ..models import HistoryEntry, HistoryStatus, now_iso
from .registry import HISTORY_FILE, StateRegistry


@dataclass(slots=True)
class VersionHistoryLedger:
    """Record and query version transitions per instance.

    Entries are identified by a monotonically increasing integer, which also
    defines their creation order. Terminal entries (``completed``,
    ``rolled_back``, ``failed``) are never modified.
    """

    registry: StateRegistry

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """Persist *entry*, assigning the next identifier."""
        with self.registry.locked(HISTORY_FILE):
            records = self.registry.read_history()
            next_id = max((int(item.get("id", 0) or 0) for item in records), default=0) + 1
            entry.id = next_id
            if not entry.created_at:
                entry.created_at = now_iso()
            records.append(entry.to_dict())
            self.registry.write_history(records)
        return entry

    def complete(
        self,
        entry_id: int,
        status: HistoryStatus,
        *,
        notes: str | None = None,
    ) -> HistoryEntry:
        """Move a pending entry to terminal *status*, stamping ``completedAt``."""
        if not status.is_terminal:
            raise InvalidOperationError("History entries can only move to a terminal status.")
        with self.registry.locked(HISTORY_FILE):
            records = self.registry.read_history()
            for index, record in enumerate(records):
                if int(record.get("id", 0) or 0) != entry_id:
                    continue
                entry = HistoryEntry.from_dict(record)
                if entry.status.is_terminal:
                    raise InvalidOperationError(
                        f"History entry {entry_id} is already {entry.status.value}."
                    )
                entry.status = status
                entry.completed_at = now_iso()
                if notes is not None:
                    entry.notes = notes
                records[index] = entry.to_dict()
                self.registry.write_history(records)
                return entry
        raise NotFoundError(f"History entry {entry_id} not found")

    def list_by_instance(self, instance_id: str) -> list[HistoryEntry]:
        """Return the entries of *instance_id*, newest first."""
        entries = [
            HistoryEntry.from_dict(record)
            for record in self.registry.read_history()
            if str(record.get("instanceId", "")) == str(instance_id)
        ]
        entries.sort(key=lambda entry: entry.id, reverse=True)
        return entries

    def find_completed_before(self, instance_id: str, skip: int = 1) -> HistoryEntry | None:
        """Return the completed entry found after skipping the *skip* newest ones."""
        completed = [
            entry
            for entry in self.list_by_instance(instance_id)
            if entry.status is HistoryStatus.COMPLETED
        ]
        if len(completed) <= skip:
            return None
        return completed[skip]


__all__ = ["VersionHistoryLedger"]
