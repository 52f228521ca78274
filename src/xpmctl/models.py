"""Data models shared by the manifest, history and deployment layers.

Persisted documents use the camelCase keys consumed by the admin console and
instance dashboards; the dataclasses expose snake_case attributes.
"""
from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .versioning import same_version


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 ``Z`` timestamp."""
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ManifestFormatError(ValueError):
    """Raised when a mapping does not describe a valid manifest."""


class VersionStatus(str, Enum):
    """Lifecycle status of a manifest entry."""

    LATEST = "latest"
    STABLE = "stable"


class HistoryStatus(str, Enum):
    """Status of a version transition record."""

    PENDING = "pending"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` once the entry may no longer change."""
        return self is not HistoryStatus.PENDING


class JobStatus(str, Enum):
    """Status of a deployment job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        """Return ``True`` while the job blocks other deployments."""
        return self in {JobStatus.QUEUED, JobStatus.RUNNING}


@dataclass(slots=True)
class VersionStats:
    """Usage and size counters for a version."""

    instances_using: int = 0
    file_count: int = 0
    size: int = 0

    @classmethod
    def from_dict(cls, data: object) -> VersionStats:
        """Build stats from a manifest mapping (missing values default to zero)."""
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            instances_using=_as_int(data.get("instancesUsing")),
            file_count=_as_int(data.get("fileCount")),
            size=_as_int(data.get("size")),
        )

    def to_dict(self) -> dict[str, object]:
        """Return the manifest representation."""
        return {
            "instancesUsing": self.instances_using,
            "fileCount": self.file_count,
            "size": self.size,
        }


@dataclass(slots=True)
class VersionEntry:
    """A single released version listed in the manifest."""

    version: str
    description: str = ""
    status: VersionStatus = VersionStatus.STABLE
    release_date: str | None = None
    stats: VersionStats = field(default_factory=VersionStats)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VersionEntry:
        """Parse a manifest version mapping."""
        version = data.get("version")
        if not isinstance(version, str) or not version.strip():
            raise ManifestFormatError("Version entry missing 'version'.")
        status_raw = str(data.get("status") or VersionStatus.STABLE.value)
        try:
            status = VersionStatus(status_raw)
        except ValueError as exc:
            raise ManifestFormatError(
                f"Version '{version}' has unknown status '{status_raw}'."
            ) from exc
        release_date = data.get("releaseDate")
        return cls(
            version=version.strip(),
            description=str(data.get("description") or ""),
            status=status,
            release_date=str(release_date) if release_date else None,
            stats=VersionStats.from_dict(data.get("stats")),
        )

    def to_dict(self) -> dict[str, object]:
        """Return the manifest representation."""
        return {
            "version": self.version,
            "description": self.description,
            "status": self.status.value,
            "releaseDate": self.release_date,
            "stats": self.stats.to_dict(),
        }


@dataclass(slots=True)
class LastDeployed:
    """Metadata about the most recent deployment."""

    version: str
    timestamp: str
    source_fingerprint: str | None = None

    @classmethod
    def from_dict(cls, data: object) -> LastDeployed | None:
        """Parse ``lastDeployed`` (``None`` when absent or empty)."""
        if not isinstance(data, Mapping) or not data.get("version"):
            return None
        return cls(
            version=str(data["version"]),
            timestamp=str(data.get("timestamp") or ""),
            source_fingerprint=(
                str(data["sourceFingerprint"]) if data.get("sourceFingerprint") else None
            ),
        )

    def to_dict(self) -> dict[str, object]:
        """Return the manifest representation."""
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "sourceFingerprint": self.source_fingerprint,
        }


@dataclass(slots=True)
class Manifest:
    """The authoritative list of known versions."""

    latest: str
    versions: list[VersionEntry] = field(default_factory=list)
    last_deployed: LastDeployed | None = None
    revision: int = 0

    @classmethod
    def from_dict(cls, data: object) -> Manifest:
        """Parse a manifest document, raising :class:`ManifestFormatError`."""
        if not isinstance(data, Mapping):
            raise ManifestFormatError("Manifest must be a JSON object.")
        latest = data.get("latest")
        if not isinstance(latest, str) or not latest.strip():
            raise ManifestFormatError("Manifest 'latest' must be a non-empty string.")
        raw_versions = data.get("versions")
        if not isinstance(raw_versions, list):
            raise ManifestFormatError("Manifest 'versions' must be a list.")
        versions: list[VersionEntry] = []
        for item in raw_versions:
            if not isinstance(item, Mapping):
                raise ManifestFormatError("Manifest versions must be objects.")
            entry = VersionEntry.from_dict(item)
            if any(same_version(entry.version, existing.version) for existing in versions):
                raise ManifestFormatError(f"Duplicate version '{entry.version}' in manifest.")
            versions.append(entry)
        revision = data.get("revision", 0)
        return cls(
            latest=latest.strip(),
            versions=versions,
            last_deployed=LastDeployed.from_dict(data.get("lastDeployed")),
            revision=revision if isinstance(revision, int) else 0,
        )

    def to_dict(self) -> dict[str, object]:
        """Return the persisted representation."""
        return {
            "latest": self.latest,
            "versions": [entry.to_dict() for entry in self.versions],
            "lastDeployed": self.last_deployed.to_dict() if self.last_deployed else None,
            "revision": self.revision,
        }

    def find(self, version_id: str) -> VersionEntry | None:
        """Return the entry for *version_id* (``v`` prefix insensitive)."""
        for entry in self.versions:
            if same_version(entry.version, version_id):
                return entry
        return None

    def has_version(self, version_id: str) -> bool:
        """Return ``True`` when *version_id* is listed."""
        return self.find(version_id) is not None

    def latest_entries(self) -> list[VersionEntry]:
        """Entries currently flagged ``latest``."""
        return [entry for entry in self.versions if entry.status is VersionStatus.LATEST]

    def check_invariants(self) -> None:
        """Ensure exactly one ``latest`` entry exists and matches ``latest``."""
        flagged = self.latest_entries()
        if len(flagged) != 1:
            raise ManifestFormatError(
                f"Manifest must flag exactly one latest version (found {len(flagged)})."
            )
        if not same_version(flagged[0].version, self.latest):
            raise ManifestFormatError(
                f"Manifest latest '{self.latest}' does not match flagged "
                f"version '{flagged[0].version}'."
            )

    def promote(self, version_id: str) -> VersionEntry:
        """Flag *version_id* as latest, demoting the previous latest to stable."""
        target = self.find(version_id)
        if target is None:
            raise KeyError(version_id)
        for entry in self.versions:
            if entry is not target and entry.status is VersionStatus.LATEST:
                entry.status = VersionStatus.STABLE
        target.status = VersionStatus.LATEST
        self.latest = target.version
        return target


@dataclass(frozen=True, slots=True)
class FileDigest:
    """Digest and size of one file in a version tree."""

    hash: str
    size: int

    def to_dict(self) -> dict[str, object]:
        """Return the content manifest representation."""
        return {"hash": self.hash, "size": self.size}


@dataclass(slots=True)
class ContentManifest:
    """Relative path to digest mapping for a materialized version."""

    algorithm: str
    files: dict[str, FileDigest] = field(default_factory=dict)

    @property
    def file_count(self) -> int:
        """Number of files listed."""
        return len(self.files)

    @property
    def total_size(self) -> int:
        """Sum of listed file sizes in bytes."""
        return sum(item.size for item in self.files.values())

    def fingerprint(self) -> str:
        """Digest over the sorted ``path:hash`` pairs, identifying the tree content."""
        hasher = hashlib.sha256()
        for path in sorted(self.files):
            hasher.update(f"{path}:{self.files[path].hash}\n".encode())
        return hasher.hexdigest()

    @classmethod
    def from_dict(cls, data: object) -> ContentManifest:
        """Parse a persisted content manifest."""
        if not isinstance(data, Mapping):
            raise ManifestFormatError("Content manifest must be a JSON object.")
        raw_files = data.get("files", {})
        if not isinstance(raw_files, Mapping):
            raise ManifestFormatError("Content manifest 'files' must be an object.")
        files: dict[str, FileDigest] = {}
        for path, item in raw_files.items():
            if not isinstance(item, Mapping) or not isinstance(item.get("hash"), str):
                raise ManifestFormatError(f"Content manifest entry for '{path}' is invalid.")
            files[str(path)] = FileDigest(hash=item["hash"], size=_as_int(item.get("size")))
        return cls(algorithm=str(data.get("algorithm") or "sha256"), files=files)

    def to_dict(self) -> dict[str, object]:
        """Return the persisted representation."""
        return {
            "algorithm": self.algorithm,
            "fileCount": self.file_count,
            "size": self.total_size,
            "files": {path: self.files[path].to_dict() for path in sorted(self.files)},
        }


@dataclass(slots=True)
class HistoryEntry:
    """One version transition of an instance."""

    id: int
    instance_id: str
    from_version: str | None
    to_version: str
    status: HistoryStatus = HistoryStatus.PENDING
    notes: str | None = None
    created_at: str = field(default_factory=now_iso)
    completed_at: str | None = None
    actor: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> HistoryEntry:
        """Parse a ledger record."""
        from_version = data.get("fromVersion")
        return cls(
            id=_as_int(data.get("id")),
            instance_id=str(data.get("instanceId", "")),
            from_version=str(from_version) if from_version is not None else None,
            to_version=str(data.get("toVersion", "")),
            status=HistoryStatus(str(data.get("status", HistoryStatus.PENDING.value))),
            notes=str(data["notes"]) if data.get("notes") is not None else None,
            created_at=str(data.get("createdAt") or ""),
            completed_at=str(data["completedAt"]) if data.get("completedAt") else None,
            actor=str(data["actor"]) if data.get("actor") else None,
        )

    def to_dict(self) -> dict[str, object]:
        """Return the ledger representation."""
        return {
            "id": self.id,
            "instanceId": self.instance_id,
            "fromVersion": self.from_version,
            "toVersion": self.to_version,
            "status": self.status.value,
            "notes": self.notes,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
            "actor": self.actor,
        }


DEPLOY_STEP_NAMES: tuple[str, ...] = (
    "Pulling core files from upstream",
    "Comparing manifests",
    "Creating version folder",
    "Updating version registry",
)


@dataclass(slots=True)
class JobStep:
    """Progress of one step of the fixed deployment plan."""

    step: int
    name: str
    status: str = "pending"
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the job representation."""
        payload: dict[str, object] = {"step": self.step, "name": self.name, "status": self.status}
        if self.detail:
            payload["detail"] = self.detail
        return payload


def default_job_steps() -> list[JobStep]:
    """Return a fresh copy of the four-step deployment plan."""
    return [JobStep(step=index, name=name) for index, name in enumerate(DEPLOY_STEP_NAMES, 1)]


@dataclass(slots=True)
class DeploymentJob:
    """Persisted record of a background deployment."""

    id: str
    version: str
    description: str | None = None
    status: JobStatus = JobStatus.QUEUED
    steps: list[JobStep] = field(default_factory=default_job_steps)
    error: str | None = None
    created_at: str = field(default_factory=now_iso)
    started_at: str | None = None
    finished_at: str | None = None
    actor: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DeploymentJob:
        """Parse a job record."""
        steps: list[JobStep] = []
        raw_steps = data.get("steps")
        if isinstance(raw_steps, list):
            for item in raw_steps:
                if isinstance(item, Mapping):
                    steps.append(
                        JobStep(
                            step=_as_int(item.get("step")),
                            name=str(item.get("name", "")),
                            status=str(item.get("status", "pending")),
                            detail=str(item["detail"]) if item.get("detail") else None,
                        )
                    )
        return cls(
            id=str(data.get("id", "")),
            version=str(data.get("version", "")),
            description=str(data["description"]) if data.get("description") else None,
            status=JobStatus(str(data.get("status", JobStatus.QUEUED.value))),
            steps=steps or default_job_steps(),
            error=str(data["error"]) if data.get("error") else None,
            created_at=str(data.get("createdAt") or ""),
            started_at=str(data["startedAt"]) if data.get("startedAt") else None,
            finished_at=str(data["finishedAt"]) if data.get("finishedAt") else None,
            actor=str(data["actor"]) if data.get("actor") else None,
        )

    def to_dict(self) -> dict[str, object]:
        """Return the persisted representation."""
        return {
            "id": self.id,
            "version": self.version,
            "description": self.description,
            "status": self.status.value,
            "steps": [step.to_dict() for step in self.steps],
            "error": self.error,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "actor": self.actor,
        }

    def mark_step(self, number: int, status: str, detail: str | None = None) -> None:
        """Update the status of step *number*."""
        for step in self.steps:
            if step.step == number:
                step.status = status
                if detail is not None:
                    step.detail = detail
                return


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip() or 0)
        except ValueError:
            return 0
    return 0


__all__ = [
    "DEPLOY_STEP_NAMES",
    "ContentManifest",
    "DeploymentJob",
    "FileDigest",
    "HistoryEntry",
    "HistoryStatus",
    "JobStatus",
    "JobStep",
    "LastDeployed",
    "Manifest",
    "ManifestFormatError",
    "VersionEntry",
    "VersionStats",
    "VersionStatus",
    "default_job_steps",
    "now_iso",
]
