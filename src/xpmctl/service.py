"""Facade over the version lifecycle components.

``VersionService`` wires the manifest store, registry-backed stores, remote
source, deployment orchestrator, instance tracker and core file reader from a
single :class:`~xpmctl.config.AppConfig`. Its methods return the JSON bodies
consumed by the admin console and instance dashboards.
"""
from __future__ import annotations

import logging

import httpx

from .config import AppConfig
from .core_files import CoreFileReader
from .deployment import DeploymentOrchestrator, VerificationReport, verify_tree
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .locking import LockManager, LockTimeoutError
from .models import DeploymentJob
from .providers import RemoteVersionSource, SourceSynchronizer
from .state import (
    DeploymentJobStore,
    InstanceDirectory,
    ManifestStore,
    StateRegistry,
    VersionHistoryLedger,
    apply_usage,
)
from .tracker import InstanceVersionTracker, TransitionResult
from .versioning import validate_version_id, version_key

LOGGER = logging.getLogger(__name__)


class VersionService:
    """Entry point for every version and instance-version operation."""

    def __init__(
        self,
        config: AppConfig,
        *,
        locks: LockManager | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        """Build the component graph for *config*."""
        self.config = config
        self.registry = StateRegistry(config.registry_dir)
        self.locks = locks or LockManager(config.runtime_dir, config.lock_timeout)
        self.store = ManifestStore(config.manifest_file, config.versions_root)
        self.directory = InstanceDirectory(self.registry)
        self.ledger = VersionHistoryLedger(self.registry)
        self.jobs = DeploymentJobStore(self.registry)
        self.remote = RemoteVersionSource(config.remote, client=http_client)
        self.sync = SourceSynchronizer(config.source)
        self.orchestrator = DeploymentOrchestrator(
            config=config,
            store=self.store,
            remote=self.remote,
            sync=self.sync,
            jobs=self.jobs,
            directory=self.directory,
            locks=self.locks,
        )
        self.tracker = InstanceVersionTracker(
            directory=self.directory,
            ledger=self.ledger,
            store=self.store,
            locks=self.locks,
            lock_timeout=config.lock_timeout,
        )
        self.core_files = CoreFileReader(
            self.store,
            verify_on_read=config.core_files.verify_on_read,
        )

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------
    def require_operator(self, actor: str | None) -> str:
        """Return *actor* when it names an operator, else raise ``AuthorizationError``."""
        if not actor:
            raise AuthorizationError("User not authenticated")
        if not self.directory.is_operator(actor):
            raise AuthorizationError("Only operators can manage versions")
        return actor

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------
    def list_versions(self) -> dict[str, object]:
        """Return ``{latest, versions[]}`` with live ``instancesUsing`` counts."""
        manifest = apply_usage(self.store.load(), self.directory.usage_counts())
        return {
            "latest": manifest.latest,
            "versions": [entry.to_dict() for entry in manifest.versions],
        }

    def check_deployment_status(self, actor: str | None) -> dict[str, object]:
        """Compare the remote manifest with the local one."""
        self.require_operator(actor)
        return self.orchestrator.check_status()

    def deploy_version(
        self,
        version_id: str,
        description: str | None,
        actor: str | None,
        *,
        submit: bool = True,
    ) -> dict[str, object]:
        """Queue a deployment and return the ``deploying`` acknowledgement."""
        self.require_operator(actor)
        return self.orchestrator.deploy(version_id, description, actor=actor, submit=submit)

    def get_job(self, job_id: str) -> DeploymentJob:
        """Return deployment job *job_id*."""
        return self.jobs.get(job_id)

    def run_job(self, job_id: str) -> DeploymentJob:
        """Execute a queued deployment job in the current process."""
        return self.orchestrator.run_job(job_id)

    def mark_latest(self, version_id: str, actor: str | None) -> dict[str, object]:
        """Promote *version_id* to latest."""
        self.require_operator(actor)
        try:
            with self.locks.mutate_versions([version_key(version_id)]) as bundle:
                result = self.store.mark_latest(version_id)
        except LockTimeoutError as exc:
            raise ConflictError(f"Version {version_id} is locked by another change: {exc}") from exc
        return {
            "success": True,
            "latestVersion": result.manifest.latest,
            "changed": result.changed,
            "lockWaitMs": bundle.wait_ms,
        }

    def delete_version(self, version_id: str, actor: str | None) -> dict[str, object]:
        """Delete an unused, non-latest version and its file tree."""
        self.require_operator(actor)
        # instance transitions onto this version take the same version lock
        try:
            with self.locks.mutate_versions([version_key(version_id)]) as bundle:
                self.store.delete_version(
                    version_id,
                    instances_using=self.directory.count_using(version_id),
                )
        except LockTimeoutError as exc:
            raise ConflictError(f"Version {version_id} is locked by another change: {exc}") from exc
        return {"success": True, "lockWaitMs": bundle.wait_ms}

    def get_core_file(self, version_id: str, relative_path: str) -> bytes:
        """Return the raw bytes of a file in a version tree."""
        return self.core_files.get_core_file(version_id, relative_path)

    def verify_version(self, version_id: str) -> VerificationReport:
        """Re-hash a version tree against its content manifest."""
        entry = self.store.load().find(version_id)
        if entry is None:
            raise NotFoundError(f"Version {version_id} not found")
        root = self.store.version_path(entry.version)
        if not root.is_dir():
            raise NotFoundError(f"Version directory {root} not found")
        return verify_tree(root, version=entry.version)

    def bootstrap(
        self,
        seed_version: str,
        *,
        description: str = "Initial release",
        operator: str | None = None,
    ) -> dict[str, object]:
        """Create the manifest with *seed_version* and optionally an operator."""
        manifest = self.store.bootstrap(seed_version, description=description)
        self.registry.ensure_root()
        if operator:
            self.directory.add_operator(operator)
        LOGGER.info("Bootstrapped manifest with seed version %s", manifest.latest)
        return manifest.to_dict()

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------
    def get_instance_version(self, instance_id: str) -> dict[str, object]:
        """Return ``{instanceId, currentVersion, subdomain}``."""
        return self.tracker.get_current_version(instance_id)

    def update_instance_version(
        self,
        instance_id: str,
        target_version: str | None,
        actor: str | None,
    ) -> TransitionResult:
        """Move an instance to *target_version*."""
        return self.tracker.update_version(instance_id, target_version, actor)

    def rollback_instance_version(self, instance_id: str, actor: str | None) -> TransitionResult:
        """Return an instance to its previous version."""
        return self.tracker.rollback(instance_id, actor)

    def instance_history(self, instance_id: str) -> list[dict[str, object]]:
        """Return the version transitions of an instance, newest first."""
        return [entry.to_dict() for entry in self.tracker.history(instance_id)]

    def add_instance(
        self,
        instance_id: str,
        *,
        name: str,
        subdomain: str,
        core_version: str | None = None,
    ) -> dict[str, object]:
        """Register an instance pinned to *core_version* (latest by default)."""
        manifest = self.store.load()
        if core_version:
            validate_version_id(core_version)
            entry = manifest.find(core_version)
            if entry is None:
                raise ValidationError(f"Version {core_version} does not exist")
            version = entry.version
        else:
            version = manifest.latest
        return self.directory.add_instance(
            instance_id,
            name=name,
            subdomain=subdomain,
            core_version=version,
        )

    def add_instance_user(
        self,
        instance_id: str,
        user_id: str,
        *,
        email: str = "",
        role: str = "user",
    ) -> dict[str, object]:
        """Add a user to an instance roster."""
        return self.directory.add_user(instance_id, user_id, email=email, role=role)

    def add_operator(self, user_id: str, *, email: str = "") -> dict[str, object]:
        """Grant *user_id* global version management rights."""
        return self.directory.add_operator(user_id, email=email)

    def close(self) -> None:
        """Wait for in-process deployments and release resources."""
        self.orchestrator.shutdown(wait=True)


__all__ = ["VersionService"]
