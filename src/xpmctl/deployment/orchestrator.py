"""Deployment of new versions from the upstream source.

A deployment is recorded as a :class:`~xpmctl.models.DeploymentJob` and runs
the fixed four-step plan on a single background worker:

1. Pull the source checkout (:class:`~xpmctl.providers.SourceSynchronizer`).
2. Compare manifests: make sure the version is still new and pick up the
   upstream description when none was supplied.
3. Materialize the version folder and its content manifest.
4. Commit the new entry to the manifest as ``latest``.

Only one deployment may be queued or running at a time. Admission is decided
under the global lock; the worker holds the deploy lock while it runs, which
also lets a later admission check recognise a job whose worker died.
"""
from __future__ import annotations

import concurrent.futures
import logging
import shutil
import time
from datetime import UTC, datetime
from pathlib import Path

from ..config import AppConfig
from ..errors import (
    ConflictError,
    InvalidOperationError,
    ValidationError,
    XpmctlError,
)
from ..locking import LockManager, LockTimeoutError
from ..models import (
    ContentManifest,
    DeploymentJob,
    JobStatus,
    LastDeployed,
    Manifest,
    VersionEntry,
    VersionStats,
    VersionStatus,
    now_iso,
)
from ..providers import RemoteVersionSource, SourceSynchronizer
from ..state import DeploymentJobStore, InstanceDirectory, ManifestStore, apply_usage
from ..versioning import sort_key, validate_version_id, version_dir_name
from .materialize import materialize

LOGGER = logging.getLogger(__name__)

STEP_IN_PROGRESS = "in-progress"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"

FAILURE_POLICY_KEEP = "keep"
FAILURE_POLICY_CLEANUP = "cleanup"


class DeploymentOrchestrator:
    """Compare manifests and deploy new versions as background jobs."""

    def __init__(
        self,
        *,
        config: AppConfig,
        store: ManifestStore,
        remote: RemoteVersionSource,
        sync: SourceSynchronizer,
        jobs: DeploymentJobStore,
        directory: InstanceDirectory,
        locks: LockManager,
    ) -> None:
        """Wire the orchestrator to its collaborators."""
        self.config = config
        self.store = store
        self.remote = remote
        self.sync = sync
        self.jobs = jobs
        self.directory = directory
        self.locks = locks
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._futures: dict[str, concurrent.futures.Future[DeploymentJob]] = {}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def check_status(self) -> dict[str, object]:
        """Compare the remote manifest with the local one.

        Upstream failures propagate as ``UpstreamUnavailableError`` so callers
        never mistake an unreachable upstream for "nothing new".
        """
        remote = self.remote.fetch_manifest()
        local = self.store.load()
        return {
            "hasNewVersion": remote.latest != local.latest,
            "remoteLatest": remote.latest,
            "localLatest": local.latest,
            "candidateVersions": [entry.to_dict() for entry in remote.versions],
        }

    def undeployed_versions(self) -> list[str]:
        """Remote versions missing from the local manifest, newest first."""
        remote = self.remote.fetch_manifest()
        local = self.store.load()
        missing = [
            entry.version for entry in remote.versions if not local.has_version(entry.version)
        ]
        return sorted(missing, key=sort_key, reverse=True)

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------
    def deploy(
        self,
        version_id: str,
        description: str | None = None,
        *,
        actor: str | None = None,
        submit: bool = True,
    ) -> dict[str, object]:
        """Queue a deployment of *version_id* and return the acknowledgement.

        With ``submit=False`` the job is only recorded; a separate worker
        (``xpmctl version run-job``) is expected to execute it.
        """
        version = validate_version_id(version_id)
        if self.store.load().has_version(version):
            raise ValidationError(f"Version {version} already exists")
        try:
            with self.locks.global_lock(timeout=self.config.lock_timeout):
                self._fail_abandoned_jobs()
                active = self.jobs.active_jobs()
                if active:
                    raise ConflictError(
                        f"Deployment of {active[0].version} is already in progress "
                        f"(job {active[0].id})."
                    )
                job = self.jobs.create(version, description=description, actor=actor)
        except LockTimeoutError as exc:
            raise ConflictError(str(exc)) from exc

        LOGGER.info("Queued deployment of %s as job %s", version, job.id)
        if submit:
            self._futures[job.id] = self._get_executor().submit(self.run_job, job.id)
        return {
            "status": "deploying",
            "jobId": job.id,
            "version": version,
            "steps": [step.to_dict() for step in job.steps],
        }

    def run_job(self, job_id: str) -> DeploymentJob:
        """Execute queued job *job_id* synchronously and return its final record."""
        job = self.jobs.get(job_id)
        if job.status is not JobStatus.QUEUED:
            raise InvalidOperationError(
                f"Deployment job {job_id} is {job.status.value}, expected queued."
            )
        try:
            with self.locks.deploy_lock(timeout=self.config.lock_timeout):
                # admission may have failed the job while this worker started up
                job = self.jobs.get(job_id)
                if job.status is not JobStatus.QUEUED:
                    raise InvalidOperationError(
                        f"Deployment job {job_id} is {job.status.value}, expected queued."
                    )
                return self._execute(job_id)
        except LockTimeoutError as exc:
            self._finish(job_id, error=f"Another deployment holds the deploy lock: {exc}")
            raise ConflictError(str(exc)) from exc

    def fail_job(self, job_id: str, error: str) -> DeploymentJob:
        """Mark *job_id* failed without running it (its worker could not start)."""
        LOGGER.error("Deployment job %s failed before it started: %s", job_id, error)
        return self._finish(job_id, error=error)

    def wait(self, job_id: str, timeout: float | None = None) -> DeploymentJob:
        """Block until *job_id* leaves the queued/running states."""
        future = self._futures.get(job_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except (concurrent.futures.TimeoutError, XpmctlError):
                # the job record carries the outcome
                pass
            return self.jobs.get(job_id)
        deadline = None if timeout is None else time.monotonic() + timeout
        job = self.jobs.get(job_id)
        while job.status.is_active and (deadline is None or time.monotonic() < deadline):
            time.sleep(0.2)
            job = self.jobs.get(job_id)
        return job

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop the background worker."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    def _execute(self, job_id: str) -> DeploymentJob:
        job = self.jobs.update(job_id, _mark_running)
        version = job.version
        description = job.description
        dest_root = self.store.version_path(version)
        created_dest = False
        step = 0
        try:
            step = 1
            self._step(job_id, step, STEP_IN_PROGRESS)
            sync_result = self.sync.sync()
            self._step(job_id, step, STEP_COMPLETED, sync_result.summary())

            step = 2
            self._step(job_id, step, STEP_IN_PROGRESS)
            if self.store.load().has_version(version):
                raise InvalidOperationError(f"Version {version} was deployed concurrently.")
            release_date = None
            if not description:
                remote_entry = self.remote.fetch_manifest().find(version)
                if remote_entry is not None:
                    description = remote_entry.description
                    release_date = remote_entry.release_date
            self._step(job_id, step, STEP_COMPLETED)

            step = 3
            self._step(job_id, step, STEP_IN_PROGRESS)
            source_root = self.config.source.versions_dir / version_dir_name(version)
            content = materialize(
                source_root,
                dest_root,
                algorithm=self.config.deploy.hash_algorithm,
                timeout=self.config.deploy.materialize_timeout,
            )
            created_dest = True
            self._step(
                job_id,
                step,
                STEP_COMPLETED,
                f"{content.file_count} files, {content.total_size} bytes",
            )

            step = 4
            self._step(job_id, step, STEP_IN_PROGRESS)
            entry = VersionEntry(
                version=version,
                description=description or "",
                status=VersionStatus.STABLE,
                release_date=release_date or now_iso(),
                stats=VersionStats(file_count=content.file_count, size=content.total_size),
            )
            self.store.update(lambda manifest: self._commit(manifest, entry, content))
            self._step(job_id, step, STEP_COMPLETED)
        except Exception as exc:  # noqa: BLE001 - recorded on the job
            if not isinstance(exc, XpmctlError):
                LOGGER.exception("Deployment job %s crashed", job_id)
            message = str(exc) or exc.__class__.__name__
            if step:
                self._step(job_id, step, STEP_FAILED, message)
            self._handle_partial(dest_root, created_dest)
            LOGGER.error("Deployment of %s failed at step %s: %s", version, step, message)
            return self._finish(job_id, error=message)

        LOGGER.info("Deployed version %s", version)
        return self._finish(job_id)

    def _commit(self, manifest: Manifest, entry: VersionEntry, content: ContentManifest) -> None:
        if manifest.has_version(entry.version):
            raise InvalidOperationError(f"Version {entry.version} already exists")
        manifest.versions.insert(0, entry)
        manifest.promote(entry.version)
        manifest.last_deployed = LastDeployed(
            version=entry.version,
            timestamp=now_iso(),
            source_fingerprint=content.fingerprint(),
        )
        apply_usage(manifest, self.directory.usage_counts())

    def _handle_partial(self, dest_root: Path, created_dest: bool) -> None:
        if not created_dest:
            return
        if self.config.deploy.on_failure == FAILURE_POLICY_CLEANUP:
            shutil.rmtree(dest_root, ignore_errors=True)
            LOGGER.info("Removed partially deployed directory %s", dest_root)
        else:
            LOGGER.warning("Keeping partially deployed directory %s for inspection", dest_root)

    def _step(self, job_id: str, number: int, status: str, detail: str | None = None) -> None:
        self.jobs.update(job_id, lambda job: job.mark_step(number, status, detail))

    def _finish(self, job_id: str, *, error: str | None = None) -> DeploymentJob:
        def _apply(job: DeploymentJob) -> None:
            job.status = JobStatus.FAILED if error else JobStatus.SUCCEEDED
            job.error = error
            job.finished_at = now_iso()

        return self.jobs.update(job_id, _apply)

    def _fail_abandoned_jobs(self) -> None:
        """Fail active jobs that no worker will ever finish.

        A ``running`` job is abandoned once the deploy lock is free. A
        ``queued`` job is abandoned when, in addition, it has waited longer
        than ``deploy.queued_grace`` for a worker to pick it up.
        """
        grace = self.config.deploy.queued_grace
        abandoned: list[tuple[DeploymentJob, str]] = []
        for job in self.jobs.active_jobs():
            if job.status is JobStatus.RUNNING:
                abandoned.append((job, "Deployment worker exited before completion."))
            elif job.id not in self._futures and _age_seconds(job.created_at) > grace:
                reason = f"No deployment worker picked the job up within {grace:g}s."
                abandoned.append((job, reason))
        if not abandoned:
            return
        try:
            with self.locks.deploy_lock(timeout=0):
                for job, reason in abandoned:
                    LOGGER.warning("Marking abandoned deployment job %s as failed", job.id)
                    self._finish(job.id, error=reason)
        except LockTimeoutError:
            return

    def _get_executor(self) -> concurrent.futures.ThreadPoolExecutor:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix="xpmctl-deploy",
            )
        return self._executor


def _mark_running(job: DeploymentJob) -> None:
    job.status = JobStatus.RUNNING
    job.started_at = now_iso()


def _age_seconds(timestamp: str) -> float:
    """Seconds elapsed since *timestamp*; unreadable stamps count as infinitely old."""
    try:
        created = datetime.fromisoformat(timestamp)
    except ValueError:
        return float("inf")
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return (datetime.now(tz=UTC) - created).total_seconds()


__all__ = [
    "DeploymentOrchestrator",
    "FAILURE_POLICY_CLEANUP",
    "FAILURE_POLICY_KEEP",
]
