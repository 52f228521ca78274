"""Persisted deployment job records (``jobs.yml``)."""
from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import NotFoundError
from ..models import DeploymentJob
from .registry import JOBS_FILE, StateRegistry


@dataclass(slots=True)
class DeploymentJobStore:
    """Create, read and update :class:`DeploymentJob` records."""

    registry: StateRegistry

    def create(
        self,
        version: str,
        *,
        description: str | None = None,
        actor: str | None = None,
    ) -> DeploymentJob:
        """Persist a new ``queued`` job for *version*."""
        job = DeploymentJob(
            id=uuid.uuid4().hex[:12],
            version=version,
            description=description,
            actor=actor,
        )
        with self.registry.locked(JOBS_FILE):
            records = self.registry.read_jobs()
            records.append(job.to_dict())
            self.registry.write_jobs(records)
        return job

    def get(self, job_id: str) -> DeploymentJob:
        """Return job *job_id* or raise ``NotFoundError``."""
        for record in self.registry.read_jobs():
            if str(record.get("id")) == str(job_id):
                return DeploymentJob.from_dict(record)
        raise NotFoundError(f"Deployment job {job_id} not found")

    def list_jobs(self) -> list[DeploymentJob]:
        """Return every job, newest first."""
        jobs = [DeploymentJob.from_dict(record) for record in self.registry.read_jobs()]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs

    def active_jobs(self) -> list[DeploymentJob]:
        """Return the jobs still queued or running."""
        return [job for job in self.list_jobs() if job.status.is_active]

    def update(self, job_id: str, mutate: Callable[[DeploymentJob], None]) -> DeploymentJob:
        """Apply *mutate* to job *job_id* and persist the result."""
        with self.registry.locked(JOBS_FILE):
            records = self.registry.read_jobs()
            for index, record in enumerate(records):
                if str(record.get("id")) != str(job_id):
                    continue
                job = DeploymentJob.from_dict(record)
                mutate(job)
                records[index] = job.to_dict()
                self.registry.write_jobs(records)
                return job
        raise NotFoundError(f"Deployment job {job_id} not found")


__all__ = ["DeploymentJobStore"]
