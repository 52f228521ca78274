"""Version deployment: background jobs and version tree materialization."""
from __future__ import annotations

from .materialize import (
    CONTENT_MANIFEST_NAME,
    VerificationReport,
    compute_content_manifest,
    materialize,
    read_content_manifest,
    verify_tree,
)
from .orchestrator import DeploymentOrchestrator

__all__ = [
    "CONTENT_MANIFEST_NAME",
    "DeploymentOrchestrator",
    "VerificationReport",
    "compute_content_manifest",
    "materialize",
    "read_content_manifest",
    "verify_tree",
]
