"""Bring the local source checkout up to date before materializing a version."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..config import SourceConfig
from ..errors import UpstreamUnavailableError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome of a source synchronisation."""

    skipped: bool
    command: tuple[str, ...] = ()
    output: str = ""

    def summary(self) -> str:
        """Short human readable description used in job step details."""
        if self.skipped:
            return "source sync disabled"
        lines = [line for line in self.output.strip().splitlines() if line.strip()]
        return lines[-1] if lines else "up to date"


class SourceSynchronizer:
    """Run ``git pull --ff-only`` in the configured checkout."""

    def __init__(self, config: SourceConfig) -> None:
        """Store the checkout settings."""
        self.config = config

    def sync(self) -> SyncResult:
        """Pull upstream changes, raising ``UpstreamUnavailableError`` on failure."""
        if not self.config.sync:
            return SyncResult(skipped=True)
        root = self.config.root
        if not root.is_dir():
            raise UpstreamUnavailableError(f"Source checkout not found at {root}")

        cmd = (
            self.config.git_bin,
            "-C",
            str(root),
            "pull",
            "--ff-only",
            self.config.remote,
            self.config.branch,
        )
        try:
            result = self._run_command(cmd)
        except FileNotFoundError as exc:
            raise UpstreamUnavailableError(
                f"git executable '{self.config.git_bin}' not found."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise UpstreamUnavailableError(
                f"Source sync timed out after {self.config.timeout:g}s."
            ) from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise UpstreamUnavailableError(
                f"Source sync failed (exit {result.returncode}): {detail or 'no output'}"
            )
        LOGGER.info("Synchronised source checkout %s", root)
        return SyncResult(skipped=False, command=cmd, output=result.stdout or "")

    def _run_command(self, cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Execute the sync command (isolated for testing)."""
        return subprocess.run(  # noqa: S603
            list(cmd),
            check=False,
            capture_output=True,
            text=True,
            timeout=self.config.timeout,
        )


__all__ = ["SourceSynchronizer", "SyncResult"]
