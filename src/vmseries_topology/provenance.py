"""Pass provenance tracking for audit and compliance.

This module implements provenance logging that answers:
- "What was the declared topology at time T?"
- "Which operations did a pass run, and which nodes failed?"
- "What version of the controller/topology was running?"

DESIGN PHILOSOPHY:
- Every reconciliation pass is stamped with provenance data
- Structured JSON format for queryability
- Git commit SHA, controller version, topology hash and change summaries
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
CONTROLLER_VERSION = os.environ.get("CONTROLLER_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Summary of planned operations for provenance tracking."""

    create_count: int = 0
    update_count: int = 0
    replace_count: int = 0
    delete_count: int = 0
    no_change_count: int = 0

    @property
    def total_significant(self) -> int:
        """Total significant changes (everything except no-ops)."""
        return self.create_count + self.update_count + self.replace_count + self.delete_count

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> ChangeProvenanceSummary:
        return cls(
            create_count=counts.get("create", 0),
            update_count=counts.get("update", 0),
            replace_count=counts.get("replace", 0),
            delete_count=counts.get("delete", 0),
            no_change_count=counts.get("noop", 0),
        )


@dataclass
class PassProvenance:
    """Complete provenance record for a reconciliation pass.

    This record captures everything needed to:
    - Audit what happened
    - Reproduce the plan at this point
    - Correlate with external events
    """

    # Timestamp
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    topology: str = ""
    provider: str = ""
    controller_version: str = CONTROLLER_VERSION
    controller_instance_id: str = ""

    # Git source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    topology_file_hash: str = ""  # SHA256 of the topology file content

    # Pass outcome
    status: str = ""
    dry_run: bool = False
    changes_applied: int = 0
    nodes_failed: int = 0
    nodes_blocked: int = 0
    drift_conflicts: int = 0
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def hash_file(path: Path) -> str:
    """SHA256 of a file's content, or empty string if unreadable."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return ""


class ProvenanceLogger:
    """Logs provenance records to the structured logger (stdout)."""

    def __init__(self) -> None:
        """Initialize provenance logger."""
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(
        self,
        topology_file: Path,
        provider: str,
        dry_run: bool,
    ) -> PassProvenance:
        """Create a new provenance record for a reconciliation pass.

        Args:
            topology_file: Declared topology file for this pass.
            provider: Name of the provider adapter.
            dry_run: Whether the pass plans without applying.

        Returns:
            Initialized provenance record.
        """
        return PassProvenance(
            provider=provider,
            controller_version=CONTROLLER_VERSION,
            controller_instance_id=self._instance_id,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            topology_file_hash=hash_file(topology_file),
            dry_run=dry_run,
        )

    def log_provenance(self, provenance: PassProvenance) -> None:
        """Log a completed provenance record.

        This is the primary audit log for the pass. The structured data
        enables queries like:
        - "Which commit replaced network/untrust?"
        - "How many passes partially failed in the last 24h?"

        Args:
            provenance: Completed provenance record.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.nodes_failed or provenance.nodes_blocked or provenance.drift_conflicts:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "topology": provenance.topology,
                "status": provenance.status,
                "dry_run": provenance.dry_run,
                "changes_applied": provenance.changes_applied,
                "nodes_failed": provenance.nodes_failed,
                "git_commit": provenance.git_commit_sha,
                "controller_version": provenance.controller_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_change_detail(
        self,
        provenance: PassProvenance,
        identity: str,
        operation: str,
        status: str,
    ) -> None:
        """Log one node's outcome for fine-grained audit."""
        logger.info(
            "Resource change",
            extra={
                "topology": provenance.topology,
                "git_commit": provenance.git_commit_sha,
                "identity": identity,
                "operation": operation,
                "status": status,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
