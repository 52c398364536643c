"""
RunRecord schema - tracks one workflow instance.

A RunRecord is created when an instance (the top-level orchestrator or a
nested sub-workflow) starts. It carries the status-query surface: runtime
status, the latest custom status, and the terminal output or error.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

# ULID-based run ids, "{prefix}-{ulid}"
RunId = str


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Runtime status of a workflow instance."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


@dataclass
class RunRecord:
    """
    A record of a workflow instance.

    Attributes:
        run_id: Instance id ("{prefix}-{ulid}" or "{parent}-{suffix}" for nested)
        workflow: Name of the hosted workflow function
        name: Specification or job name the instance runs
        parent_id: Parent instance id for nested sub-workflows
        status: pending, running, completed, failed
        custom_status: Latest status text reported by the workflow
        output: Terminal result string
        error: Failure reason
        started_at: When the instance started
        completed_at: When the instance reached a terminal status
    """
    run_id: RunId
    workflow: str
    name: str = ""
    parent_id: Optional[RunId] = None
    status: RunStatus = RunStatus.PENDING
    custom_status: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> Optional[int]:
        """Execution time in milliseconds if completed."""
        if self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
        }
        if self.parent_id:
            result["parent_id"] = self.parent_id
        if self.custom_status is not None:
            result["custom_status"] = self.custom_status
        if self.output is not None:
            result["output"] = self.output
        if self.error is not None:
            result["error"] = self.error
        if self.completed_at:
            result["completed_at"] = self.completed_at.isoformat()
            result["duration_ms"] = self.duration_ms
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunRecord":
        """Deserialize from dictionary."""
        completed_at = None
        if data.get("completed_at"):
            completed_at = datetime.fromisoformat(data["completed_at"])
        return cls(
            run_id=data["run_id"],
            workflow=data["workflow"],
            name=data.get("name", ""),
            parent_id=data.get("parent_id"),
            status=RunStatus(data.get("status", "pending")),
            custom_status=data.get("custom_status"),
            output=data.get("output"),
            error=data.get("error"),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=completed_at,
        )
