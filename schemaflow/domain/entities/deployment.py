from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from schemaflow.domain.entities.schema import SchemaSnapshot
from schemaflow.domain.exceptions import InvalidTransitionError


class DeploymentStatus(Enum):
    """Lifecycle of a deployment record."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLBACK_FAILED = "rollback_failed"

    def can_transition(self, target: "DeploymentStatus") -> bool:
        return target in _TRANSITIONS[self]

    @property
    def is_final(self) -> bool:
        """States a finished deployment may rest in."""
        return self in (
            DeploymentStatus.COMPLETED,
            DeploymentStatus.FAILED,
            DeploymentStatus.ROLLBACK_FAILED,
        )


# pending -> failed covers failures before any DDL was sent (nothing to undo).
_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.RUNNING, DeploymentStatus.FAILED},
    DeploymentStatus.RUNNING: {DeploymentStatus.COMPLETED, DeploymentStatus.FAILED},
    DeploymentStatus.FAILED: {DeploymentStatus.ROLLING_BACK},
    DeploymentStatus.ROLLING_BACK: {DeploymentStatus.COMPLETED, DeploymentStatus.ROLLBACK_FAILED},
    DeploymentStatus.COMPLETED: set(),
    DeploymentStatus.ROLLBACK_FAILED: set(),
}


@dataclass
class DeploymentRecord:
    """One attempt to apply forward SQL to a project's target database.

    Mutated only through :meth:`transition`, and only by the executor and
    rollback coordinator.
    """
    id: str
    project_id: str
    forward_sql: str
    schema_version: Optional[str] = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    backup_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    rolled_back: bool = False
    rollback_sql: Optional[str] = None

    def transition(self, target: DeploymentStatus) -> None:
        if not self.status.can_transition(target):
            raise InvalidTransitionError(
                f"Deployment {self.id}: cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "schema_version": self.schema_version,
            "forward_sql": self.forward_sql,
            "status": self.status.value,
            "backup_id": self.backup_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "error_message": self.error_message,
            "error_kind": self.error_kind,
            "rolled_back": self.rolled_back,
            "rollback_sql": self.rollback_sql,
        }


@dataclass(frozen=True)
class Backup:
    """Live schema captured immediately before a deployment. Append-only."""
    id: str
    deployment_id: str
    project_id: str
    schema_snapshot: SchemaSnapshot
    created_at: datetime


@dataclass
class DeploymentResult:
    """Structured outcome handed back to callers. Never raised."""
    success: bool
    deployment_id: Optional[str]
    status: DeploymentStatus
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    backup_id: Optional[str] = None
    rolled_back: bool = False
    statements_executed: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: DeploymentRecord, statements_executed: int = 0) -> "DeploymentResult":
        return cls(
            success=record.status == DeploymentStatus.COMPLETED and not record.rolled_back,
            deployment_id=record.id,
            status=record.status,
            error_kind=record.error_kind,
            error_message=record.error_message,
            backup_id=record.backup_id,
            rolled_back=record.rolled_back,
            statements_executed=statements_executed,
        )
