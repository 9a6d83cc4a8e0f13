from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from schemaflow.domain.entities.schema import SchemaSnapshot


class ChangeKind(Enum):
    """Kind of schema object a change applies to."""
    TABLE = "table"
    COLUMN = "column"
    INDEX = "index"
    POLICY = "policy"


class ChangeOperation(Enum):
    """Types of schema changes."""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


# Emission order inside a table: deletes first, then creates, then modifies.
OPERATION_ORDER = {
    ChangeOperation.DELETE: 0,
    ChangeOperation.CREATE: 1,
    ChangeOperation.MODIFY: 2,
}

KIND_ORDER = {
    ChangeKind.TABLE: 0,
    ChangeKind.COLUMN: 1,
    ChangeKind.INDEX: 2,
    ChangeKind.POLICY: 3,
}


@dataclass(frozen=True)
class SchemaChange:
    """Represents a single schema change operation.

    ``details`` holds JSON-compatible definitions complete enough to rebuild
    the affected object, so the reverse statement can always be generated.
    """
    kind: ChangeKind
    operation: ChangeOperation
    target: str
    details: Dict[str, Any] = field(default_factory=dict)
    breaking: bool = False

    @property
    def table_name(self) -> str:
        if self.kind == ChangeKind.TABLE:
            return self.target
        return self.details.get("table") or self.target.rsplit(".", 1)[0]

    @property
    def loses_data(self) -> bool:
        """Dropping a table or column cannot be undone for the rows it held."""
        return self.operation == ChangeOperation.DELETE and self.kind in (
            ChangeKind.TABLE, ChangeKind.COLUMN
        )

    def sort_key(self):
        return (
            self.table_name,
            OPERATION_ORDER[self.operation],
            KIND_ORDER[self.kind],
            self.target,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "operation": self.operation.value,
            "target": self.target,
            "details": self.details,
            "breaking": self.breaking,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaChange":
        return cls(
            kind=ChangeKind(data["kind"]),
            operation=ChangeOperation(data["operation"]),
            target=data["target"],
            details=data.get("details") or {},
            breaking=bool(data.get("breaking", False)),
        )


@dataclass(frozen=True)
class GeneratedMigration:
    """Forward and reverse DDL for a changeset."""
    forward_statements: List[str] = field(default_factory=list)
    reverse_statements: List[str] = field(default_factory=list)
    data_loss_warnings: List[str] = field(default_factory=list)

    @property
    def forward_sql(self) -> str:
        return "\n".join(self.forward_statements)

    @property
    def reverse_sql(self) -> str:
        return "\n".join(self.reverse_statements)


@dataclass
class MigrationPlan:
    """Complete plan to move a project from one version to another."""
    from_version: str
    to_version: str
    changes: List[SchemaChange]
    forward_sql: str
    reverse_sql: str
    breaking: bool = False
    estimated_downtime_seconds: int = 0
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_version": self.from_version,
            "to_version": self.to_version,
            "changes": [c.to_dict() for c in self.changes],
            "forward_sql": self.forward_sql,
            "reverse_sql": self.reverse_sql,
            "breaking": self.breaking,
            "estimated_downtime_seconds": self.estimated_downtime_seconds,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class SchemaVersion:
    """A stored snapshot together with the migration from its predecessor."""
    id: str
    snapshot: SchemaSnapshot
    changes: List[SchemaChange] = field(default_factory=list)
    migration_up: Optional[str] = None
    migration_down: Optional[str] = None
    breaking: bool = False
    source_sql: Optional[str] = None

    @property
    def project_id(self) -> str:
        return self.snapshot.project_id

    @property
    def version(self) -> str:
        return self.snapshot.version

    @property
    def checksum(self) -> str:
        return self.snapshot.checksum

    @property
    def created_at(self) -> Optional[datetime]:
        return self.snapshot.created_at

    @property
    def created_by(self) -> Optional[str]:
        return self.snapshot.created_by
