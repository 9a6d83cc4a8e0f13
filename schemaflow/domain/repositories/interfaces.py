from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from schemaflow.domain.entities.deployment import Backup, DeploymentRecord
from schemaflow.domain.entities.evolution import SchemaVersion
from schemaflow.domain.entities.schema import SchemaSnapshot


class ISchemaVersionRepository(ABC):
    """Interface for schema version persistence (``schema_versions``)."""

    @abstractmethod
    def append_version(
        self,
        project_id: str,
        build: Callable[[Optional[SchemaVersion]], SchemaVersion],
    ) -> SchemaVersion:
        """
        Under a per-project lock/transaction, read the latest version, call
        ``build(latest)`` and persist the version it returns. If ``build``
        returns ``latest`` itself nothing is written.
        """
        pass

    @abstractmethod
    def get_version(self, project_id: str, version: str) -> Optional[SchemaVersion]:
        """Retrieve one version or None."""
        pass

    @abstractmethod
    def get_latest_version(self, project_id: str) -> Optional[SchemaVersion]:
        """Retrieve the newest version or None."""
        pass

    @abstractmethod
    def list_versions(self, project_id: str, limit: int = 50) -> List[SchemaVersion]:
        """Retrieve versions, newest first."""
        pass


class IDeploymentRepository(ABC):
    """Interface for deployment record persistence (``deployments``)."""

    @abstractmethod
    def create(self, record: DeploymentRecord) -> DeploymentRecord:
        pass

    @abstractmethod
    def update(self, record: DeploymentRecord) -> DeploymentRecord:
        pass

    @abstractmethod
    def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        pass

    @abstractmethod
    def list_for_project(self, project_id: str, limit: int = 10) -> List[DeploymentRecord]:
        """Newest first."""
        pass

    @abstractmethod
    def get_current_version(self, project_id: str) -> Optional[str]:
        """Schema version of the last successful, not rolled back, deployment."""
        pass


class IBackupRepository(ABC):
    """Interface for pre-deployment backups (``deployment_backups``). Append-only."""

    @abstractmethod
    def create(self, backup: Backup) -> Backup:
        pass

    @abstractmethod
    def get(self, backup_id: str) -> Optional[Backup]:
        pass

    @abstractmethod
    def get_for_deployment(self, deployment_id: str) -> Optional[Backup]:
        pass


class ITargetDatabase(ABC):
    """
    The only protocol the engine needs from a project's database.
    Implementations translate driver errors into ConnectivityError,
    ExecutionError and ExecutionTimeoutError.
    """

    @abstractmethod
    def execute_statement(self, sql: str, timeout_seconds: Optional[float] = None) -> None:
        """Execute one statement; raise on failure."""
        pass

    @abstractmethod
    def introspect_schema(self) -> SchemaSnapshot:
        """Introspect the live structure."""
        pass

    @abstractmethod
    def ping_connectivity(self) -> None:
        """Raise ConnectivityError when the database is unreachable."""
        pass
