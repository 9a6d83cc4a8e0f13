"""Dependency Injection Container."""

from typing import Dict, Optional
import logging

from schemaflow.domain.exceptions import ConnectivityError
from schemaflow.infrastructure.config import Settings

logger = logging.getLogger(__name__)


class DIContainer:
    """
    Dependency Injection Container.
    Follows Dependency Inversion Principle.

    Without a metadata DSN the metadata store is in-memory and lives
    only as long as this container.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or Settings()
        self._services = {}
        self._target_dsns: Dict[str, str] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    def configure(self, target_dsn: Optional[str] = None, metadata_dsn: Optional[str] = None):
        """Override connection strings; a changed DSN clears already built services."""
        changed = False
        if target_dsn and target_dsn != self._settings.target_dsn:
            self._settings.target_dsn = target_dsn
            changed = True
        if metadata_dsn and metadata_dsn != self._settings.metadata_dsn:
            self._settings.metadata_dsn = metadata_dsn
            changed = True
        if changed:
            self._services = {}

    def register_target(self, project_id: str, dsn: str):
        """Route one project to its own target database."""
        self._target_dsns[project_id] = dsn
        self._services.pop(f"target:{project_id}", None)

    def get_inspector(self, dsn: Optional[str] = None):
        """Get database inspector."""
        from schemaflow.infrastructure.database.inspector import PostgresInspector
        dsn = dsn or self._settings.target_dsn
        if not dsn:
            raise ConnectivityError("No target database configured (SCHEMAFLOW_TARGET_DSN)")
        return PostgresInspector(dsn)

    def get_target_database(self, project_id: str):
        """Get the target database adapter for a project."""
        key = f"target:{project_id}"
        if key not in self._services:
            from schemaflow.infrastructure.database.target_database import PostgresTargetDatabase
            dsn = self._target_dsns.get(project_id) or self._settings.target_dsn
            if not dsn:
                raise ConnectivityError(f"No target database configured for project {project_id}")
            self._services[key] = PostgresTargetDatabase(dsn)
        return self._services[key]

    def _metadata_store(self):
        if "metadata_store" not in self._services:
            from schemaflow.infrastructure.repositories.postgres_repositories import PostgresMetadataStore
            store = PostgresMetadataStore(self._settings.metadata_dsn)
            store.ensure_schema()
            self._services["metadata_store"] = store
        return self._services["metadata_store"]

    def _repository(self, name: str):
        if name not in self._services:
            if self._settings.metadata_dsn:
                from schemaflow.infrastructure.repositories import postgres_repositories as repos
                classes = {
                    "version_repository": repos.PostgresSchemaVersionRepository,
                    "deployment_repository": repos.PostgresDeploymentRepository,
                    "backup_repository": repos.PostgresBackupRepository,
                }
                self._services[name] = classes[name](self._metadata_store())
            else:
                from schemaflow.infrastructure.repositories import memory_repositories as repos
                classes = {
                    "version_repository": repos.InMemorySchemaVersionRepository,
                    "deployment_repository": repos.InMemoryDeploymentRepository,
                    "backup_repository": repos.InMemoryBackupRepository,
                }
                logger.info(f"[DIContainer] No metadata DSN, using in-memory {name}")
                self._services[name] = classes[name]()
        return self._services[name]

    def get_version_repository(self):
        return self._repository("version_repository")

    def get_deployment_repository(self):
        return self._repository("deployment_repository")

    def get_backup_repository(self):
        return self._repository("backup_repository")

    def get_schema_document_repository(self):
        """Get schema document parser."""
        if "schema_documents" not in self._services:
            from schemaflow.infrastructure.repositories.schema_document_repository import (
                SchemaDocumentRepository,
            )
            self._services["schema_documents"] = SchemaDocumentRepository()
        return self._services["schema_documents"]

    def get_diff_engine(self):
        """Get diff engine."""
        if "diff_engine" not in self._services:
            from schemaflow.domain.services.diff_engine import DiffEngine
            self._services["diff_engine"] = DiffEngine()
        return self._services["diff_engine"]

    def get_migration_builder(self):
        """Get migration builder."""
        if "migration_builder" not in self._services:
            from schemaflow.domain.services.migration_builder import MigrationBuilder
            self._services["migration_builder"] = MigrationBuilder()
        return self._services["migration_builder"]

    def get_downtime_estimator(self):
        if "downtime_estimator" not in self._services:
            from schemaflow.domain.services.downtime_estimator import DowntimeEstimator
            self._services["downtime_estimator"] = DowntimeEstimator()
        return self._services["downtime_estimator"]

    def get_locks(self):
        """Get per-project deployment locks."""
        if "locks" not in self._services:
            from schemaflow.infrastructure.locking import PostgresAdvisoryProjectLocks, ProjectLocks
            if self._settings.lock_backend == "postgres":
                if not self._settings.metadata_dsn:
                    raise ConnectivityError("Advisory locks need SCHEMAFLOW_METADATA_DSN")
                self._services["locks"] = PostgresAdvisoryProjectLocks(self._settings.metadata_dsn)
            else:
                self._services["locks"] = ProjectLocks()
        return self._services["locks"]

    def get_version_store(self):
        """Get version store."""
        if "version_store" not in self._services:
            from schemaflow.application.use_case.version_store import VersionStore
            self._services["version_store"] = VersionStore(
                self.get_version_repository(),
                self.get_diff_engine(),
                self.get_migration_builder(),
                self.get_downtime_estimator(),
            )
        return self._services["version_store"]

    def get_orchestrator(self):
        """Get deployment orchestrator."""
        if "orchestrator" not in self._services:
            from schemaflow.application.orchestrators.deployment_orchestrator import DeploymentOrchestrator
            from schemaflow.application.use_case.backup_manager import BackupManager
            from schemaflow.application.use_case.deployment_executor import DeploymentExecutor
            from schemaflow.application.use_case.rollback_coordinator import RollbackCoordinator
            from schemaflow.infrastructure.validators.deployment_verifier import DeploymentVerifier
            from schemaflow.infrastructure.validators.sql_validator import SQLValidator

            timeout = self._settings.statement_timeout_seconds
            executor = DeploymentExecutor(
                SQLValidator(self._settings.dialect),
                DeploymentVerifier(),
                statement_timeout_seconds=timeout,
            )
            rollback = RollbackCoordinator(
                self.get_deployment_repository(),
                self.get_backup_repository(),
                self.get_diff_engine(),
                self.get_migration_builder(),
                statement_timeout_seconds=timeout,
                transactional=self._settings.transactional,
            )
            self._services["orchestrator"] = DeploymentOrchestrator(
                self.get_deployment_repository(),
                BackupManager(self.get_backup_repository()),
                executor,
                rollback,
                self.get_version_store(),
                target_factory=self.get_target_database,
                locks=self.get_locks(),
                transactional=self._settings.transactional,
            )
        return self._services["orchestrator"]
