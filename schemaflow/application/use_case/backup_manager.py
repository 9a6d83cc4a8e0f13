"""Use case for capturing pre-deployment backups."""
import logging
import uuid
from datetime import datetime, timezone

from schemaflow.domain.entities.deployment import Backup, DeploymentRecord
from schemaflow.domain.exceptions import NotFoundError
from schemaflow.domain.repositories.interfaces import IBackupRepository, ITargetDatabase

logger = logging.getLogger(__name__)


class BackupManager:
    """
    Captures the live structure of the target before any DDL runs.
    Single Responsibility: backup capture and lookup.
    """

    def __init__(self, repository: IBackupRepository):
        self._repository = repository

    def capture(self, record: DeploymentRecord, target: ITargetDatabase) -> Backup:
        """Introspect the live schema (not the last stored version) and persist it."""
        live = target.introspect_schema()
        snapshot = live.with_identity(project_id=record.project_id, version=record.schema_version or "")
        backup = Backup(
            id=str(uuid.uuid4()),
            deployment_id=record.id,
            project_id=record.project_id,
            schema_snapshot=snapshot,
            created_at=datetime.now(timezone.utc),
        )
        self._repository.create(backup)
        logger.info(f"[BackupManager] Backup {backup.id} captured {len(snapshot.tables)} tables "
                    f"for deployment {record.id}")
        return backup

    def get_backup(self, backup_id: str) -> Backup:
        backup = self._repository.get(backup_id)
        if backup is None:
            raise NotFoundError(f"Backup {backup_id} not found")
        return backup

    def get_for_deployment(self, deployment_id: str) -> Backup:
        backup = self._repository.get_for_deployment(deployment_id)
        if backup is None:
            raise NotFoundError(f"Deployment {deployment_id} has no backup")
        return backup
