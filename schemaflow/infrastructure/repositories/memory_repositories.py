"""In-memory metadata store used when no metadata database is configured."""

import copy
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from schemaflow.domain.entities.deployment import Backup, DeploymentRecord, DeploymentStatus
from schemaflow.domain.entities.evolution import SchemaVersion
from schemaflow.domain.exceptions import NotFoundError, ValidationError
from schemaflow.domain.repositories.interfaces import (
    IBackupRepository,
    IDeploymentRepository,
    ISchemaVersionRepository,
)

logger = logging.getLogger(__name__)


class InMemorySchemaVersionRepository(ISchemaVersionRepository):
    """
    Versions kept per project in insertion order.
    Single Responsibility: version persistence for one process.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._versions: Dict[str, List[SchemaVersion]] = defaultdict(list)

    def append_version(
        self,
        project_id: str,
        build: Callable[[Optional[SchemaVersion]], SchemaVersion],
    ) -> SchemaVersion:
        with self._lock:
            history = self._versions[project_id]
            latest = history[-1] if history else None
            version = build(latest)
            if version is latest:
                return latest
            if any(v.version == version.version for v in history):
                raise ValidationError(f"Version {version.version} already exists for project {project_id}")
            history.append(version)
            logger.info(f"[InMemorySchemaVersionRepository] Stored {project_id}@{version.version}")
            return version

    def get_version(self, project_id: str, version: str) -> Optional[SchemaVersion]:
        with self._lock:
            for v in self._versions.get(project_id, []):
                if v.version == version:
                    return v
        return None

    def get_latest_version(self, project_id: str) -> Optional[SchemaVersion]:
        with self._lock:
            history = self._versions.get(project_id)
            return history[-1] if history else None

    def list_versions(self, project_id: str, limit: int = 50) -> List[SchemaVersion]:
        with self._lock:
            history = list(self._versions.get(project_id, []))
        return list(reversed(history))[:limit]


class InMemoryDeploymentRepository(IDeploymentRepository):
    """Deployment records; callers receive copies so only ``update`` changes stored state."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[str, DeploymentRecord] = {}
        self._order: List[str] = []

    def create(self, record: DeploymentRecord) -> DeploymentRecord:
        with self._lock:
            if record.id in self._records:
                raise ValidationError(f"Deployment {record.id} already exists")
            self._records[record.id] = copy.deepcopy(record)
            self._order.append(record.id)
        return record

    def update(self, record: DeploymentRecord) -> DeploymentRecord:
        with self._lock:
            if record.id not in self._records:
                raise NotFoundError(f"Deployment {record.id} not found")
            self._records[record.id] = copy.deepcopy(record)
        return record

    def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        with self._lock:
            record = self._records.get(deployment_id)
            return copy.deepcopy(record) if record else None

    def list_for_project(self, project_id: str, limit: int = 10) -> List[DeploymentRecord]:
        with self._lock:
            records = [self._records[i] for i in reversed(self._order)
                       if self._records[i].project_id == project_id]
            return [copy.deepcopy(r) for r in records[:limit]]

    def get_current_version(self, project_id: str) -> Optional[str]:
        with self._lock:
            for deployment_id in reversed(self._order):
                record = self._records[deployment_id]
                if (
                    record.project_id == project_id
                    and record.schema_version
                    and record.status == DeploymentStatus.COMPLETED
                    and not record.rolled_back
                ):
                    return record.schema_version
        return None


class InMemoryBackupRepository(IBackupRepository):
    """Append-only backups."""

    def __init__(self):
        self._lock = threading.Lock()
        self._backups: Dict[str, Backup] = {}

    def create(self, backup: Backup) -> Backup:
        with self._lock:
            if backup.id in self._backups:
                raise ValidationError(f"Backup {backup.id} already exists")
            self._backups[backup.id] = backup
        return backup

    def get(self, backup_id: str) -> Optional[Backup]:
        with self._lock:
            return self._backups.get(backup_id)

    def get_for_deployment(self, deployment_id: str) -> Optional[Backup]:
        with self._lock:
            for backup in self._backups.values():
                if backup.deployment_id == deployment_id:
                    return backup
        return None
