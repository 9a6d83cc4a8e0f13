"""Use case for storing and comparing schema versions."""
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from schemaflow.application.dtos.versioning_dto import CreateVersionRequest
from schemaflow.domain.entities.evolution import MigrationPlan, SchemaVersion
from schemaflow.domain.entities.schema import SchemaSnapshot
from schemaflow.domain.exceptions import NotFoundError, ValidationError
from schemaflow.domain.repositories.interfaces import ISchemaVersionRepository
from schemaflow.domain.services.diff_engine import DiffEngine
from schemaflow.domain.services.downtime_estimator import DowntimeEstimator
from schemaflow.domain.services.migration_builder import MigrationBuilder
from schemaflow.domain.services.versioning import INITIAL_VERSION, increment_version

logger = logging.getLogger(__name__)


class VersionStore:
    """
    Use case: version schema snapshots per project.
    Single Responsibility: version assignment, history and comparison.

    Version numbers are assigned inside the repository's ``append_version``
    so two writers for one project can never get the same number.
    """

    def __init__(
        self,
        repository: ISchemaVersionRepository,
        diff_engine: DiffEngine,
        migration_builder: MigrationBuilder,
        downtime_estimator: DowntimeEstimator,
    ):
        self._repository = repository
        self._diff_engine = diff_engine
        self._migration_builder = migration_builder
        self._estimator = downtime_estimator

    def execute(self, request: CreateVersionRequest) -> SchemaVersion:
        return self.create_version(
            request.project_id, request.schema, request.author_id, source_sql=request.source_sql
        )

    def create_version(
        self,
        project_id: str,
        schema: SchemaSnapshot,
        author_id: Optional[str] = None,
        source_sql: Optional[str] = None,
    ) -> SchemaVersion:
        """
        Store ``schema`` as the project's next version.

        Submitting the same structure as the latest version returns the
        latest version unchanged. The migration from the previous version
        is generated before anything is written; a generation error
        leaves the history untouched.
        """
        if not project_id:
            raise ValidationError("project_id is required")

        self._log_revert(project_id, schema)

        def build(latest: Optional[SchemaVersion]) -> SchemaVersion:
            if latest is not None and latest.checksum == schema.checksum:
                logger.info(f"[VersionStore] {project_id}: schema identical to {latest.version}, not stored")
                return latest

            next_version = increment_version(latest.version if latest else INITIAL_VERSION)
            snapshot = schema.with_identity(
                project_id=project_id,
                version=next_version,
                created_by=author_id,
                created_at=datetime.now(timezone.utc),
            )

            if latest is None:
                return SchemaVersion(id=str(uuid.uuid4()), snapshot=snapshot, source_sql=source_sql)

            changes = self._diff_engine.diff(latest.snapshot, snapshot)
            migration = self._migration_builder.generate(changes)
            return SchemaVersion(
                id=str(uuid.uuid4()),
                snapshot=snapshot,
                changes=changes,
                migration_up=migration.forward_sql,
                migration_down=migration.reverse_sql,
                breaking=any(c.breaking for c in changes),
                source_sql=source_sql,
            )

        version = self._repository.append_version(project_id, build)
        logger.info(f"[VersionStore] {project_id} is at version {version.version}")
        return version

    def get_version(self, project_id: str, version: str) -> SchemaVersion:
        found = self._repository.get_version(project_id, version)
        if found is None:
            raise NotFoundError(f"Version {version} not found for project {project_id}")
        return found

    def get_latest_version(self, project_id: str) -> Optional[SchemaVersion]:
        return self._repository.get_latest_version(project_id)

    def get_version_history(self, project_id: str, limit: int = 50) -> List[SchemaVersion]:
        """Newest first."""
        if limit <= 0:
            raise ValidationError("limit must be positive")
        return self._repository.list_versions(project_id, limit=limit)

    def compare_versions(self, project_id: str, from_version: str, to_version: str) -> MigrationPlan:
        old = self.get_version(project_id, from_version)
        new = self.get_version(project_id, to_version)
        return self.build_plan(old.snapshot, new.snapshot)

    def build_plan(self, old: SchemaSnapshot, new: SchemaSnapshot) -> MigrationPlan:
        """Diff two snapshots and generate the SQL moving ``old`` to ``new``."""
        changes = self._diff_engine.diff(old, new)
        migration = self._migration_builder.generate(changes)
        return MigrationPlan(
            from_version=old.version or INITIAL_VERSION,
            to_version=new.version or INITIAL_VERSION,
            changes=changes,
            forward_sql=migration.forward_sql,
            reverse_sql=migration.reverse_sql,
            breaking=any(c.breaking for c in changes),
            estimated_downtime_seconds=self._estimator.estimate(changes),
            warnings=list(migration.data_loss_warnings),
        )

    def _log_revert(self, project_id: str, schema: SchemaSnapshot) -> None:
        history = self._repository.list_versions(project_id)
        for older in history[1:]:
            if older.checksum == schema.checksum:
                logger.info(f"[VersionStore] {project_id}: schema reverts to the structure of {older.version}")
                return
