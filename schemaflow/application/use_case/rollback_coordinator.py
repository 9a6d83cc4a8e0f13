"""Use case for restoring a target database after a failed deployment."""
import logging
from datetime import datetime, timezone

from schemaflow.domain.entities.deployment import DeploymentRecord, DeploymentStatus
from schemaflow.domain.exceptions import NotFoundError, RollbackFailure, SchemaFlowError
from schemaflow.domain.repositories.interfaces import (
    IBackupRepository,
    IDeploymentRepository,
    ITargetDatabase,
)
from schemaflow.domain.services.diff_engine import DiffEngine
from schemaflow.domain.services.migration_builder import MigrationBuilder

logger = logging.getLogger(__name__)


class RollbackCoordinator:
    """
    One-shot restore of the pre-deployment structure.
    Single Responsibility: rollback of a failed deployment.

    The restore SQL is the diff from the live schema (re-introspected,
    since a timed out statement may still have landed) to the backup.
    It runs once; a failure is terminal.
    """

    def __init__(
        self,
        deployment_repository: IDeploymentRepository,
        backup_repository: IBackupRepository,
        diff_engine: DiffEngine,
        migration_builder: MigrationBuilder,
        statement_timeout_seconds: float = 30.0,
        transactional: bool = True,
    ):
        self._deployments = deployment_repository
        self._backups = backup_repository
        self._diff_engine = diff_engine
        self._migration_builder = migration_builder
        self._timeout = statement_timeout_seconds
        self._transactional = transactional

    def rollback(self, record: DeploymentRecord, target: ITargetDatabase) -> DeploymentRecord:
        """Move a failed record to completed (rolled back) or rollback_failed."""
        record.transition(DeploymentStatus.ROLLING_BACK)
        self._deployments.update(record)
        logger.warning(f"[RollbackCoordinator] Rolling back deployment {record.id} ({record.error_kind})")

        try:
            self._restore(record, target)
        except SchemaFlowError as e:
            record.transition(DeploymentStatus.ROLLBACK_FAILED)
            record.error_kind = RollbackFailure.kind
            record.error_message = (f"{record.error_message}; rollback failed ({e.kind}): {e.message}. "
                                    f"Manual intervention required")
            record.completed_at = datetime.now(timezone.utc)
            self._deployments.update(record)
            logger.error(f"[RollbackCoordinator] Deployment {record.id} is rollback_failed: {e.message}")
            return record

        record.transition(DeploymentStatus.COMPLETED)
        record.rolled_back = True
        record.completed_at = datetime.now(timezone.utc)
        self._deployments.update(record)
        logger.info(f"[RollbackCoordinator] Deployment {record.id} rolled back")
        return record

    def _restore(self, record: DeploymentRecord, target: ITargetDatabase) -> None:
        backup = self._backups.get(record.backup_id) if record.backup_id else None
        if backup is None:
            raise NotFoundError(f"No backup recorded for deployment {record.id}")

        live = target.introspect_schema()
        changes = self._diff_engine.diff(live, backup.schema_snapshot)
        migration = self._migration_builder.generate(changes)
        record.rollback_sql = migration.forward_sql
        self._deployments.update(record)

        if not migration.forward_statements:
            logger.info(f"[RollbackCoordinator] Live schema already matches backup {backup.id}")
            return

        if self._transactional:
            target.execute_statement("BEGIN")
        try:
            for statement in migration.forward_statements:
                target.execute_statement(statement, timeout_seconds=self._timeout)
            if self._transactional:
                target.execute_statement("COMMIT")
        except SchemaFlowError:
            if self._transactional:
                try:
                    target.execute_statement("ROLLBACK")
                except SchemaFlowError as abort_error:
                    logger.error(f"[RollbackCoordinator] ROLLBACK failed: {abort_error.message}")
            raise
