"""Main orchestrator for deployments."""
import logging
import uuid
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from schemaflow.application.dtos.versioning_dto import DeploymentRequest
from schemaflow.application.use_case.backup_manager import BackupManager
from schemaflow.application.use_case.deployment_executor import DeploymentExecutor
from schemaflow.application.use_case.rollback_coordinator import RollbackCoordinator
from schemaflow.application.use_case.version_store import VersionStore
from schemaflow.domain.entities.deployment import Backup, DeploymentRecord, DeploymentResult, DeploymentStatus
from schemaflow.domain.entities.schema import SchemaSnapshot
from schemaflow.domain.exceptions import NotFoundError, SchemaFlowError, ValidationError
from schemaflow.domain.repositories.interfaces import IDeploymentRepository, ITargetDatabase
from schemaflow.infrastructure.locking import ProjectLocks

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """
    Main orchestrator coordinating backup, execution and rollback.
    Single Responsibility: Coordinate use cases and present results.

    Deployments of one project are serialized through ``locks``; other
    projects proceed in parallel. Deployment failures come back as a
    ``DeploymentResult`` and are never raised.
    """

    def __init__(
        self,
        deployment_repository: IDeploymentRepository,
        backup_manager: BackupManager,
        executor: DeploymentExecutor,
        rollback_coordinator: RollbackCoordinator,
        version_store: VersionStore,
        target_factory: Callable[[str], ITargetDatabase],
        locks: Optional[ProjectLocks] = None,
        transactional: bool = True,
    ):
        self._deployments = deployment_repository
        self._backups = backup_manager
        self._executor = executor
        self._rollback = rollback_coordinator
        self._versions = version_store
        self._target_factory = target_factory
        self._locks = locks or ProjectLocks()
        self._transactional = transactional

    def process(self, request: DeploymentRequest) -> DeploymentResult:
        return self.apply_migration(
            request.project_id,
            request.forward_sql,
            schema_version=request.schema_version,
            transactional=request.transactional,
        )

    def apply_migration(
        self,
        project_id: str,
        forward_sql: str,
        schema_version: Optional[str] = None,
        transactional: Optional[bool] = None,
    ) -> DeploymentResult:
        """Apply forward SQL to the project's database with backup and one-shot rollback."""
        if not project_id:
            return self._rejected(ValidationError("project_id is required"))
        return self._locked(project_id, self._apply_locked, project_id, forward_sql, schema_version, transactional)

    def deploy_version(self, project_id: str, version: str) -> DeploymentResult:
        """
        Move the project's database from its currently deployed version to ``version``.
        Raises NotFoundError for an unknown version; deployment failures come back in the result.
        """
        return self._locked(project_id, self._deploy_version_locked, project_id, version)

    def rollback_version(self, project_id: str, target_version: str) -> DeploymentResult:
        """Deploy an earlier version through the normal deployment path."""
        return self._locked(project_id, self._rollback_version_locked, project_id, target_version)

    def restore_backup(self, deployment_id: str) -> DeploymentResult:
        """
        Manual recovery: bring the project back to the structure captured before ``deployment_id``.

        Meant for deployments left in ``rollback_failed``, but any finished
        deployment with a backup can be restored. The restore SQL (live
        schema diffed against the backup) runs as a new deployment with its
        own backup and one-shot rollback. Raises NotFoundError for an unknown
        deployment or one without a backup, ValidationError while it is in progress.
        """
        source = self.get_deployment_status(deployment_id)
        if not source.status.is_final:
            raise ValidationError(
                f"Deployment {deployment_id} is still {source.status.value}; only finished deployments can be restored"
            )
        if source.backup_id:
            backup = self._backups.get_backup(source.backup_id)
        else:
            backup = self._backups.get_for_deployment(source.id)
        return self._locked(source.project_id, self._restore_locked, source, backup)

    def get_deployment_status(self, deployment_id: str) -> DeploymentRecord:
        record = self._deployments.get(deployment_id)
        if record is None:
            raise NotFoundError(f"Deployment {deployment_id} not found")
        return record

    def get_deployment_history(self, project_id: str, limit: int = 10) -> List[DeploymentRecord]:
        """Newest first."""
        return self._deployments.list_for_project(project_id, limit=limit)

    def get_current_version(self, project_id: str) -> Optional[str]:
        return self._deployments.get_current_version(project_id)

    def _locked(self, project_id: str, action: Callable[..., DeploymentResult], *args: Any) -> DeploymentResult:
        """Run ``action`` holding the project lock; a lock that cannot be taken is a rejected deployment."""
        with ExitStack() as stack:
            try:
                stack.enter_context(self._locks.hold(project_id))
            except SchemaFlowError as e:
                return self._rejected(e)
            return action(*args)

    def _rollback_version_locked(self, project_id: str, target_version: str) -> DeploymentResult:
        current = self._deployments.get_current_version(project_id)
        if current is None:
            raise NotFoundError(f"Project {project_id} has no deployed version to roll back from")
        if current == target_version:
            raise ValidationError(f"Project {project_id} is already at version {target_version}")
        logger.info(f"[DeploymentOrchestrator] Rolling {project_id} back from {current} to {target_version}")
        return self._deploy_version_locked(project_id, target_version)

    def _restore_locked(self, source: DeploymentRecord, backup: Backup) -> DeploymentResult:
        project_id = source.project_id
        try:
            live = self._target_factory(project_id).introspect_schema()
        except SchemaFlowError as e:
            return self._rejected(e)

        plan = self._versions.build_plan(live, backup.schema_snapshot)
        logger.info(f"[DeploymentOrchestrator] Restoring {project_id} from backup {backup.id} "
                    f"of deployment {source.id}: {len(plan.changes)} changes")
        if plan.changes:
            result = self._apply_locked(project_id, plan.forward_sql, None, None)
        else:
            result = self._record_unchanged(project_id, None)

        # The restored deployment no longer counts as the deployed version
        if result.success and source.status == DeploymentStatus.COMPLETED and not source.rolled_back:
            source.rolled_back = True
            self._deployments.update(source)
        result.details.update({"restored_from": source.id, "backup_id": backup.id})
        return result

    def _deploy_version_locked(self, project_id: str, version: str) -> DeploymentResult:
        target_version = self._versions.get_version(project_id, version)
        current = self._deployments.get_current_version(project_id)
        base = self._versions.get_version(project_id, current).snapshot if current else SchemaSnapshot()

        plan = self._versions.build_plan(base, target_version.snapshot)
        if not plan.changes:
            return self._record_unchanged(project_id, version)
        for warning in plan.warnings:
            logger.warning(f"[DeploymentOrchestrator] {warning}")
        return self._apply_locked(project_id, plan.forward_sql, version, None)

    def _apply_locked(
        self,
        project_id: str,
        forward_sql: str,
        schema_version: Optional[str],
        transactional: Optional[bool],
    ) -> DeploymentResult:
        if transactional is None:
            transactional = self._transactional

        record = DeploymentRecord(
            id=str(uuid.uuid4()),
            project_id=project_id,
            forward_sql=forward_sql or "",
            schema_version=schema_version,
            started_at=datetime.now(timezone.utc),
        )
        try:
            self._deployments.create(record)
        except SchemaFlowError as e:
            return self._rejected(e)
        logger.info(f"[DeploymentOrchestrator] Deployment {record.id} for {project_id} is pending")

        # Nothing has been sent to the database until the record is running
        try:
            target = self._target_factory(project_id)
            statements = self._executor.preflight(target, forward_sql)
            backup = self._backups.capture(record, target)
            record.backup_id = backup.id
        except SchemaFlowError as e:
            self._mark_failed(record, e)
            return DeploymentResult.from_record(record)

        record.transition(DeploymentStatus.RUNNING)
        self._deployments.update(record)
        logger.info(f"[DeploymentOrchestrator] Deployment {record.id} running {len(statements)} statements")

        try:
            executed = self._executor.execute(target, statements, transactional=transactional)
        except SchemaFlowError as e:
            executed = getattr(e, "statements_executed", 0)
            self._mark_failed(record, e)
            record = self._rollback.rollback(record, target)
            return DeploymentResult.from_record(record, statements_executed=executed)

        record.transition(DeploymentStatus.COMPLETED)
        record.completed_at = datetime.now(timezone.utc)
        self._deployments.update(record)
        logger.info(f"[DeploymentOrchestrator] Deployment {record.id} completed")
        return DeploymentResult.from_record(record, statements_executed=executed)

    def _mark_failed(self, record: DeploymentRecord, error: SchemaFlowError) -> None:
        record.transition(DeploymentStatus.FAILED)
        record.error_kind = error.kind
        record.error_message = error.message
        record.failed_at = datetime.now(timezone.utc)
        self._deployments.update(record)
        logger.warning(f"[DeploymentOrchestrator] Deployment {record.id} failed ({error.kind}): {error.message}")

    def _record_unchanged(self, project_id: str, version: Optional[str]) -> DeploymentResult:
        """The live structure already matches the target: record it without touching the database."""
        now = datetime.now(timezone.utc)
        record = DeploymentRecord(
            id=str(uuid.uuid4()),
            project_id=project_id,
            forward_sql="",
            schema_version=version,
            started_at=now,
        )
        self._deployments.create(record)
        record.transition(DeploymentStatus.RUNNING)
        record.transition(DeploymentStatus.COMPLETED)
        record.completed_at = now
        self._deployments.update(record)
        logger.info(f"[DeploymentOrchestrator] {project_id}@{version or 'restore'}: no structural changes to deploy")
        return DeploymentResult.from_record(record)

    def _rejected(self, error: SchemaFlowError) -> DeploymentResult:
        logger.warning(f"[DeploymentOrchestrator] Deployment rejected ({error.kind}): {error.message}")
        return DeploymentResult(
            success=False,
            deployment_id=None,
            status=DeploymentStatus.FAILED,
            error_kind=error.kind,
            error_message=error.message,
        )
