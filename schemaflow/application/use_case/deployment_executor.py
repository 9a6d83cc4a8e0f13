"""Use case for executing forward SQL against a target database."""
import logging
from typing import List

from schemaflow.domain.exceptions import ExecutionError, SchemaFlowError
from schemaflow.domain.repositories.interfaces import ITargetDatabase
from schemaflow.infrastructure.validators.deployment_verifier import DeploymentVerifier
from schemaflow.infrastructure.validators.sql_validator import SQLValidator

logger = logging.getLogger(__name__)


class DeploymentExecutor:
    """
    Use case: run validated DDL and verify its effect.
    Single Responsibility: statement execution.
    """

    def __init__(
        self,
        sql_validator: SQLValidator,
        verifier: DeploymentVerifier,
        statement_timeout_seconds: float = 30.0,
    ):
        self._validator = sql_validator
        self._verifier = verifier
        self._timeout = statement_timeout_seconds

    def preflight(self, target: ITargetDatabase, forward_sql: str) -> List[str]:
        """
        Checks that run before any DDL is sent.
        Raises ValidationError or ConnectivityError; returns the statements to run.
        """
        statements = self._validator.ensure_safe(forward_sql)
        target.ping_connectivity()
        return statements

    def execute(self, target: ITargetDatabase, statements: List[str], transactional: bool = True) -> int:
        """
        Execute statements in order, then verify the live schema.
        Returns the number of statements executed. On failure the raised
        error carries ``statements_executed``; with ``transactional`` the
        open transaction is rolled back first.
        """
        executed = 0
        if transactional:
            target.execute_statement("BEGIN")

        try:
            for i, statement in enumerate(statements):
                logger.debug(f"[DeploymentExecutor] Statement {i + 1}/{len(statements)}: {statement[:80]}")
                target.execute_statement(statement, timeout_seconds=self._timeout)
                executed += 1
            self._verifier.verify(target, statements)
            if transactional:
                target.execute_statement("COMMIT")
        except SchemaFlowError as e:
            logger.error(f"[DeploymentExecutor] Failed after {executed}/{len(statements)} statements: {e.message}")
            if transactional:
                self._abort(target)
            if isinstance(e, ExecutionError):
                e.statements_executed = executed
            raise

        logger.info(f"[DeploymentExecutor] {executed} statements executed and verified")
        return executed

    def _abort(self, target: ITargetDatabase) -> None:
        try:
            target.execute_statement("ROLLBACK")
            logger.warning("[DeploymentExecutor] Transaction rolled back")
        except SchemaFlowError as e:
            # Live state is re-read by the rollback coordinator either way
            logger.error(f"[DeploymentExecutor] ROLLBACK failed: {e.message}")
