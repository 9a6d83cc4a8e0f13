"""Error taxonomy shared by every layer."""


class SchemaFlowError(Exception):
    """Base class. ``kind`` is the stable name reported in results."""

    kind = "SchemaFlowError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(SchemaFlowError):
    """Malformed or unsafe SQL, malformed schema input, incomplete change details."""

    kind = "ValidationError"


class NotFoundError(SchemaFlowError):
    """Missing project, version, deployment or backup."""

    kind = "NotFoundError"


class ConnectivityError(SchemaFlowError):
    """Target database unreachable."""

    kind = "ConnectivityError"


class ExecutionError(SchemaFlowError):
    """DDL failed mid-run."""

    kind = "ExecutionError"

    def __init__(self, message: str = "", statement: str = None, statements_executed: int = 0):
        super().__init__(message)
        self.statement = statement
        self.statements_executed = statements_executed


class ExecutionTimeoutError(ExecutionError):
    """Statement exceeded its time budget. The remote operation may still be running."""

    kind = "ExecutionTimeoutError"


class VerificationError(SchemaFlowError):
    """Post-execution check contradicts the reported execution result."""

    kind = "VerificationError"

    def __init__(self, message: str = "", mismatches=None):
        super().__init__(message)
        self.mismatches = list(mismatches or [])


class RollbackFailure(SchemaFlowError):
    """Terminal: the restore could not be applied, manual intervention required."""

    kind = "RollbackFailure"


class InvalidTransitionError(SchemaFlowError):
    """Deployment status change not allowed by the state machine."""

    kind = "InvalidTransitionError"
