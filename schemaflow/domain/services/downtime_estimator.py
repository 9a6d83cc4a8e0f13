import math
from typing import Iterable

from schemaflow.domain.entities.evolution import ChangeKind, ChangeOperation, SchemaChange


class DowntimeEstimator:
    """
    Advisory downtime heuristic for operators.
    Fixed cost per change kind; never used for scheduling or safety decisions.
    """

    TABLE_CREATE_SECONDS = 1.0
    TABLE_DELETE_SECONDS = 2.0
    TABLE_MODIFY_SECONDS = 0.0
    COLUMN_SECONDS = 0.5
    INDEX_SECONDS = 5.0
    POLICY_SECONDS = 0.0

    def estimate(self, changes: Iterable[SchemaChange]) -> int:
        """Sum of per-change costs, rounded up to whole seconds."""
        seconds = 0.0
        for change in changes:
            seconds += self._cost(change)
        return int(math.ceil(seconds))

    def _cost(self, change: SchemaChange) -> float:
        if change.kind == ChangeKind.TABLE:
            if change.operation == ChangeOperation.CREATE:
                return self.TABLE_CREATE_SECONDS
            if change.operation == ChangeOperation.DELETE:
                return self.TABLE_DELETE_SECONDS
            return self.TABLE_MODIFY_SECONDS
        if change.kind == ChangeKind.COLUMN:
            return self.COLUMN_SECONDS
        if change.kind == ChangeKind.INDEX:
            return self.INDEX_SECONDS
        return self.POLICY_SECONDS
