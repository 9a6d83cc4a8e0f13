from typing import Dict, List, Union
import logging

from schemaflow.domain.entities.evolution import ChangeKind, ChangeOperation, SchemaChange
from schemaflow.domain.entities.schema import Column, ColumnType, SchemaSnapshot, Table

logger = logging.getLogger(__name__)

# Directional: only old -> new listed here is non-breaking.
COMPATIBLE_TYPE_CHANGES = {
    "varchar": ("text",),
    "int": ("bigint",),
    "float": ("double",),
    "date": ("timestamp", "timestamptz"),
}


def _base_type(value: Union[str, ColumnType, Column]) -> str:
    if isinstance(value, Column):
        return value.data_type.value
    if isinstance(value, ColumnType):
        return value.value
    return value.lower().split("(")[0].strip()


def is_compatible_type_change(old_type, new_type) -> bool:
    """True when changing ``old_type`` into ``new_type`` cannot break clients."""
    return _base_type(new_type) in COMPATIBLE_TYPE_CHANGES.get(_base_type(old_type), ())


class DiffEngine:
    """
    Computes an ordered, classified changeset between two snapshots.
    Single Responsibility: Only handles diff computation. Pure, no I/O.
    """

    def diff(self, old: SchemaSnapshot, new: SchemaSnapshot) -> List[SchemaChange]:
        """
        Compute differences between two snapshots.
        Changes are sorted by table name, then delete/create/modify, so
        identical inputs always give an identical changeset.
        """
        changes = []

        old_tables = {table.name: table for table in old.tables}
        new_tables = {table.name: table for table in new.tables}

        for name, table in old_tables.items():
            if name not in new_tables:
                changes.append(SchemaChange(
                    kind=ChangeKind.TABLE,
                    operation=ChangeOperation.DELETE,
                    target=name,
                    details={"definition": table.to_dict()},
                    breaking=True,
                ))

        for name, table in new_tables.items():
            if name not in old_tables:
                changes.append(SchemaChange(
                    kind=ChangeKind.TABLE,
                    operation=ChangeOperation.CREATE,
                    target=name,
                    details={"definition": table.to_dict()},
                    breaking=False,
                ))

        for name in old_tables.keys() & new_tables.keys():
            old_table, new_table = old_tables[name], new_tables[name]
            changes.extend(self._compare_columns(old_table, new_table))
            changes.extend(self._compare_indexes(old_table, new_table))
            changes.extend(self._compare_policies(old_table, new_table))

        changes.sort(key=lambda c: c.sort_key())

        breaking = sum(1 for c in changes if c.breaking)
        logger.info(f"[DiffEngine] {len(changes)} changes ({breaking} breaking) "
                    f"between '{old.version or 'live'}' and '{new.version or 'live'}'")
        return changes

    def _compare_columns(self, old_table: Table, new_table: Table) -> List[SchemaChange]:
        """Compare columns of a table present in both snapshots."""
        changes = []
        table = new_table.name

        for old_col in old_table.columns:
            if new_table.column(old_col.name) is None:
                # Removing a column clients may rely on as required is breaking
                changes.append(SchemaChange(
                    kind=ChangeKind.COLUMN,
                    operation=ChangeOperation.DELETE,
                    target=f"{table}.{old_col.name}",
                    details={"table": table, "column": old_col.to_dict()},
                    breaking=not old_col.nullable,
                ))

        for new_col in new_table.columns:
            old_col = old_table.column(new_col.name)
            if old_col is None:
                # A required column without default breaks existing insert paths
                changes.append(SchemaChange(
                    kind=ChangeKind.COLUMN,
                    operation=ChangeOperation.CREATE,
                    target=f"{table}.{new_col.name}",
                    details={"table": table, "column": new_col.to_dict()},
                    breaking=not new_col.nullable and not new_col.default_value,
                ))
                continue

            modified = self._modified_attributes(old_col, new_col)
            if modified:
                changes.append(SchemaChange(
                    kind=ChangeKind.COLUMN,
                    operation=ChangeOperation.MODIFY,
                    target=f"{table}.{new_col.name}",
                    details={
                        "table": table,
                        "column": new_col.name,
                        "old": old_col.to_dict(),
                        "new": new_col.to_dict(),
                        "changed": modified,
                    },
                    breaking=self._is_breaking_modification(old_col, new_col, modified),
                ))

        return changes

    def _modified_attributes(self, old_col: Column, new_col: Column) -> List[str]:
        modified = []
        if old_col.type_name != new_col.type_name:
            modified.append("type")
        if old_col.nullable != new_col.nullable:
            modified.append("nullable")
        if old_col.default_value != new_col.default_value:
            modified.append("default")
        if old_col.unique != new_col.unique:
            modified.append("unique")
        if old_col.references != new_col.references:
            modified.append("references")
        if old_col.primary_key != new_col.primary_key:
            logger.warning(f"[DiffEngine] Primary key change on '{new_col.name}' is not migrated")
        return modified

    def _is_breaking_modification(self, old_col: Column, new_col: Column, modified: List[str]) -> bool:
        if "type" in modified and not is_compatible_type_change(old_col, new_col):
            return True
        if "nullable" in modified and not new_col.nullable:
            return True
        if "unique" in modified and new_col.unique:
            return True
        if "references" in modified and new_col.references is not None:
            return True
        return False

    def _compare_indexes(self, old_table: Table, new_table: Table) -> List[SchemaChange]:
        changes = []
        table = new_table.name

        for old_idx in old_table.indexes:
            if new_table.index(old_idx.name) is None:
                changes.append(SchemaChange(
                    kind=ChangeKind.INDEX,
                    operation=ChangeOperation.DELETE,
                    target=f"{table}.{old_idx.name}",
                    details={"table": table, "index": old_idx.to_dict()},
                    breaking=False,
                ))

        for new_idx in new_table.indexes:
            old_idx = old_table.index(new_idx.name)
            if old_idx is None:
                # A unique index can fail against rows already in the table
                changes.append(SchemaChange(
                    kind=ChangeKind.INDEX,
                    operation=ChangeOperation.CREATE,
                    target=f"{table}.{new_idx.name}",
                    details={"table": table, "index": new_idx.to_dict()},
                    breaking=new_idx.unique,
                ))
            elif old_idx != new_idx:
                changes.append(SchemaChange(
                    kind=ChangeKind.INDEX,
                    operation=ChangeOperation.MODIFY,
                    target=f"{table}.{new_idx.name}",
                    details={"table": table, "old": old_idx.to_dict(), "new": new_idx.to_dict()},
                    breaking=new_idx.unique,
                ))

        return changes

    def _compare_policies(self, old_table: Table, new_table: Table) -> List[SchemaChange]:
        changes = []
        table = new_table.name

        for old_pol in old_table.policies:
            if new_table.policy(old_pol.name) is None:
                changes.append(SchemaChange(
                    kind=ChangeKind.POLICY,
                    operation=ChangeOperation.DELETE,
                    target=f"{table}.{old_pol.name}",
                    details={"table": table, "policy": old_pol.to_dict()},
                    breaking=True,
                ))

        for new_pol in new_table.policies:
            old_pol = old_table.policy(new_pol.name)
            if old_pol is None:
                changes.append(SchemaChange(
                    kind=ChangeKind.POLICY,
                    operation=ChangeOperation.CREATE,
                    target=f"{table}.{new_pol.name}",
                    details={"table": table, "policy": new_pol.to_dict()},
                    breaking=False,
                ))
            elif old_pol != new_pol:
                changes.append(SchemaChange(
                    kind=ChangeKind.POLICY,
                    operation=ChangeOperation.MODIFY,
                    target=f"{table}.{new_pol.name}",
                    details={"table": table, "old": old_pol.to_dict(), "new": new_pol.to_dict()},
                    breaking=True,
                ))

        return changes
