from typing import Any, List, Tuple
import logging

from schemaflow.domain.entities.evolution import (
    ChangeKind,
    ChangeOperation,
    GeneratedMigration,
    SchemaChange,
)
from schemaflow.domain.entities.schema import Column, Index, Policy, Table
from schemaflow.domain.exceptions import ValidationError

logger = logging.getLogger(__name__)

# (statements, deferred foreign key statements)
Statements = Tuple[List[str], List[str]]


class MigrationBuilder:
    """
    Generates forward and reverse DDL from a changeset.
    Single Responsibility: SQL generation only.

    Foreign keys are emitted as named constraints after every other
    statement so table creation order never matters. Table drops come
    after the remaining statements, referencing tables first.
    """

    def __init__(self):
        self._forward_generators = {
            (ChangeKind.TABLE, ChangeOperation.CREATE): self._gen_table,
            (ChangeKind.TABLE, ChangeOperation.DELETE): self._gen_table,
            (ChangeKind.COLUMN, ChangeOperation.CREATE): self._gen_add_column,
            (ChangeKind.COLUMN, ChangeOperation.DELETE): self._gen_drop_column,
            (ChangeKind.COLUMN, ChangeOperation.MODIFY): self._gen_modify_column,
            (ChangeKind.INDEX, ChangeOperation.CREATE): self._gen_create_index,
            (ChangeKind.INDEX, ChangeOperation.DELETE): self._gen_drop_index,
            (ChangeKind.INDEX, ChangeOperation.MODIFY): self._gen_modify_index,
            (ChangeKind.POLICY, ChangeOperation.CREATE): self._gen_create_policy,
            (ChangeKind.POLICY, ChangeOperation.DELETE): self._gen_drop_policy,
            (ChangeKind.POLICY, ChangeOperation.MODIFY): self._gen_modify_policy,
        }

    def generate(self, changes: List[SchemaChange]) -> GeneratedMigration:
        """
        Build forward and reverse SQL.
        Raises ValidationError if an entry lacks the details needed for
        either direction; nothing is returned in that case.
        """
        forward = self._build(changes, reverse=False)
        # Reverse undoes entries last-to-first
        reverse = self._build(list(reversed(changes)), reverse=True)

        warnings = [w for w in (self._data_loss_warning(c) for c in changes) if w]

        logger.info(f"[MigrationBuilder] {len(changes)} changes -> "
                    f"{len(forward)} forward / {len(reverse)} reverse statements")

        return GeneratedMigration(
            forward_statements=forward,
            reverse_statements=reverse,
            data_loss_warnings=warnings,
        )

    def _build(self, changes: List[SchemaChange], reverse: bool) -> List[str]:
        drop_operation = ChangeOperation.CREATE if reverse else ChangeOperation.DELETE
        statements, deferred, dropped = [], [], []
        for change in changes:
            if change.kind == ChangeKind.TABLE and change.operation == drop_operation:
                dropped.append(self._table_definition(change))
                continue
            generated, later = self._generate(change, reverse)
            statements.extend(generated)
            deferred.extend(later)

        drops = [self._drop_table_sql(t.name) for t in self._drop_order(dropped)]
        return statements + drops + deferred

    def _drop_order(self, tables: List[Table]) -> List[Table]:
        """Tables referencing another dropped table are dropped before it."""
        remaining = list(tables)
        ordered = []
        while remaining:
            names = {t.name for t in remaining}
            referenced = {
                c.references.table
                for t in remaining for c in t.columns
                if c.references and c.references.table in names and c.references.table != t.name
            }
            # A reference cycle falls back to changeset order
            nxt = next((t for t in remaining if t.name not in referenced), remaining[0])
            ordered.append(nxt)
            remaining.remove(nxt)
        return ordered

    def _generate(self, change: SchemaChange, reverse: bool) -> Statements:
        generator = self._forward_generators.get((change.kind, change.operation))
        if generator is None:
            raise ValidationError(
                f"Unsupported change {change.kind.value}/{change.operation.value} on '{change.target}'"
            )
        return generator(change, reverse)

    def _data_loss_warning(self, change: SchemaChange):
        if change.loses_data:
            return (f"Dropping {change.kind.value} '{change.target}' destroys its data; "
                    f"the reverse migration restores structure only")
        if (change.kind == ChangeKind.COLUMN and change.operation == ChangeOperation.MODIFY
                and change.breaking and "type" in change.details.get("changed", [])):
            return (f"Type change on '{change.target}' may truncate or reject existing values; "
                    f"the reverse migration restores the old type only")
        return None

    # ------------------------------------------------------------------ details

    def _require(self, change: SchemaChange, key: str) -> Any:
        value = change.details.get(key)
        if not value:
            raise ValidationError(
                f"Change {change.kind.value}/{change.operation.value} on '{change.target}' "
                f"is missing '{key}' needed to build its statements"
            )
        return value

    def _table_definition(self, change: SchemaChange) -> Table:
        return Table.from_dict(self._require(change, "definition"))

    def _column_definition(self, change: SchemaChange, key: str = "column") -> Column:
        data = self._require(change, key)
        if not isinstance(data, dict):
            raise ValidationError(f"Change on '{change.target}' carries no column definition under '{key}'")
        return Column.from_dict(data)

    # ------------------------------------------------------------------ tables

    def _gen_table(self, change: SchemaChange, reverse: bool) -> Statements:
        """CREATE direction only; table drops are collected by _build."""
        return self._create_table_sql(self._table_definition(change))

    def _create_table_sql(self, table: Table) -> Statements:
        pk_columns = [c.name for c in table.columns if c.primary_key]
        inline_pk = len(pk_columns) == 1

        column_defs = [self._column_def(c, inline_pk=inline_pk) for c in table.columns]
        if len(pk_columns) > 1:
            column_defs.append(f"PRIMARY KEY ({', '.join(pk_columns)})")

        statements = [f"CREATE TABLE {table.name} ({', '.join(column_defs)});"]
        if table.policies:
            statements.append(f"ALTER TABLE {table.name} ENABLE ROW LEVEL SECURITY;")
        statements.extend(self._create_index_sql(table.name, idx) for idx in table.indexes)
        statements.extend(self._create_policy_sql(table.name, pol) for pol in table.policies)

        deferred = [self._add_foreign_key_sql(table.name, c) for c in table.columns if c.references]
        return statements, deferred

    def _drop_table_sql(self, table_name: str) -> str:
        return f"DROP TABLE IF EXISTS {table_name};"

    # ------------------------------------------------------------------ columns

    def _column_def(self, column: Column, inline_pk: bool = True) -> str:
        parts = [column.name, column.type_sql]
        if column.primary_key and inline_pk:
            parts.append("PRIMARY KEY")
        elif not column.nullable:
            parts.append("NOT NULL")
        if column.unique and not column.primary_key:
            parts.append("UNIQUE")
        if column.default_value:
            parts.append(f"DEFAULT {column.default_value}")
        return " ".join(parts)

    def _gen_add_column(self, change: SchemaChange, reverse: bool) -> Statements:
        table = self._require(change, "table")
        column = self._column_definition(change)
        if reverse:
            return [self._drop_column_sql(table, column.name)], []
        return self._add_column_sql(table, column)

    def _gen_drop_column(self, change: SchemaChange, reverse: bool) -> Statements:
        table = self._require(change, "table")
        column = self._column_definition(change)
        if reverse:
            return self._add_column_sql(table, column)
        return [self._drop_column_sql(table, column.name)], []

    def _add_column_sql(self, table: str, column: Column) -> Statements:
        deferred = [self._add_foreign_key_sql(table, column)] if column.references else []
        return [f"ALTER TABLE {table} ADD COLUMN {self._column_def(column)};"], deferred

    def _drop_column_sql(self, table: str, column_name: str) -> str:
        return f"ALTER TABLE {table} DROP COLUMN {column_name};"

    def _gen_modify_column(self, change: SchemaChange, reverse: bool) -> Statements:
        table = self._require(change, "table")
        old = self._column_definition(change, "old")
        new = self._column_definition(change, "new")
        if reverse:
            old, new = new, old

        statements, deferred = [], []
        alter = f"ALTER TABLE {table} ALTER COLUMN {new.name}"

        if old.type_name != new.type_name:
            statements.append(f"{alter} TYPE {new.type_sql};")
        if old.nullable != new.nullable:
            statements.append(f"{alter} DROP NOT NULL;" if new.nullable else f"{alter} SET NOT NULL;")
        if old.default_value != new.default_value:
            if new.default_value:
                statements.append(f"{alter} SET DEFAULT {new.default_value};")
            else:
                statements.append(f"{alter} DROP DEFAULT;")
        if old.unique != new.unique:
            constraint = f"{_bare_name(table)}_{new.name}_key"
            if new.unique:
                statements.append(f"ALTER TABLE {table} ADD CONSTRAINT {constraint} UNIQUE ({new.name});")
            else:
                statements.append(f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {constraint};")
        if old.references != new.references:
            if old.references:
                statements.append(
                    f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {_foreign_key_name(table, new.name)};"
                )
            if new.references:
                deferred.append(self._add_foreign_key_sql(table, new))

        return statements, deferred

    def _add_foreign_key_sql(self, table: str, column: Column) -> str:
        ref = column.references
        sql = (f"ALTER TABLE {table} ADD CONSTRAINT {_foreign_key_name(table, column.name)} "
               f"FOREIGN KEY ({column.name}) REFERENCES {ref.table}({ref.column})")
        if ref.on_delete:
            sql += f" ON DELETE {ref.on_delete}"
        return sql + ";"

    # ------------------------------------------------------------------ indexes

    def _gen_create_index(self, change: SchemaChange, reverse: bool) -> Statements:
        table = self._require(change, "table")
        index = Index.from_dict(self._require(change, "index"))
        if reverse:
            return [self._drop_index_sql(index)], []
        return [self._create_index_sql(table, index)], []

    def _gen_drop_index(self, change: SchemaChange, reverse: bool) -> Statements:
        table = self._require(change, "table")
        index = Index.from_dict(self._require(change, "index"))
        if reverse:
            return [self._create_index_sql(table, index)], []
        return [self._drop_index_sql(index)], []

    def _gen_modify_index(self, change: SchemaChange, reverse: bool) -> Statements:
        table = self._require(change, "table")
        old = Index.from_dict(self._require(change, "old"))
        new = Index.from_dict(self._require(change, "new"))
        if reverse:
            old, new = new, old
        return [self._drop_index_sql(old), self._create_index_sql(table, new)], []

    def _create_index_sql(self, table: str, index: Index) -> str:
        unique = "UNIQUE " if index.unique else ""
        return f"CREATE {unique}INDEX {index.name} ON {table} ({', '.join(index.columns)});"

    def _drop_index_sql(self, index: Index) -> str:
        return f"DROP INDEX IF EXISTS {index.name};"

    # ------------------------------------------------------------------ policies

    def _gen_create_policy(self, change: SchemaChange, reverse: bool) -> Statements:
        table = self._require(change, "table")
        policy = Policy.from_dict(self._require(change, "policy"))
        if reverse:
            return [self._drop_policy_sql(table, policy)], []
        return [self._create_policy_sql(table, policy)], []

    def _gen_drop_policy(self, change: SchemaChange, reverse: bool) -> Statements:
        table = self._require(change, "table")
        policy = Policy.from_dict(self._require(change, "policy"))
        if reverse:
            return [self._create_policy_sql(table, policy)], []
        return [self._drop_policy_sql(table, policy)], []

    def _gen_modify_policy(self, change: SchemaChange, reverse: bool) -> Statements:
        table = self._require(change, "table")
        old = Policy.from_dict(self._require(change, "old"))
        new = Policy.from_dict(self._require(change, "new"))
        if reverse:
            old, new = new, old
        return [self._drop_policy_sql(table, old), self._create_policy_sql(table, new)], []

    def _create_policy_sql(self, table: str, policy: Policy) -> str:
        sql = f'CREATE POLICY "{policy.name}" ON {table} FOR {policy.operation} TO {policy.role}'
        if policy.using:
            sql += f" USING ({policy.using})"
        if policy.with_check:
            sql += f" WITH CHECK ({policy.with_check})"
        return sql + ";"

    def _drop_policy_sql(self, table: str, policy: Policy) -> str:
        return f'DROP POLICY IF EXISTS "{policy.name}" ON {table};'


def _bare_name(table: str) -> str:
    return table.rsplit(".", 1)[-1]


def _foreign_key_name(table: str, column: str) -> str:
    return f"fk_{_bare_name(table)}_{column}"
