"""In-memory target database applying the DDL vocabulary structurally."""

import copy
import re
import threading
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Dict, List, Optional

from schemaflow.domain.entities.schema import (
    Column,
    ColumnReference,
    ColumnType,
    Index,
    Policy,
    SchemaSnapshot,
    Table,
)
from schemaflow.domain.exceptions import ConnectivityError, ExecutionError, ExecutionTimeoutError
from schemaflow.domain.repositories.interfaces import ITargetDatabase

_KEYWORDS = re.compile(r"\s+(PRIMARY KEY|NOT NULL|UNIQUE|DEFAULT)\b", re.I)

_CREATE_TABLE = re.compile(r"^CREATE TABLE ([\w.]+) \((.*)\);$", re.I | re.S)
_DROP_TABLE = re.compile(r"^DROP TABLE IF EXISTS ([\w.]+);$", re.I)
_ENABLE_RLS = re.compile(r"^ALTER TABLE ([\w.]+) ENABLE ROW LEVEL SECURITY;$", re.I)
_ADD_COLUMN = re.compile(r"^ALTER TABLE ([\w.]+) ADD COLUMN (.*);$", re.I)
_DROP_COLUMN = re.compile(r"^ALTER TABLE ([\w.]+) DROP COLUMN (\w+);$", re.I)
_ALTER_COLUMN = re.compile(r"^ALTER TABLE ([\w.]+) ALTER COLUMN (\w+) (.*);$", re.I)
_ADD_UNIQUE = re.compile(r"^ALTER TABLE ([\w.]+) ADD CONSTRAINT (\w+) UNIQUE \((\w+)\);$", re.I)
_ADD_FK = re.compile(
    r"^ALTER TABLE ([\w.]+) ADD CONSTRAINT (\w+) FOREIGN KEY \((\w+)\) "
    r"REFERENCES ([\w.]+)\((\w+)\)(?: ON DELETE ([A-Z ]+))?;$",
    re.I,
)
_DROP_CONSTRAINT = re.compile(r"^ALTER TABLE ([\w.]+) DROP CONSTRAINT IF EXISTS (\w+);$", re.I)
_CREATE_INDEX = re.compile(r"^CREATE (UNIQUE )?INDEX (\w+) ON ([\w.]+) \((.*)\);$", re.I)
_DROP_INDEX = re.compile(r"^DROP INDEX IF EXISTS (\w+);$", re.I)
_CREATE_POLICY = re.compile(
    r'^CREATE POLICY "([^"]+)" ON ([\w.]+) FOR (\w+) TO (\w+)'
    r"(?: USING \((.*?)\))?(?: WITH CHECK \((.*)\))?;$",
    re.I | re.S,
)
_DROP_POLICY = re.compile(r'^DROP POLICY IF EXISTS "([^"]+)" ON ([\w.]+);$', re.I)


def _split_top_level(text: str) -> List[str]:
    parts, depth, current = [], 0, []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    if current:
        parts.append("".join(current).strip())
    return [p for p in parts if p]


def _parse_column(definition: str) -> Column:
    name, _, rest = definition.strip().partition(" ")
    match = _KEYWORDS.search(" " + rest)
    type_part = rest if not match else (" " + rest)[:match.start()].strip()
    modifiers = "" if not match else (" " + rest)[match.start():]

    data_type, params = ColumnType.parse(type_part)
    default = None
    default_match = re.search(r"\bDEFAULT\s+(.*)$", modifiers, re.I | re.S)
    if default_match:
        default = default_match.group(1).strip()
        modifiers = modifiers[:default_match.start()]

    primary_key = bool(re.search(r"\bPRIMARY KEY\b", modifiers, re.I))
    return Column(
        name=name,
        data_type=data_type,
        type_params=params,
        nullable=not (primary_key or re.search(r"\bNOT NULL\b", modifiers, re.I)),
        unique=bool(re.search(r"\bUNIQUE\b", modifiers, re.I)),
        primary_key=primary_key,
        default_value=default,
    )


class FakeTargetDatabase(ITargetDatabase):
    """
    Mock target database for testing.

    ``fail_on`` patterns raise ExecutionError, ``timeout_on`` patterns raise
    ExecutionTimeoutError (after applying the statement when
    ``timeout_lands`` is set), ``ignore_on`` patterns report success without
    applying anything.
    """

    def __init__(self, snapshot: Optional[SchemaSnapshot] = None, delay: float = 0.0):
        self.tables: Dict[str, Dict] = OrderedDict()
        self.executed: List[str] = []
        self.reachable = True
        self.fail_on: List[str] = []
        self.timeout_on: List[str] = []
        self.timeout_lands = False
        self.ignore_on: List[str] = []
        self.delay = delay
        self.max_open_transactions = 0
        self._open_transactions = 0
        self._saved = None
        self._aborted = False
        self._guard = threading.Lock()
        if snapshot is not None:
            self.load(snapshot)

    def load(self, snapshot: SchemaSnapshot):
        self.tables = OrderedDict()
        for table in snapshot.tables:
            self.tables[table.name] = {
                "columns": OrderedDict((c.name, c) for c in table.columns),
                "indexes": OrderedDict((i.name, i) for i in table.indexes),
                "policies": OrderedDict((p.name, p) for p in table.policies),
            }

    # ------------------------------------------------------------ protocol

    def ping_connectivity(self) -> None:
        if not self.reachable:
            raise ConnectivityError("fake database is unreachable")

    def introspect_schema(self) -> SchemaSnapshot:
        if not self.reachable:
            raise ConnectivityError("fake database is unreachable")
        return SchemaSnapshot(tables=tuple(
            Table(
                name=name,
                columns=tuple(data["columns"].values()),
                indexes=tuple(data["indexes"].values()),
                policies=tuple(data["policies"].values()),
            )
            for name, data in self.tables.items()
        ))

    def execute_statement(self, sql: str, timeout_seconds: Optional[float] = None) -> None:
        if not self.reachable:
            raise ConnectivityError("fake database is unreachable")
        statement = " ".join(sql.strip().split()) if not sql.strip().upper().startswith("CREATE POLICY") else sql.strip()
        upper = statement.upper().rstrip(";")

        if upper == "BEGIN":
            self._begin()
            return
        if upper == "COMMIT":
            self._end(commit=True)
            return
        if upper == "ROLLBACK":
            self._end(commit=False)
            return

        if self._aborted:
            raise ExecutionError("current transaction is aborted", statement=sql)
        if self.delay:
            time.sleep(self.delay)

        self.executed.append(statement)
        try:
            if any(re.search(p, statement, re.I) for p in self.fail_on):
                raise ExecutionError(f"injected failure: {statement}", statement=sql)
            if any(re.search(p, statement, re.I) for p in self.timeout_on):
                if self.timeout_lands:
                    self._apply(statement)
                raise ExecutionTimeoutError(f"injected timeout: {statement}", statement=sql)
            if any(re.search(p, statement, re.I) for p in self.ignore_on):
                return
            self._apply(statement)
        except ExecutionError:
            if self._saved is not None:
                self._aborted = True
            raise

    # ------------------------------------------------------------ transactions

    def _begin(self):
        with self._guard:
            self._open_transactions += 1
            self.max_open_transactions = max(self.max_open_transactions, self._open_transactions)
        self._saved = copy.deepcopy(self.tables)
        self._aborted = False

    def _end(self, commit: bool):
        if self._saved is None:
            return
        if not commit or self._aborted:
            self.tables = self._saved
        self._saved = None
        self._aborted = False
        with self._guard:
            self._open_transactions -= 1

    # ------------------------------------------------------------ DDL

    def _table(self, name: str, statement: str) -> Dict:
        if name not in self.tables:
            raise ExecutionError(f'relation "{name}" does not exist', statement=statement)
        return self.tables[name]

    def _apply(self, statement: str):
        match = _CREATE_TABLE.match(statement)
        if match:
            name = match.group(1)
            if name in self.tables:
                raise ExecutionError(f'relation "{name}" already exists', statement=statement)
            columns = OrderedDict()
            composite_pk = []
            for definition in _split_top_level(match.group(2)):
                pk = re.match(r"^PRIMARY KEY \((.*)\)$", definition, re.I)
                if pk:
                    composite_pk = [c.strip() for c in pk.group(1).split(",")]
                    continue
                column = _parse_column(definition)
                columns[column.name] = column
            for col_name in composite_pk:
                columns[col_name] = replace(columns[col_name], primary_key=True, nullable=False)
            self.tables[name] = {"columns": columns, "indexes": OrderedDict(), "policies": OrderedDict()}
            return

        match = _DROP_TABLE.match(statement)
        if match:
            self.tables.pop(match.group(1), None)
            return

        if _ENABLE_RLS.match(statement):
            self._table(_ENABLE_RLS.match(statement).group(1), statement)
            return

        match = _ADD_COLUMN.match(statement)
        if match:
            table = self._table(match.group(1), statement)
            column = _parse_column(match.group(2))
            if column.name in table["columns"]:
                raise ExecutionError(f'column "{column.name}" already exists', statement=statement)
            table["columns"][column.name] = column
            return

        match = _DROP_COLUMN.match(statement)
        if match:
            table = self._table(match.group(1), statement)
            if match.group(2) not in table["columns"]:
                raise ExecutionError(f'column "{match.group(2)}" does not exist', statement=statement)
            del table["columns"][match.group(2)]
            return

        match = _ADD_UNIQUE.match(statement)
        if match:
            self._update_column(match.group(1), match.group(3), statement, unique=True)
            return

        match = _ADD_FK.match(statement)
        if match:
            self._table(match.group(4), statement)
            on_delete = match.group(6).upper() if match.group(6) else None
            reference = ColumnReference(table=match.group(4), column=match.group(5), on_delete=on_delete)
            self._update_column(match.group(1), match.group(3), statement, references=reference)
            return

        match = _DROP_CONSTRAINT.match(statement)
        if match:
            table = self._table(match.group(1), statement)
            constraint = match.group(2)
            for name, column in list(table["columns"].items()):
                bare = match.group(1).rsplit(".", 1)[-1]
                if constraint == f"fk_{bare}_{name}":
                    table["columns"][name] = replace(column, references=None)
                elif constraint == f"{bare}_{name}_key":
                    table["columns"][name] = replace(column, unique=False)
            return

        match = _ALTER_COLUMN.match(statement)
        if match:
            self._alter_column(match.group(1), match.group(2), match.group(3), statement)
            return

        match = _CREATE_INDEX.match(statement)
        if match:
            table = self._table(match.group(3), statement)
            name = match.group(2)
            if any(name in t["indexes"] for t in self.tables.values()):
                raise ExecutionError(f'relation "{name}" already exists', statement=statement)
            columns = tuple(c.strip() for c in match.group(4).split(","))
            table["indexes"][name] = Index(name=name, columns=columns, unique=bool(match.group(1)))
            return

        match = _DROP_INDEX.match(statement)
        if match:
            for table in self.tables.values():
                table["indexes"].pop(match.group(1), None)
            return

        match = _CREATE_POLICY.match(statement)
        if match:
            table = self._table(match.group(2), statement)
            table["policies"][match.group(1)] = Policy(
                name=match.group(1),
                operation=match.group(3).upper(),
                role=match.group(4),
                using=match.group(5),
                with_check=match.group(6),
            )
            return

        match = _DROP_POLICY.match(statement)
        if match:
            self._table(match.group(2), statement)["policies"].pop(match.group(1), None)
            return

        raise ExecutionError(f"syntax error at or near: {statement[:40]}", statement=statement)

    def _update_column(self, table_name: str, column_name: str, statement: str, **changes):
        table = self._table(table_name, statement)
        if column_name not in table["columns"]:
            raise ExecutionError(f'column "{column_name}" does not exist', statement=statement)
        table["columns"][column_name] = replace(table["columns"][column_name], **changes)

    def _alter_column(self, table_name: str, column_name: str, action: str, statement: str):
        upper = action.upper()
        if upper.startswith("TYPE "):
            data_type, params = ColumnType.parse(action[5:].strip())
            self._update_column(table_name, column_name, statement, data_type=data_type, type_params=params)
        elif upper == "SET NOT NULL":
            self._update_column(table_name, column_name, statement, nullable=False)
        elif upper == "DROP NOT NULL":
            self._update_column(table_name, column_name, statement, nullable=True)
        elif upper.startswith("SET DEFAULT "):
            self._update_column(table_name, column_name, statement, default_value=action[12:].strip())
        elif upper == "DROP DEFAULT":
            self._update_column(table_name, column_name, statement, default_value=None)
        else:
            raise ExecutionError(f"unsupported ALTER COLUMN action: {action}", statement=statement)
