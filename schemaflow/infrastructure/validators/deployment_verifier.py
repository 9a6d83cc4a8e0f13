"""Post-execution verification of deployed DDL."""

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional

from schemaflow.domain.entities.schema import SchemaSnapshot
from schemaflow.domain.exceptions import VerificationError
from schemaflow.domain.repositories.interfaces import ITargetDatabase

logger = logging.getLogger(__name__)

_NAME = r'("[^"]+"|[\w.]+)'

_CREATE_TABLE = re.compile(rf"^\s*CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?{_NAME}", re.I)
_DROP_TABLE = re.compile(rf"^\s*DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?{_NAME}", re.I)
_ADD_COLUMN = re.compile(
    rf"^\s*ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?{_NAME}\s+ADD\s+COLUMN\s+(?:IF\s+NOT\s+EXISTS\s+)?{_NAME}",
    re.I,
)
_DROP_COLUMN = re.compile(
    rf"^\s*ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?{_NAME}\s+DROP\s+COLUMN\s+(?:IF\s+EXISTS\s+)?{_NAME}",
    re.I,
)
_CREATE_INDEX = re.compile(
    rf"^\s*CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+NOT\s+EXISTS\s+)?{_NAME}\s+ON\s+{_NAME}",
    re.I,
)
_DROP_INDEX = re.compile(rf"^\s*DROP\s+INDEX\s+(?:CONCURRENTLY\s+)?(?:IF\s+EXISTS\s+)?{_NAME}", re.I)
_CREATE_POLICY = re.compile(rf"^\s*CREATE\s+POLICY\s+{_NAME}\s+ON\s+{_NAME}", re.I)
_DROP_POLICY = re.compile(rf"^\s*DROP\s+POLICY\s+(?:IF\s+EXISTS\s+)?{_NAME}\s+ON\s+{_NAME}", re.I)
_RENAME_TABLE = re.compile(
    rf"^\s*ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?{_NAME}\s+RENAME\s+TO\s+{_NAME}", re.I
)
_RENAME_COLUMN = re.compile(
    rf"^\s*ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?:ONLY\s+)?{_NAME}\s+RENAME\s+(?:COLUMN\s+)?"
    rf"(?!(?:TO|CONSTRAINT)\s){_NAME}\s+TO\s+{_NAME}",
    re.I,
)
_RENAME_INDEX = re.compile(rf"^\s*ALTER\s+INDEX\s+(?:IF\s+EXISTS\s+)?{_NAME}\s+RENAME\s+TO\s+{_NAME}", re.I)


def _normalize(name: str) -> str:
    """Quoted identifiers keep their case; unquoted ones fold to lower case."""
    if name.startswith('"') and name.endswith('"'):
        return name[1:-1]
    name = name.lower()
    if name.startswith("public."):
        name = name[len("public."):]
    return name


@dataclass(frozen=True)
class Expectation:
    """An object the forward SQL should have created (present) or removed."""
    kind: str
    table: Optional[str]
    name: str
    present: bool

    def describe(self) -> str:
        where = f"{self.table}." if self.table and self.kind != "table" else ""
        state = "present" if self.present else "absent"
        return f"{self.kind} {where}{self.name} expected {state}"


class DeploymentVerifier:
    """
    Probes the live schema after execution.
    Single Responsibility: compare what the DDL should have done with what the database reports.
    """

    def expectations_from_statements(self, statements: Iterable[str]) -> List[Expectation]:
        """Later statements win over earlier ones for the same object."""
        found = OrderedDict()

        def record(exp: Expectation):
            if exp.kind == "table":
                for key in [k for k in found if k[1] == exp.name and k[0] != "table"]:
                    del found[key]
            elif exp.kind == "index":
                # Index names are unique per schema, whatever table a statement names
                for key in [k for k in found if k[0] == "index" and k[2] == exp.name]:
                    del found[key]
            found[(exp.kind, exp.table, exp.name)] = exp

        def rename_table(old: str, new: str):
            moved = [
                replace(exp, table=new) if exp.kind != "table" and exp.table == old else exp
                for exp in found.values()
            ]
            found.clear()
            for exp in moved:
                found[(exp.kind, exp.table, exp.name)] = exp
            found[("table", old, old)] = Expectation("table", old, old, False)
            found[("table", new, new)] = Expectation("table", new, new, True)

        def rename_index(old: str, new: str):
            table = next((k[1] for k in found if k[0] == "index" and k[2] == old and k[1]), None)
            record(Expectation("index", table, old, False))
            record(Expectation("index", table, new, True))

        for statement in statements:
            match = _RENAME_TABLE.match(statement)
            if match:
                rename_table(_normalize(match.group(1)), _normalize(match.group(2)))
                continue
            match = _RENAME_COLUMN.match(statement)
            if match:
                table = _normalize(match.group(1))
                record(Expectation("column", table, _normalize(match.group(2)), False))
                record(Expectation("column", table, _normalize(match.group(3)), True))
                continue
            match = _RENAME_INDEX.match(statement)
            if match:
                rename_index(_normalize(match.group(1)), _normalize(match.group(2)))
                continue
            match = _CREATE_TABLE.match(statement)
            if match:
                name = _normalize(match.group(1))
                record(Expectation("table", name, name, True))
                continue
            match = _DROP_TABLE.match(statement)
            if match:
                name = _normalize(match.group(1))
                record(Expectation("table", name, name, False))
                continue
            match = _ADD_COLUMN.match(statement)
            if match:
                record(Expectation("column", _normalize(match.group(1)), _normalize(match.group(2)), True))
                continue
            match = _DROP_COLUMN.match(statement)
            if match:
                record(Expectation("column", _normalize(match.group(1)), _normalize(match.group(2)), False))
                continue
            match = _CREATE_INDEX.match(statement)
            if match:
                record(Expectation("index", _normalize(match.group(2)), _normalize(match.group(1)), True))
                continue
            match = _DROP_INDEX.match(statement)
            if match:
                record(Expectation("index", None, _normalize(match.group(1)), False))
                continue
            match = _CREATE_POLICY.match(statement)
            if match:
                record(Expectation("policy", _normalize(match.group(2)), _normalize(match.group(1)), True))
                continue
            match = _DROP_POLICY.match(statement)
            if match:
                record(Expectation("policy", _normalize(match.group(2)), _normalize(match.group(1)), False))

        return list(found.values())

    def find_mismatches(self, live: SchemaSnapshot, expectations: Iterable[Expectation]) -> List[str]:
        tables = {_normalize(t.name): t for t in live.tables}
        mismatches = []

        for exp in expectations:
            if exp.kind == "table":
                actual = exp.name in tables
            elif exp.kind == "column":
                table = tables.get(exp.table)
                actual = table is not None and any(_normalize(c.name) == exp.name for c in table.columns)
            elif exp.kind == "index":
                candidates = [tables[exp.table]] if exp.table in tables else (
                    [] if exp.table else list(tables.values())
                )
                actual = any(
                    _normalize(i.name) == exp.name for t in candidates for i in t.indexes
                )
            else:
                table = tables.get(exp.table)
                actual = table is not None and table.policy(exp.name) is not None

            if actual != exp.present:
                mismatches.append(exp.describe())

        return mismatches

    def verify(self, target: ITargetDatabase, statements: Iterable[str]) -> None:
        """Raise VerificationError when the live schema disagrees with the executed DDL."""
        expectations = self.expectations_from_statements(statements)
        if not expectations:
            logger.info("[DeploymentVerifier] Nothing to verify")
            return

        live = target.introspect_schema()
        mismatches = self.find_mismatches(live, expectations)
        if mismatches:
            logger.error(f"[DeploymentVerifier] {len(mismatches)} mismatches: {mismatches}")
            raise VerificationError(
                f"Live schema disagrees with executed DDL: {'; '.join(mismatches)}",
                mismatches=mismatches,
            )
        logger.info(f"[DeploymentVerifier] {len(expectations)} expectations verified")
