import hashlib
import json
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from schemaflow.domain.exceptions import ValidationError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_COLUMN_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_RAW_TYPE = re.compile(r"^([a-z][a-z0-9 _]*?)\s*(?:\(\s*([0-9]+(?:\s*,\s*[0-9]+)?)\s*\))?$")


class ColumnType(Enum):
    """Closed set of column types accepted in a snapshot.

    Spellings such as ``int``/``integer`` stay distinct on purpose: the
    type compatibility table is keyed on the declared spelling.
    """
    UUID = "uuid"
    TEXT = "text"
    VARCHAR = "varchar"
    CHAR = "char"
    INT = "int"
    INTEGER = "integer"
    SMALLINT = "smallint"
    BIGINT = "bigint"
    SERIAL = "serial"
    BIGSERIAL = "bigserial"
    DECIMAL = "decimal"
    NUMERIC = "numeric"
    REAL = "real"
    FLOAT = "float"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    JSONB = "jsonb"
    JSON = "json"
    TIMESTAMP = "timestamp"
    TIMESTAMPTZ = "timestamptz"
    DATE = "date"
    TIME = "time"
    BYTEA = "bytea"

    @property
    def sql(self) -> str:
        """Spelling used when rendering DDL."""
        return _SQL_NAMES.get(self, self.value)

    @classmethod
    def parse(cls, raw: str) -> Tuple["ColumnType", Optional[str]]:
        """Split a raw type such as ``VARCHAR(255)`` into ``(VARCHAR, "255")``."""
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError(f"Column type must be a non-empty string, got {raw!r}")

        match = _RAW_TYPE.match(raw.strip().lower())
        if not match:
            raise ValidationError(f"Unsupported column type '{raw}'")

        base = re.sub(r"\s+", " ", match.group(1))
        params = match.group(2)
        if params:
            params = re.sub(r"\s+", "", params)

        if base in _ALIASES:
            return _ALIASES[base], params
        try:
            return cls(base), params
        except ValueError:
            raise ValidationError(f"Unsupported column type '{raw}'") from None


_SQL_NAMES = {
    ColumnType.DOUBLE: "double precision",
}

# PostgreSQL spellings reported by information_schema / pg_catalog.
_ALIASES = {
    "character varying": ColumnType.VARCHAR,
    "character": ColumnType.CHAR,
    "bpchar": ColumnType.CHAR,
    "int4": ColumnType.INTEGER,
    "int8": ColumnType.BIGINT,
    "int2": ColumnType.SMALLINT,
    "serial4": ColumnType.SERIAL,
    "serial8": ColumnType.BIGSERIAL,
    "bool": ColumnType.BOOLEAN,
    "float4": ColumnType.REAL,
    "float8": ColumnType.DOUBLE,
    "double precision": ColumnType.DOUBLE,
    "timestamp without time zone": ColumnType.TIMESTAMP,
    "timestamp with time zone": ColumnType.TIMESTAMPTZ,
    "time without time zone": ColumnType.TIME,
}

POLICY_OPERATIONS = ("SELECT", "INSERT", "UPDATE", "DELETE", "ALL")


def _require_identifier(value: Any, what: str, pattern=_COLUMN_IDENTIFIER) -> str:
    if not isinstance(value, str) or not pattern.match(value):
        raise ValidationError(f"Invalid {what} name {value!r}")
    return value


def _default_to_sql(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    raise ValidationError(f"Unsupported default value {value!r}")


@dataclass(frozen=True)
class ColumnReference:
    """Foreign key target of a column."""
    table: str
    column: str = "id"
    on_delete: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "column": self.column, "on_delete": self.on_delete}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnReference":
        if not isinstance(data, dict):
            raise ValidationError(f"Invalid column reference {data!r}")
        on_delete = data.get("on_delete")
        if on_delete is not None:
            on_delete = str(on_delete).upper()
            if on_delete not in ("CASCADE", "RESTRICT", "SET NULL", "SET DEFAULT", "NO ACTION"):
                raise ValidationError(f"Invalid ON DELETE action {on_delete!r}")
        return cls(
            table=_require_identifier(data.get("table"), "referenced table", _IDENTIFIER),
            column=_require_identifier(data.get("column", "id"), "referenced column"),
            on_delete=on_delete,
        )


@dataclass(frozen=True)
class Column:
    """Represents a database column."""
    name: str
    data_type: ColumnType
    type_params: Optional[str] = None
    nullable: bool = True
    unique: bool = False
    primary_key: bool = False
    default_value: Optional[str] = None
    references: Optional[ColumnReference] = None

    @property
    def type_sql(self) -> str:
        if self.type_params:
            return f"{self.data_type.sql}({self.type_params})"
        return self.data_type.sql

    @property
    def type_name(self) -> str:
        """Declared spelling, used for compatibility checks and serialization."""
        if self.type_params:
            return f"{self.data_type.value}({self.type_params})"
        return self.data_type.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type_name,
            "nullable": self.nullable,
            "unique": self.unique,
            "primary_key": self.primary_key,
            "default": self.default_value,
            "references": self.references.to_dict() if self.references else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Column":
        if not isinstance(data, dict):
            raise ValidationError(f"Invalid column definition {data!r}")
        data_type, params = ColumnType.parse(data.get("type"))
        primary_key = bool(data.get("primary_key", False))
        references = data.get("references")
        return cls(
            name=_require_identifier(data.get("name"), "column"),
            data_type=data_type,
            type_params=params,
            nullable=False if primary_key else bool(data.get("nullable", True)),
            unique=bool(data.get("unique", False)),
            primary_key=primary_key,
            default_value=_default_to_sql(data.get("default")),
            references=ColumnReference.from_dict(references) if references else None,
        )


@dataclass(frozen=True)
class Index:
    """Represents a database index."""
    name: str
    columns: Tuple[str, ...]
    unique: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "columns": list(self.columns), "unique": self.unique}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Index":
        if not isinstance(data, dict):
            raise ValidationError(f"Invalid index definition {data!r}")
        columns = data.get("columns") or []
        if not isinstance(columns, (list, tuple)) or not columns:
            raise ValidationError(f"Index {data.get('name')!r} must list at least one column")
        return cls(
            name=_require_identifier(data.get("name"), "index"),
            columns=tuple(_require_identifier(c, "index column") for c in columns),
            unique=bool(data.get("unique", False)),
        )


@dataclass(frozen=True)
class Policy:
    """Row level security policy attached to a table."""
    name: str
    operation: str = "ALL"
    role: str = "public"
    using: Optional[str] = None
    with_check: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "operation": self.operation,
            "role": self.role,
            "using": self.using,
            "with_check": self.with_check,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Policy":
        if not isinstance(data, dict):
            raise ValidationError(f"Invalid policy definition {data!r}")
        name = data.get("name")
        if not isinstance(name, str) or not name.strip() or '"' in name:
            raise ValidationError(f"Invalid policy name {name!r}")
        operation = str(data.get("operation", "ALL")).upper()
        if operation not in POLICY_OPERATIONS:
            raise ValidationError(f"Invalid policy operation {operation!r} for policy '{name}'")
        return cls(
            name=name,
            operation=operation,
            role=_require_identifier(data.get("role", "public"), "policy role"),
            using=data.get("using") or None,
            with_check=data.get("with_check") or None,
        )


@dataclass(frozen=True)
class Table:
    """Represents a database table."""
    name: str
    columns: Tuple[Column, ...] = ()
    indexes: Tuple[Index, ...] = ()
    policies: Tuple[Policy, ...] = ()

    def column(self, name: str) -> Optional[Column]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def index(self, name: str) -> Optional[Index]:
        for idx in self.indexes:
            if idx.name == name:
                return idx
        return None

    def policy(self, name: str) -> Optional[Policy]:
        for pol in self.policies:
            if pol.name == name:
                return pol
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "columns": [c.to_dict() for c in self.columns],
            "indexes": [i.to_dict() for i in sorted(self.indexes, key=lambda i: i.name)],
            "policies": [p.to_dict() for p in sorted(self.policies, key=lambda p: p.name)],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Table":
        if not isinstance(data, dict):
            raise ValidationError(f"Invalid table definition {data!r}")
        name = _require_identifier(data.get("name"), "table", _IDENTIFIER)

        raw_columns = data.get("columns")
        if not isinstance(raw_columns, (list, tuple)) or not raw_columns:
            raise ValidationError(f"Table '{name}' must define at least one column")
        columns = tuple(Column.from_dict(c) for c in raw_columns)
        _reject_duplicates((c.name for c in columns), f"column in table '{name}'")

        indexes = tuple(Index.from_dict(i) for i in data.get("indexes") or [])
        _reject_duplicates((i.name for i in indexes), f"index in table '{name}'")
        known = {c.name for c in columns}
        for idx in indexes:
            missing = [c for c in idx.columns if c not in known]
            if missing:
                raise ValidationError(
                    f"Index '{idx.name}' on '{name}' references unknown columns {missing}"
                )

        policies = tuple(Policy.from_dict(p) for p in data.get("policies") or [])
        _reject_duplicates((p.name for p in policies), f"policy in table '{name}'")

        return cls(name=name, columns=columns, indexes=indexes, policies=policies)


def _reject_duplicates(names: Iterable[str], what: str) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise ValidationError(f"Duplicate {what}: '{name}'")
        seen.add(name)


def compute_checksum(tables: Iterable[Table]) -> str:
    """SHA-256 over a key-sorted serialization, independent of table order."""
    canonical = [t.to_dict() for t in sorted(tables, key=lambda t: t.name)]
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SchemaSnapshot:
    """Immutable description of a schema's full structure at one point in time."""
    tables: Tuple[Table, ...] = ()
    project_id: str = ""
    version: str = ""
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    checksum: str = field(default="", compare=False)

    def __post_init__(self):
        object.__setattr__(self, "tables", tuple(self.tables))
        if not self.checksum:
            object.__setattr__(self, "checksum", compute_checksum(self.tables))

    def table(self, name: str) -> Optional[Table]:
        for tbl in self.tables:
            if tbl.name == name:
                return tbl
        return None

    @property
    def table_names(self) -> List[str]:
        return sorted(t.name for t in self.tables)

    def with_identity(
        self,
        project_id: str,
        version: str,
        created_by: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "SchemaSnapshot":
        return replace(
            self,
            project_id=project_id,
            version=version,
            created_by=created_by,
            created_at=created_at or self.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"tables": [t.to_dict() for t in sorted(self.tables, key=lambda t: t.name)]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **identity) -> "SchemaSnapshot":
        if not isinstance(data, dict):
            raise ValidationError("Schema document must be an object")
        raw_tables = data.get("tables")
        if raw_tables is None:
            raw_tables = []
        if not isinstance(raw_tables, (list, tuple)):
            raise ValidationError("'tables' must be a list")
        tables = tuple(Table.from_dict(t) for t in raw_tables)
        _reject_duplicates((t.name for t in tables), "table")
        return cls(tables=tables, **identity)
