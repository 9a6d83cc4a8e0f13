"""Boundary parsing of schema documents."""

import json
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from schemaflow.domain.entities.schema import SchemaSnapshot
from schemaflow.domain.exceptions import ValidationError

logger = logging.getLogger(__name__)

_CONSTRAINTS = ("NOT NULL", "NULL", "UNIQUE", "PRIMARY KEY")


class ReferenceDocument(BaseModel):
    """Foreign key target as authored."""
    table: str = Field(..., description="Referenced table")
    column: str = Field("id", description="Referenced column")
    on_delete: Optional[str] = Field(None, description="ON DELETE action")


class ColumnDocument(BaseModel):
    """Column as authored: constraints may be given as a list of keywords."""
    name: str = Field(..., description="Column name")
    type: str = Field(..., description="SQL type, e.g. varchar(255)")
    nullable: Optional[bool] = Field(None, description="Explicit nullability")
    unique: bool = Field(False, description="Single-column unique constraint")
    primary_key: bool = Field(False, description="Part of the primary key")
    constraints: List[str] = Field(default_factory=list, description="NOT NULL, UNIQUE, PRIMARY KEY")
    default: Optional[Union[bool, int, float, str]] = Field(None, description="Default expression")
    references: Optional[ReferenceDocument] = None


class IndexDocument(BaseModel):
    name: str
    columns: List[str] = Field(default_factory=list)
    unique: bool = False


class PolicyDocument(BaseModel):
    name: str
    operation: str = Field("ALL", description="SELECT, INSERT, UPDATE, DELETE or ALL")
    role: str = "public"
    using: Optional[str] = None
    with_check: Optional[str] = None


class TableDocument(BaseModel):
    name: str
    columns: List[ColumnDocument] = Field(default_factory=list)
    indexes: List[IndexDocument] = Field(default_factory=list)
    policies: List[PolicyDocument] = Field(default_factory=list)


class SchemaDocument(BaseModel):
    tables: List[TableDocument] = Field(default_factory=list)


class SchemaDocumentRepository:
    """
    Repository for schema documents.
    Single Responsibility: schema JSON parsing and validation.
    """

    def parse_schema(self, json_data: Dict[str, Any], **identity) -> SchemaSnapshot:
        """Parse a schema document into a snapshot, raising ValidationError when malformed."""
        if not isinstance(json_data, dict):
            raise ValidationError("Schema document must be a JSON object")
        try:
            document = SchemaDocument(**json_data)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed schema document: {e}") from e

        tables = [self._table_to_dict(t) for t in document.tables]
        snapshot = SchemaSnapshot.from_dict({"tables": tables}, **identity)
        logger.info(f"[SchemaDocumentRepository] Parsed schema with {len(snapshot.tables)} tables")
        return snapshot

    def load_file(self, path: str, **identity) -> SchemaSnapshot:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"{path} is not valid JSON: {e}") from e
        return self.parse_schema(data, **identity)

    def validate_schema(self, snapshot: SchemaSnapshot) -> bool:
        """A deployable schema has at least one table, each with at least one column."""
        if not snapshot.tables:
            return False
        return all(table.columns for table in snapshot.tables)

    def _table_to_dict(self, table: TableDocument) -> Dict[str, Any]:
        return {
            "name": table.name,
            "columns": [self._column_to_dict(table.name, c) for c in table.columns],
            "indexes": [
                {"name": i.name, "columns": list(i.columns), "unique": i.unique}
                for i in table.indexes
            ],
            "policies": [
                {
                    "name": p.name,
                    "operation": p.operation,
                    "role": p.role,
                    "using": p.using,
                    "with_check": p.with_check,
                }
                for p in table.policies
            ],
        }

    def _column_to_dict(self, table_name: str, column: ColumnDocument) -> Dict[str, Any]:
        constraints = [" ".join(c.upper().split()) for c in column.constraints]
        unknown = [c for c in constraints if c not in _CONSTRAINTS]
        if unknown:
            raise ValidationError(
                f"Column {table_name}.{column.name} has unsupported constraints {unknown}"
            )

        primary_key = column.primary_key or "PRIMARY KEY" in constraints
        if column.nullable is not None:
            nullable = column.nullable
        else:
            nullable = "NOT NULL" not in constraints
        if primary_key:
            nullable = False

        return {
            "name": column.name,
            "type": column.type,
            "nullable": nullable,
            "unique": column.unique or "UNIQUE" in constraints,
            "primary_key": primary_key,
            "default": column.default,
            "references": (
                {
                    "table": column.references.table,
                    "column": column.references.column,
                    "on_delete": column.references.on_delete,
                }
                if column.references else None
            ),
        }
