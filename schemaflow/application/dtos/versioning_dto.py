"""Data Transfer Objects for application layer."""

from dataclasses import dataclass
from typing import Optional

from schemaflow.domain.entities.schema import SchemaSnapshot


@dataclass
class CreateVersionRequest:
    """Request to store a new schema version."""
    project_id: str
    schema: SchemaSnapshot
    author_id: Optional[str] = None
    source_sql: Optional[str] = None


@dataclass
class DeploymentRequest:
    """Request to apply forward SQL to a project's database."""
    project_id: str
    forward_sql: str
    schema_version: Optional[str] = None
    transactional: bool = True
