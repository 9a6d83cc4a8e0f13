"""PostgreSQL metadata store (``schema_versions``, ``deployments``, ``deployment_backups``)."""

import hashlib
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from schemaflow.domain.entities.deployment import Backup, DeploymentRecord, DeploymentStatus
from schemaflow.domain.entities.evolution import SchemaChange, SchemaVersion
from schemaflow.domain.entities.schema import SchemaSnapshot
from schemaflow.domain.exceptions import ConnectivityError, NotFoundError, ValidationError
from schemaflow.domain.repositories.interfaces import (
    IBackupRepository,
    IDeploymentRepository,
    ISchemaVersionRepository,
)

logger = logging.getLogger(__name__)


METADATA_DDL = """
CREATE TABLE IF NOT EXISTS schema_versions (
    seq BIGSERIAL UNIQUE,
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    version TEXT NOT NULL,
    schema_snapshot JSONB NOT NULL,
    checksum TEXT NOT NULL,
    changes JSONB NOT NULL DEFAULT '[]'::jsonb,
    migration_up TEXT,
    migration_down TEXT,
    breaking BOOLEAN NOT NULL DEFAULT false,
    source_sql TEXT,
    created_by TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (project_id, version)
);

CREATE TABLE IF NOT EXISTS deployments (
    seq BIGSERIAL UNIQUE,
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    schema_version TEXT,
    forward_sql TEXT NOT NULL,
    status TEXT NOT NULL,
    backup_id TEXT,
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    failed_at TIMESTAMPTZ,
    error_message TEXT,
    error_kind TEXT,
    rolled_back BOOLEAN NOT NULL DEFAULT false,
    rollback_sql TEXT
);

CREATE INDEX IF NOT EXISTS idx_deployments_project ON deployments (project_id, seq);

CREATE TABLE IF NOT EXISTS deployment_backups (
    id TEXT PRIMARY KEY,
    deployment_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    schema_snapshot JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


class PostgresMetadataStore:
    """Connection factory shared by the metadata repositories."""

    def __init__(self, connection_string: str, connect_timeout: int = 10):
        self._conn_string = connection_string
        self._connect_timeout = connect_timeout

    @contextmanager
    def transaction(self):
        """Yield a connection inside one transaction; commit on success."""
        try:
            conn = psycopg2.connect(self._conn_string, connect_timeout=self._connect_timeout)
        except psycopg2.OperationalError as e:
            raise ConnectivityError(f"Metadata database unreachable: {e}") from e
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        """Create the metadata tables when missing."""
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(METADATA_DDL)
        logger.info("[PostgresMetadataStore] Metadata tables ready")


class PostgresSchemaVersionRepository(ISchemaVersionRepository):
    """
    Version persistence with lock-protected number assignment.
    Single Responsibility: schema_versions access.
    """

    def __init__(self, store: PostgresMetadataStore):
        self._store = store

    @staticmethod
    def _lock_id(project_id: str) -> int:
        h = hashlib.sha256(f"schemaflow:versions:{project_id}".encode()).digest()[:8]
        return int.from_bytes(h, byteorder="big", signed=True)

    def append_version(
        self,
        project_id: str,
        build: Callable[[Optional[SchemaVersion]], SchemaVersion],
    ) -> SchemaVersion:
        with self._store.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                # Released at commit/rollback
                cur.execute("SELECT pg_advisory_xact_lock(%s)", (self._lock_id(project_id),))
                cur.execute(
                    "SELECT * FROM schema_versions WHERE project_id = %s ORDER BY seq DESC LIMIT 1",
                    (project_id,),
                )
                row = cur.fetchone()
                latest = self._row_to_version(row) if row else None

                version = build(latest)
                if version is latest:
                    return latest

                try:
                    cur.execute(
                        """
                        INSERT INTO schema_versions (
                            id, project_id, version, schema_snapshot, checksum, changes,
                            migration_up, migration_down, breaking, source_sql, created_by, created_at
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            version.id,
                            project_id,
                            version.version,
                            Json(version.snapshot.to_dict()),
                            version.checksum,
                            Json([c.to_dict() for c in version.changes]),
                            version.migration_up,
                            version.migration_down,
                            version.breaking,
                            version.source_sql,
                            version.created_by,
                            version.created_at,
                        ),
                    )
                except psycopg2.IntegrityError as e:
                    raise ValidationError(
                        f"Version {version.version} already exists for project {project_id}"
                    ) from e

        logger.info(f"[PostgresSchemaVersionRepository] Stored {project_id}@{version.version}")
        return version

    def get_version(self, project_id: str, version: str) -> Optional[SchemaVersion]:
        with self._store.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT * FROM schema_versions WHERE project_id = %s AND version = %s",
                    (project_id, version),
                )
                row = cur.fetchone()
        return self._row_to_version(row) if row else None

    def get_latest_version(self, project_id: str) -> Optional[SchemaVersion]:
        versions = self.list_versions(project_id, limit=1)
        return versions[0] if versions else None

    def list_versions(self, project_id: str, limit: int = 50) -> List[SchemaVersion]:
        with self._store.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT * FROM schema_versions WHERE project_id = %s ORDER BY seq DESC LIMIT %s",
                    (project_id, limit),
                )
                rows = cur.fetchall()
        return [self._row_to_version(r) for r in rows]

    def _row_to_version(self, row: Dict[str, Any]) -> SchemaVersion:
        snapshot = SchemaSnapshot.from_dict(
            row["schema_snapshot"],
            project_id=row["project_id"],
            version=row["version"],
            created_by=row["created_by"],
            created_at=row["created_at"],
        )
        return SchemaVersion(
            id=row["id"],
            snapshot=snapshot,
            changes=[SchemaChange.from_dict(c) for c in row["changes"] or []],
            migration_up=row["migration_up"],
            migration_down=row["migration_down"],
            breaking=row["breaking"],
            source_sql=row["source_sql"],
        )


_DEPLOYMENT_COLUMNS = (
    "id", "project_id", "schema_version", "forward_sql", "status", "backup_id",
    "started_at", "completed_at", "failed_at", "error_message", "error_kind",
    "rolled_back", "rollback_sql",
)


class PostgresDeploymentRepository(IDeploymentRepository):
    """Single Responsibility: deployments table access."""

    def __init__(self, store: PostgresMetadataStore):
        self._store = store

    def _values(self, record: DeploymentRecord) -> List[Any]:
        data = {
            "id": record.id,
            "project_id": record.project_id,
            "schema_version": record.schema_version,
            "forward_sql": record.forward_sql,
            "status": record.status.value,
            "backup_id": record.backup_id,
            "started_at": record.started_at,
            "completed_at": record.completed_at,
            "failed_at": record.failed_at,
            "error_message": record.error_message,
            "error_kind": record.error_kind,
            "rolled_back": record.rolled_back,
            "rollback_sql": record.rollback_sql,
        }
        return [data[c] for c in _DEPLOYMENT_COLUMNS]

    def create(self, record: DeploymentRecord) -> DeploymentRecord:
        placeholders = ", ".join(["%s"] * len(_DEPLOYMENT_COLUMNS))
        with self._store.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO deployments ({', '.join(_DEPLOYMENT_COLUMNS)}) VALUES ({placeholders})",
                    self._values(record),
                )
        return record

    def update(self, record: DeploymentRecord) -> DeploymentRecord:
        assignments = ", ".join(f"{c} = %s" for c in _DEPLOYMENT_COLUMNS[1:])
        values = self._values(record)
        with self._store.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE deployments SET {assignments} WHERE id = %s",
                    values[1:] + [record.id],
                )
                if cur.rowcount == 0:
                    raise NotFoundError(f"Deployment {record.id} not found")
        return record

    def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        with self._store.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT * FROM deployments WHERE id = %s", (deployment_id,))
                row = cur.fetchone()
        return self._row_to_record(row) if row else None

    def list_for_project(self, project_id: str, limit: int = 10) -> List[DeploymentRecord]:
        with self._store.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT * FROM deployments WHERE project_id = %s ORDER BY seq DESC LIMIT %s",
                    (project_id, limit),
                )
                rows = cur.fetchall()
        return [self._row_to_record(r) for r in rows]

    def get_current_version(self, project_id: str) -> Optional[str]:
        with self._store.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT schema_version FROM deployments
                    WHERE project_id = %s AND status = %s AND NOT rolled_back
                        AND schema_version IS NOT NULL
                    ORDER BY seq DESC LIMIT 1
                    """,
                    (project_id, DeploymentStatus.COMPLETED.value),
                )
                row = cur.fetchone()
        return row[0] if row else None

    def _row_to_record(self, row: Dict[str, Any]) -> DeploymentRecord:
        values = {c: row[c] for c in _DEPLOYMENT_COLUMNS}
        values["status"] = DeploymentStatus(values["status"])
        return DeploymentRecord(**values)


class PostgresBackupRepository(IBackupRepository):
    """Single Responsibility: deployment_backups access. Rows are never updated."""

    def __init__(self, store: PostgresMetadataStore):
        self._store = store

    def create(self, backup: Backup) -> Backup:
        with self._store.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO deployment_backups (id, deployment_id, project_id, schema_snapshot, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        backup.id,
                        backup.deployment_id,
                        backup.project_id,
                        Json(backup.schema_snapshot.to_dict()),
                        backup.created_at,
                    ),
                )
        return backup

    def get(self, backup_id: str) -> Optional[Backup]:
        return self._fetch_one("SELECT * FROM deployment_backups WHERE id = %s", backup_id)

    def get_for_deployment(self, deployment_id: str) -> Optional[Backup]:
        return self._fetch_one(
            "SELECT * FROM deployment_backups WHERE deployment_id = %s ORDER BY created_at DESC LIMIT 1",
            deployment_id,
        )

    def _fetch_one(self, query: str, key: str) -> Optional[Backup]:
        with self._store.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, (key,))
                row = cur.fetchone()
        if not row:
            return None
        return Backup(
            id=row["id"],
            deployment_id=row["deployment_id"],
            project_id=row["project_id"],
            schema_snapshot=SchemaSnapshot.from_dict(
                row["schema_snapshot"], project_id=row["project_id"], created_at=row["created_at"]
            ),
            created_at=row["created_at"],
        )
