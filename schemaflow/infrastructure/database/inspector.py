"""Database introspection services."""
from typing import Any, Dict, List, Optional
import logging

import psycopg2
from psycopg2 import extensions
from psycopg2.extras import RealDictCursor
from datetime import datetime, timezone

from schemaflow.domain.entities.schema import (
    Column,
    ColumnReference,
    ColumnType,
    Index,
    Policy,
    SchemaSnapshot,
    Table,
)
from schemaflow.domain.exceptions import ConnectivityError, ExecutionError, ExecutionTimeoutError, ValidationError

logger = logging.getLogger(__name__)


class PostgresInspector:
    """
    PostgreSQL database inspector.
    Single Responsibility: Database introspection.
    """

    def __init__(self, connection_string: str, schema: str = "public", connect_timeout: int = 10):
        self._conn_string = connection_string
        self._schema = schema
        self._connect_timeout = connect_timeout

    def introspect_schema(self) -> SchemaSnapshot:
        """Introspect the live schema on a fresh connection."""
        conn = self._connect()
        try:
            return self.introspect_with(conn)
        except psycopg2.Error as e:
            raise self._query_error(e) from e
        finally:
            conn.close()

    def introspect_with(self, conn) -> SchemaSnapshot:
        """Introspect on an existing connection (sees its uncommitted DDL)."""
        tables = [self._build_table(conn, name) for name in self._get_table_names(conn)]
        logger.info(f"[PostgresInspector] Introspected {len(tables)} tables in schema '{self._schema}'")
        return SchemaSnapshot(tables=tuple(tables), created_at=datetime.now(timezone.utc))

    def get_table_info(self, table_name: str) -> Optional[Table]:
        """Get detailed information about a specific table."""
        conn = self._connect()
        try:
            if table_name not in self._get_table_names(conn):
                return None
            return self._build_table(conn, table_name)
        except psycopg2.Error as e:
            raise self._query_error(e) from e
        finally:
            conn.close()

    def _connect(self):
        try:
            return psycopg2.connect(self._conn_string, connect_timeout=self._connect_timeout)
        except psycopg2.OperationalError as e:
            raise ConnectivityError(f"Cannot connect for introspection: {e}") from e

    @staticmethod
    def _query_error(error: psycopg2.Error) -> Exception:
        if isinstance(error, extensions.QueryCanceledError):
            return ExecutionTimeoutError(f"Introspection exceeded the statement timeout: {error}")
        if isinstance(error, psycopg2.OperationalError):
            return ConnectivityError(f"Connection lost during introspection: {error}")
        return ExecutionError(f"Introspection query failed: {(error.pgerror or str(error)).strip()}")

    def _display_name(self, table_name: str) -> str:
        if self._schema == "public":
            return table_name
        return f"{self._schema}.{table_name}"

    def _build_table(self, conn, table_name: str) -> Table:
        constraints = self._get_constraints(conn, table_name)
        foreign_keys = self._get_foreign_keys(conn, table_name)
        columns = self._get_columns(conn, table_name, constraints, foreign_keys)
        return Table(
            name=self._display_name(table_name),
            columns=tuple(columns),
            indexes=tuple(self._get_indexes(conn, table_name)),
            policies=tuple(self._get_policies(conn, table_name)),
        )

    def _get_table_names(self, conn) -> List[str]:
        """Get all base tables in the inspected schema."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = %s
            AND table_type = 'BASE TABLE'
            ORDER BY table_name
        """

        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema,))
            return [row["table_name"] for row in cur.fetchall()]

    def _get_columns(
        self,
        conn,
        table_name: str,
        constraints: Dict[str, set],
        foreign_keys: Dict[str, ColumnReference],
    ) -> List[Column]:
        """Get columns for a table."""
        query = """
            SELECT
                column_name,
                data_type,
                is_nullable,
                column_default,
                character_maximum_length,
                numeric_precision,
                numeric_scale
            FROM information_schema.columns
            WHERE table_schema = %s AND table_name = %s
            ORDER BY ordinal_position
        """

        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema, table_name))
            rows = cur.fetchall()

        columns = []
        for row in rows:
            try:
                data_type, _ = ColumnType.parse(row["data_type"])
            except ValidationError as e:
                raise ValidationError(
                    f"Column {table_name}.{row['column_name']} has a type outside the supported set: {e}"
                ) from e

            params = None
            if row["character_maximum_length"] and data_type in (ColumnType.VARCHAR, ColumnType.CHAR):
                params = str(row["character_maximum_length"])
            elif row["numeric_precision"] is not None and data_type in (ColumnType.NUMERIC, ColumnType.DECIMAL):
                params = f"{row['numeric_precision']},{row['numeric_scale'] or 0}"

            name = row["column_name"]
            columns.append(Column(
                name=name,
                data_type=data_type,
                type_params=params,
                nullable=row["is_nullable"] == "YES",
                unique=name in constraints["unique"],
                primary_key=name in constraints["primary"],
                default_value=row["column_default"],
                references=foreign_keys.get(name),
            ))

        return columns

    def _get_constraints(self, conn, table_name: str) -> Dict[str, set]:
        """Single-column PRIMARY KEY and UNIQUE constraints."""
        query = """
            SELECT tc.constraint_type, tc.constraint_name, kcu.column_name
            FROM information_schema.table_constraints AS tc
            JOIN information_schema.key_column_usage AS kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
            WHERE tc.table_schema = %s AND tc.table_name = %s
                AND tc.constraint_type IN ('PRIMARY KEY', 'UNIQUE')
        """

        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema, table_name))
            rows = cur.fetchall()

        by_constraint: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            entry = by_constraint.setdefault(
                row["constraint_name"], {"type": row["constraint_type"], "columns": []}
            )
            entry["columns"].append(row["column_name"])

        result = {"primary": set(), "unique": set()}
        for entry in by_constraint.values():
            if entry["type"] == "PRIMARY KEY":
                result["primary"].update(entry["columns"])
            elif len(entry["columns"]) == 1:
                result["unique"].add(entry["columns"][0])
        return result

    def _get_foreign_keys(self, conn, table_name: str) -> Dict[str, ColumnReference]:
        """Get foreign keys for a table, keyed by referencing column."""
        query = """
            SELECT
                kcu.column_name,
                ccu.table_name AS referenced_table,
                ccu.column_name AS referenced_column,
                rc.delete_rule
            FROM information_schema.table_constraints AS tc
            JOIN information_schema.key_column_usage AS kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
            JOIN information_schema.constraint_column_usage AS ccu
                ON ccu.constraint_name = tc.constraint_name
            JOIN information_schema.referential_constraints AS rc
                ON rc.constraint_name = tc.constraint_name
            WHERE tc.constraint_type = 'FOREIGN KEY'
                AND tc.table_schema = %s
                AND tc.table_name = %s
        """

        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema, table_name))
            rows = cur.fetchall()

        return {
            row["column_name"]: ColumnReference(
                table=row["referenced_table"],
                column=row["referenced_column"],
                on_delete=None if row["delete_rule"] == "NO ACTION" else row["delete_rule"],
            )
            for row in rows
        }

    def _get_indexes(self, conn, table_name: str) -> List[Index]:
        """Get indexes for a table, excluding those backing constraints."""
        query = """
            SELECT
                i.relname AS index_name,
                a.attname AS column_name,
                ix.indisunique AS is_unique
            FROM pg_class t
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN pg_index ix ON t.oid = ix.indrelid
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
            WHERE n.nspname = %s AND t.relname = %s
                AND NOT EXISTS (SELECT 1 FROM pg_constraint c WHERE c.conindid = ix.indexrelid)
            ORDER BY i.relname, array_position(ix.indkey::int2[], a.attnum)
        """

        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema, table_name))
            rows = cur.fetchall()

        # Group by index name
        indexes_dict = {}
        for row in rows:
            idx_name = row["index_name"]
            if idx_name not in indexes_dict:
                indexes_dict[idx_name] = {"columns": [], "unique": row["is_unique"]}
            indexes_dict[idx_name]["columns"].append(row["column_name"])

        return [
            Index(name=name, columns=tuple(data["columns"]), unique=data["unique"])
            for name, data in indexes_dict.items()
        ]

    def _get_policies(self, conn, table_name: str) -> List[Policy]:
        """Get row level security policies."""
        query = """
            SELECT policyname, cmd, roles, qual, with_check
            FROM pg_policies
            WHERE schemaname = %s AND tablename = %s
            ORDER BY policyname
        """

        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, (self._schema, table_name))
            rows = cur.fetchall()

        policies = []
        for row in rows:
            roles = row["roles"] or ["public"]
            if isinstance(roles, str):
                roles = roles.strip("{}").split(",")
            policies.append(Policy(
                name=row["policyname"],
                operation=row["cmd"],
                role=roles[0],
                using=row["qual"],
                with_check=row["with_check"],
            ))
        return policies
