"""psycopg2 adapter for a project's target database."""
import logging
from typing import Optional

import psycopg2
from psycopg2 import extensions

from schemaflow.domain.entities.schema import SchemaSnapshot
from schemaflow.domain.exceptions import ConnectivityError, ExecutionError, ExecutionTimeoutError
from schemaflow.domain.repositories.interfaces import ITargetDatabase
from schemaflow.infrastructure.database.inspector import PostgresInspector

logger = logging.getLogger(__name__)


class PostgresTargetDatabase(ITargetDatabase):
    """
    Target database reached through one autocommit connection.

    Transactions are opened by executing ``BEGIN`` as a statement, so
    everything the executor sends (including introspection for
    verification) shares one session.
    """

    def __init__(self, connection_string: str, schema: str = "public", connect_timeout: int = 10):
        self._conn_string = connection_string
        self._connect_timeout = connect_timeout
        self._conn = None
        self._inspector = PostgresInspector(connection_string, schema=schema, connect_timeout=connect_timeout)

    def _connection(self):
        if self._conn is None or self._conn.closed:
            try:
                self._conn = psycopg2.connect(self._conn_string, connect_timeout=self._connect_timeout)
            except psycopg2.OperationalError as e:
                raise ConnectivityError(f"Target database unreachable: {e}") from e
            self._conn.autocommit = True
        return self._conn

    def ping_connectivity(self) -> None:
        try:
            with self._connection().cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
        except psycopg2.Error as e:
            self.close()
            raise ConnectivityError(f"Target database unreachable: {e}") from e

    def execute_statement(self, sql: str, timeout_seconds: Optional[float] = None) -> None:
        conn = self._connection()
        try:
            with conn.cursor() as cur:
                if timeout_seconds:
                    cur.execute("SET statement_timeout = %s", (max(1, int(timeout_seconds * 1000)),))
                cur.execute(sql)
        except extensions.QueryCanceledError as e:
            logger.error(f"[PostgresTargetDatabase] Statement timed out after {timeout_seconds}s: {sql[:80]}")
            raise ExecutionTimeoutError(
                f"Statement exceeded {timeout_seconds}s: {e}", statement=sql
            ) from e
        except psycopg2.OperationalError as e:
            # Connection lost mid-statement: outcome on the server is unknown
            self.close()
            raise ExecutionError(f"Connection lost while executing statement: {e}", statement=sql) from e
        except psycopg2.Error as e:
            message = (e.pgerror or str(e)).strip()
            raise ExecutionError(f"SQL execution failed: {message}", statement=sql) from e

    def introspect_schema(self) -> SchemaSnapshot:
        try:
            return self._inspector.introspect_with(self._connection())
        except extensions.QueryCanceledError as e:
            raise ExecutionTimeoutError(f"Introspection exceeded the statement timeout: {e}") from e
        except psycopg2.OperationalError as e:
            self.close()
            raise ConnectivityError(f"Introspection failed: {e}") from e
        except psycopg2.Error as e:
            message = (e.pgerror or str(e)).strip()
            raise ExecutionError(f"Introspection failed: {message}") from e

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None
