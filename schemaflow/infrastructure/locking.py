"""
Per-project locks serializing deployments.

Deployments for one project run one at a time; different projects never
wait on each other. ``ProjectLocks`` covers a single process,
``PostgresAdvisoryProjectLocks`` covers every process sharing the
metadata database.
"""

import hashlib
import logging
import threading
from contextlib import contextmanager
from typing import Dict, List

import psycopg2

from schemaflow.domain.exceptions import ConnectivityError

logger = logging.getLogger(__name__)


class ProjectLocks:
    """
    In-process lock registry keyed by project id.

    Entries are reference counted and dropped once no thread holds or
    waits on them, so the registry only grows with concurrent projects.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, project_id: str):
        with self._guard:
            entry = self._locks.setdefault(project_id, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]
        try:
            lock.acquire()
            logger.debug(f"[ProjectLocks] Acquired lock for project {project_id}")
            try:
                yield
            finally:
                lock.release()
                logger.debug(f"[ProjectLocks] Released lock for project {project_id}")
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[project_id]


class PostgresAdvisoryProjectLocks(ProjectLocks):
    """
    Session-level advisory lock on the metadata database.

    Each hold uses a dedicated connection; the lock is released with it,
    including when the process dies.
    """

    LOCK_PREFIX = "schemaflow:deploy:"

    def __init__(self, connection_string: str, connect_timeout: int = 10):
        super().__init__()
        self._conn_string = connection_string
        self._connect_timeout = connect_timeout

    @staticmethod
    def _hash_to_lock_id(key: str) -> int:
        """First 8 bytes of SHA-256 as a signed int64 advisory lock key."""
        h = hashlib.sha256(key.encode()).digest()[:8]
        return int.from_bytes(h, byteorder="big", signed=True)

    @contextmanager
    def hold(self, project_id: str):
        lock_id = self._hash_to_lock_id(self.LOCK_PREFIX + project_id)
        # Threads of this process queue locally before taking a connection
        with super().hold(project_id):
            try:
                conn = psycopg2.connect(self._conn_string, connect_timeout=self._connect_timeout)
            except psycopg2.OperationalError as e:
                raise ConnectivityError(f"Metadata database unreachable for locking: {e}") from e
            conn.autocommit = True
            try:
                try:
                    with conn.cursor() as cur:
                        cur.execute("SELECT pg_advisory_lock(%s)", (lock_id,))
                except psycopg2.Error as e:
                    raise ConnectivityError(f"Could not take advisory lock for {project_id}: {e}") from e
                logger.info(f"[PostgresAdvisoryProjectLocks] Acquired advisory lock {lock_id} for {project_id}")
                try:
                    yield
                finally:
                    self._unlock(conn, lock_id, project_id)
            finally:
                conn.close()

    @staticmethod
    def _unlock(conn, lock_id: int, project_id: str) -> None:
        # Closing the session releases the lock as well
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_unlock(%s)", (lock_id,))
        except psycopg2.Error as e:
            logger.warning(f"[PostgresAdvisoryProjectLocks] Unlock of {lock_id} for {project_id} failed, "
                           f"closing the session instead: {e}")
