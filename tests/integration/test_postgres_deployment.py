"""Integration tests against a real PostgreSQL server (requires Docker)."""

import threading

import psycopg2
import pytest
from testcontainers.postgres import PostgresContainer

from schemaflow.application.use_case.version_store import VersionStore
from schemaflow.domain.entities.deployment import DeploymentStatus
from schemaflow.domain.entities.schema import ColumnType
from schemaflow.domain.exceptions import ConnectivityError, ExecutionError, ExecutionTimeoutError
from schemaflow.domain.services.diff_engine import DiffEngine
from schemaflow.domain.services.downtime_estimator import DowntimeEstimator
from schemaflow.domain.services.migration_builder import MigrationBuilder
from schemaflow.infrastructure.config import Settings
from schemaflow.infrastructure.database.inspector import PostgresInspector
from schemaflow.infrastructure.database.target_database import PostgresTargetDatabase
from schemaflow.infrastructure.di_container import DIContainer
from schemaflow.infrastructure.locking import PostgresAdvisoryProjectLocks
from schemaflow.infrastructure.repositories.postgres_repositories import (
    PostgresMetadataStore,
    PostgresSchemaVersionRepository,
)
from tests.fixtures.test_data import TestDataFactory

SHOP_DDL = """
    CREATE TABLE users (
        id UUID PRIMARY KEY,
        email VARCHAR(255) NOT NULL UNIQUE
    );

    CREATE TABLE orders (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        total NUMERIC(10,2) NOT NULL
    );

    CREATE INDEX idx_orders_user ON orders (user_id);
"""


@pytest.fixture(scope="session")
def postgres_dsn():
    """Start PostgreSQL container for testing."""
    try:
        container = PostgresContainer("postgres:15").start()
    except Exception as e:
        pytest.skip(f"Docker is not available: {e}")
    yield container.get_connection_url().replace("+psycopg2", "")
    container.stop()


@pytest.fixture
def clean_database(postgres_dsn):
    """Ensure clean database for each test."""
    conn = psycopg2.connect(postgres_dsn)
    with conn.cursor() as cur:
        cur.execute("""
            DROP SCHEMA public CASCADE;
            CREATE SCHEMA public;
        """)
    conn.commit()
    yield conn
    conn.close()


@pytest.fixture(scope="session")
def metadata_dsn(postgres_dsn):
    """Separate database for the metadata tables so target introspection never sees them."""
    conn = psycopg2.connect(postgres_dsn)
    conn.autocommit = True
    with conn.cursor() as cur:
        cur.execute("CREATE DATABASE schemaflow_meta")
    conn.close()
    return postgres_dsn.rsplit("/", 1)[0] + "/schemaflow_meta"


@pytest.fixture
def clean_metadata(metadata_dsn):
    conn = psycopg2.connect(metadata_dsn)
    with conn.cursor() as cur:
        cur.execute("DROP TABLE IF EXISTS schema_versions, deployments, deployment_backups")
    conn.commit()
    conn.close()
    return metadata_dsn


@pytest.fixture
def container(postgres_dsn, clean_metadata, clean_database):
    di = DIContainer(Settings(statement_timeout_seconds=5.0))
    di.configure(target_dsn=postgres_dsn, metadata_dsn=clean_metadata)
    yield di
    di.get_target_database("shop").close()


def column_names(dsn, table):
    table_info = PostgresInspector(dsn).get_table_info(table)
    return [c.name for c in table_info.columns]


def test_introspects_tables_constraints_and_indexes(postgres_dsn, clean_database):
    with clean_database.cursor() as cur:
        cur.execute(SHOP_DDL)
    clean_database.commit()

    snapshot = PostgresInspector(postgres_dsn).introspect_schema()

    assert snapshot.table_names == ["orders", "users"]
    email = snapshot.table("users").column("email")
    assert email.data_type == ColumnType.VARCHAR
    assert email.type_params == "255"
    assert email.unique and not email.nullable

    orders = snapshot.table("orders")
    assert orders.column("id").primary_key
    assert orders.column("total").type_params == "10,2"
    reference = orders.column("user_id").references
    assert (reference.table, reference.column, reference.on_delete) == ("users", "id", "CASCADE")
    assert [(i.name, i.columns) for i in orders.indexes] == [("idx_orders_user", ("user_id",))]


def test_missing_table_info(postgres_dsn, clean_database):
    assert PostgresInspector(postgres_dsn).get_table_info("nope") is None


def test_unreachable_target():
    target = PostgresTargetDatabase("postgresql://nobody@127.0.0.1:1/none", connect_timeout=1)
    with pytest.raises(ConnectivityError):
        target.ping_connectivity()


def test_statement_errors_are_mapped(postgres_dsn, clean_database):
    target = PostgresTargetDatabase(postgres_dsn)
    try:
        with pytest.raises(ExecutionError):
            target.execute_statement("ALTER TABLE missing ADD COLUMN a text;")
        with pytest.raises(ExecutionTimeoutError):
            target.execute_statement("SELECT pg_sleep(3)", timeout_seconds=0.2)
    finally:
        target.close()


def test_versions_and_deployments_end_to_end(container, postgres_dsn):
    store = container.get_version_store()
    orchestrator = container.get_orchestrator()
    store.create_version("shop", TestDataFactory.create_users_snapshot(), "alice")
    store.create_version("shop", TestDataFactory.create_users_with_phone_snapshot(), "alice")

    first = orchestrator.deploy_version("shop", "0.0.1")
    second = orchestrator.deploy_version("shop", "0.0.2")

    assert first.success, first.error_message
    assert second.success, second.error_message
    assert column_names(postgres_dsn, "users") == ["id", "email", "phone"]
    assert orchestrator.get_current_version("shop") == "0.0.2"

    back = orchestrator.rollback_version("shop", "0.0.1")
    assert back.success, back.error_message
    assert column_names(postgres_dsn, "users") == ["id", "email"]
    assert [r.id for r in orchestrator.get_deployment_history("shop", limit=1)] == [back.deployment_id]


def test_failed_deployment_is_rolled_back(container, postgres_dsn, clean_database):
    with clean_database.cursor() as cur:
        cur.execute("CREATE TABLE users (id UUID PRIMARY KEY, email TEXT NOT NULL);")
    clean_database.commit()
    orchestrator = container.get_orchestrator()

    result = orchestrator.apply_migration(
        "shop",
        "ALTER TABLE users ADD COLUMN phone text;\nALTER TABLE missing ADD COLUMN b text;",
    )

    assert result.rolled_back
    assert result.error_kind == "ExecutionError"
    assert result.statements_executed == 1
    assert column_names(postgres_dsn, "users") == ["id", "email"]

    record = orchestrator.get_deployment_status(result.deployment_id)
    assert record.status == DeploymentStatus.COMPLETED
    backup = container.get_backup_repository().get(record.backup_id)
    assert backup.schema_snapshot.table_names == ["users"]


def test_version_numbers_are_unique_under_concurrency(postgres_dsn, clean_database):
    metadata = PostgresMetadataStore(postgres_dsn)
    metadata.ensure_schema()
    stores = [
        VersionStore(PostgresSchemaVersionRepository(metadata), DiffEngine(), MigrationBuilder(),
                     DowntimeEstimator())
        for _ in range(4)
    ]
    threads = [
        threading.Thread(
            target=store.create_version,
            args=("shop", TestDataFactory.snapshot(TestDataFactory.users_table({"name": f"c{n}", "type": "text"}))),
        )
        for n, store in enumerate(stores)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    versions = [v.version for v in stores[0].get_version_history("shop")]
    assert sorted(versions) == ["0.0.1", "0.0.2", "0.0.3", "0.0.4"]


def test_advisory_lock_blocks_other_processes(postgres_dsn):
    holder = PostgresAdvisoryProjectLocks(postgres_dsn)
    contender = PostgresAdvisoryProjectLocks(postgres_dsn)
    acquired = threading.Event()

    def contend():
        with contender.hold("shop"):
            acquired.set()

    with holder.hold("shop"):
        worker = threading.Thread(target=contend)
        worker.start()
        assert not acquired.wait(0.5)

    assert acquired.wait(5)
    worker.join(timeout=5)
