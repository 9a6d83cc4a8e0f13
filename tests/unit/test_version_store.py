"""Unit tests for VersionStore."""

import threading
import unittest

from schemaflow.application.dtos.versioning_dto import CreateVersionRequest
from schemaflow.application.use_case.version_store import VersionStore
from schemaflow.domain.exceptions import NotFoundError, ValidationError
from schemaflow.domain.services.diff_engine import DiffEngine
from schemaflow.domain.services.downtime_estimator import DowntimeEstimator
from schemaflow.domain.services.migration_builder import MigrationBuilder
from schemaflow.infrastructure.repositories.memory_repositories import InMemorySchemaVersionRepository
from tests.fixtures.test_data import TestDataFactory


def build_store(repository=None):
    return VersionStore(
        repository or InMemorySchemaVersionRepository(),
        DiffEngine(),
        MigrationBuilder(),
        DowntimeEstimator(),
    )


class TestVersionStore(unittest.TestCase):

    def setUp(self):
        self.store = build_store()

    def test_first_version_has_no_migration(self):
        version = self.store.create_version("p1", TestDataFactory.create_users_snapshot(), "alice")

        self.assertEqual(version.version, "0.0.1")
        self.assertEqual(version.project_id, "p1")
        self.assertEqual(version.created_by, "alice")
        self.assertIsNotNone(version.created_at)
        self.assertEqual(version.changes, [])
        self.assertIsNone(version.migration_up)

    def test_next_version_carries_migration(self):
        self.store.create_version("p1", TestDataFactory.create_users_snapshot())
        version = self.store.create_version("p1", TestDataFactory.create_users_with_phone_snapshot())

        self.assertEqual(version.version, "0.0.2")
        self.assertEqual(version.migration_up, "ALTER TABLE users ADD COLUMN phone text;")
        self.assertEqual(version.migration_down, "ALTER TABLE users DROP COLUMN phone;")
        self.assertFalse(version.breaking)
        self.assertEqual([c.target for c in version.changes], ["users.phone"])

    def test_identical_schema_returns_latest(self):
        first = self.store.create_version("p1", TestDataFactory.create_users_snapshot())
        again = self.store.create_version("p1", TestDataFactory.create_users_snapshot())

        self.assertEqual(again.id, first.id)
        self.assertEqual(len(self.store.get_version_history("p1")), 1)

    def test_revert_to_older_structure_creates_version(self):
        self.store.create_version("p1", TestDataFactory.create_users_snapshot())
        self.store.create_version("p1", TestDataFactory.create_users_with_phone_snapshot())
        reverted = self.store.create_version("p1", TestDataFactory.create_users_snapshot())

        self.assertEqual(reverted.version, "0.0.3")
        self.assertEqual(reverted.migration_up, "ALTER TABLE users DROP COLUMN phone;")

    def test_projects_are_numbered_independently(self):
        self.store.create_version("p1", TestDataFactory.create_users_snapshot())
        self.store.create_version("p1", TestDataFactory.create_shop_snapshot())
        other = self.store.create_version("p2", TestDataFactory.create_shop_snapshot())

        self.assertEqual(other.version, "0.0.1")

    def test_history_is_newest_first(self):
        self.store.create_version("p1", TestDataFactory.create_users_snapshot())
        self.store.create_version("p1", TestDataFactory.create_users_with_phone_snapshot())
        self.store.create_version("p1", TestDataFactory.create_shop_snapshot())

        history = self.store.get_version_history("p1")

        self.assertEqual([v.version for v in history], ["0.0.3", "0.0.2", "0.0.1"])
        self.assertEqual(len(self.store.get_version_history("p1", limit=2)), 2)
        self.assertEqual(self.store.get_version_history("unknown"), [])

    def test_compare_versions(self):
        self.store.create_version("p1", TestDataFactory.create_shop_snapshot())
        self.store.create_version("p1", TestDataFactory.create_users_snapshot())

        plan = self.store.compare_versions("p1", "0.0.1", "0.0.2")

        self.assertEqual((plan.from_version, plan.to_version), ("0.0.1", "0.0.2"))
        self.assertTrue(plan.breaking)
        self.assertEqual(plan.forward_sql, "DROP TABLE IF EXISTS orders;")
        self.assertEqual(plan.estimated_downtime_seconds, 2)
        self.assertEqual(len(plan.warnings), 1)

    def test_compare_missing_version_raises(self):
        self.store.create_version("p1", TestDataFactory.create_users_snapshot())

        with self.assertRaises(NotFoundError):
            self.store.compare_versions("p1", "0.0.1", "0.0.9")
        with self.assertRaises(NotFoundError):
            self.store.compare_versions("nope", "0.0.1", "0.0.1")

    def test_execute_request(self):
        version = self.store.execute(CreateVersionRequest(
            project_id="p1",
            schema=TestDataFactory.create_users_snapshot(),
            author_id="bob",
            source_sql="create table users (...)",
        ))
        self.assertEqual(version.source_sql, "create table users (...)")
        self.assertEqual(version.created_by, "bob")

    def test_project_id_required(self):
        with self.assertRaises(ValidationError):
            self.store.create_version("", TestDataFactory.create_users_snapshot())

    def test_concurrent_writers_get_distinct_versions(self):
        snapshots = [
            TestDataFactory.snapshot(TestDataFactory.users_table({"name": f"c{i}", "type": "text"}))
            for i in range(20)
        ]
        threads = [
            threading.Thread(target=self.store.create_version, args=("p1", s)) for s in snapshots
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        versions = [v.version for v in self.store.get_version_history("p1")]
        self.assertEqual(len(versions), 20)
        self.assertEqual(len(set(versions)), 20)
        self.assertEqual(versions[0], "0.0.20")


if __name__ == "__main__":
    unittest.main()
