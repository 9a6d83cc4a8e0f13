from typing import Any, Dict, List

from schemaflow.domain.entities.schema import SchemaSnapshot


class TestDataFactory:
    """Factory for creating test data objects."""

    __test__ = False

    @staticmethod
    def users_table(*extra_columns: Dict[str, Any], **overrides) -> Dict[str, Any]:
        table = {
            "name": "users",
            "columns": [
                {"name": "id", "type": "uuid", "primary_key": True},
                {"name": "email", "type": "text", "nullable": False},
                *extra_columns,
            ],
        }
        table.update(overrides)
        return table

    @staticmethod
    def orders_table() -> Dict[str, Any]:
        return {
            "name": "orders",
            "columns": [
                {"name": "id", "type": "uuid", "primary_key": True},
                {"name": "user_id", "type": "uuid", "nullable": False,
                 "references": {"table": "users", "column": "id", "on_delete": "CASCADE"}},
                {"name": "total", "type": "decimal(10,2)", "nullable": False, "default": 0},
                {"name": "status", "type": "varchar(20)", "default": "'pending'"},
            ],
            "indexes": [{"name": "idx_orders_user", "columns": ["user_id"]}],
            "policies": [{
                "name": "orders_owner",
                "operation": "SELECT",
                "role": "authenticated",
                "using": "auth.uid() = user_id",
            }],
        }

    @staticmethod
    def snapshot(*tables: Dict[str, Any]) -> SchemaSnapshot:
        return SchemaSnapshot.from_dict({"tables": list(tables)})

    @staticmethod
    def create_users_snapshot() -> SchemaSnapshot:
        """users(id uuid pk, email text not null)."""
        return TestDataFactory.snapshot(TestDataFactory.users_table())

    @staticmethod
    def create_users_with_phone_snapshot() -> SchemaSnapshot:
        return TestDataFactory.snapshot(
            TestDataFactory.users_table({"name": "phone", "type": "text"})
        )

    @staticmethod
    def create_shop_snapshot() -> SchemaSnapshot:
        """users and orders with a foreign key, an index and a policy."""
        return TestDataFactory.snapshot(TestDataFactory.users_table(), TestDataFactory.orders_table())

    @staticmethod
    def create_schema_document() -> Dict[str, Any]:
        """Authoring format with constraint keywords."""
        return {
            "tables": [
                {
                    "name": "profiles",
                    "columns": [
                        {"name": "id", "type": "uuid", "constraints": ["PRIMARY KEY"],
                         "default": "gen_random_uuid()"},
                        {"name": "user_id", "type": "uuid", "constraints": ["NOT NULL", "UNIQUE"],
                         "references": {"table": "users", "column": "id"}},
                        {"name": "bio", "type": "text"},
                        {"name": "created_at", "type": "timestamp with time zone",
                         "constraints": ["not null"], "default": "now()"},
                    ],
                    "indexes": [{"name": "idx_profiles_created", "columns": ["created_at"]}],
                }
            ]
        }

    @staticmethod
    def table_names(snapshot: SchemaSnapshot) -> List[str]:
        return snapshot.table_names
