"""Unit tests for SQLValidator."""

import pytest

from schemaflow.domain.exceptions import ValidationError
from schemaflow.infrastructure.validators.sql_validator import SQLValidator


@pytest.fixture
def validator():
    return SQLValidator()


def test_accepts_generated_ddl(validator):
    sql = (
        "CREATE TABLE orders (id uuid PRIMARY KEY, note text DEFAULT 'a;b');\n"
        'CREATE POLICY "owner" ON orders FOR SELECT TO authenticated USING (auth.uid() = id);\n'
        "ALTER TABLE orders ADD COLUMN total decimal(10,2);"
    )

    statements = validator.ensure_safe(sql)

    assert len(statements) == 3
    assert statements[0].startswith("CREATE TABLE orders")
    assert validator.validate_syntax(sql) == (True, None)


@pytest.mark.parametrize("sql", [
    "DROP DATABASE production;",
    "drop   database x;",
    "CREATE DATABASE shadow;",
    "ALTER SYSTEM SET work_mem = '64MB';",
    "DROP SCHEMA public CASCADE;",
    "TRUNCATE users;",
    "DELETE FROM users;",
    "INSERT INTO users (id) VALUES (1);",
    "UPDATE users SET email = NULL;",
    "CREATE TABLE pg_catalog.evil (id int);",
    "DROP TABLE information_schema.tables;",
    "CREATE INDEX idx ON pg_toast.x (id);",
    "BEGIN; CREATE TABLE t (id int); COMMIT;",
])
def test_rejects_denied_statements(validator, sql):
    with pytest.raises(ValidationError):
        validator.ensure_safe(sql)


@pytest.mark.parametrize("sql,message", [
    ("CREATE TABLE t (id int;", "parentheses"),
    ("CREATE TABLE t (id int));", "parentheses"),
    ("ALTER TABLE t ALTER COLUMN c SET DEFAULT 'oops;", "string literal"),
    ('CREATE TABLE "t (id int);', "quoted identifier"),
    ("   ", "Empty"),
    ("-- only a comment", "Empty"),
])
def test_rejects_malformed_scripts(validator, sql, message):
    valid, error = validator.validate_syntax(sql)
    assert not valid
    assert message in error


def test_keywords_inside_literals_are_ignored(validator):
    sql = "ALTER TABLE notes ALTER COLUMN body SET DEFAULT 'DROP DATABASE is just text';"
    assert validator.ensure_safe(sql) == [sql]


def test_all_problems_reported(validator):
    with pytest.raises(ValidationError) as exc:
        validator.ensure_safe("DROP DATABASE a; TRUNCATE b;")
    assert "DROP DATABASE" in exc.value.message
    assert "TRUNCATE" in exc.value.message


@pytest.mark.parametrize("sql", [
    "DROP TABLE IF EXISTS users, pg_catalog.pg_authid;",
    "DROP INDEX idx_users_email, pg_catalog.pg_class_oid_index;",
    'DROP TABLE users, "pg_catalog"."pg_authid";',
    "ALTER TABLE users ADD COLUMN owner oid REFERENCES information_schema.tables(id);",
])
def test_rejects_system_schema_names_anywhere_in_statement(validator, sql):
    with pytest.raises(ValidationError) as exc:
        validator.ensure_safe(sql)
    assert exc.value.message.count("system schemas") == 1


def test_accepts_qualified_names_outside_system_schemas(validator):
    sql = "DROP TABLE IF EXISTS users, public.orders;"
    assert validator.ensure_safe(sql) == [sql]
