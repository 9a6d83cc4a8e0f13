"""SQL validation services."""

import re
import sqlparse
from sqlparse import sql as S
from sqlparse import tokens as T
from typing import List, Optional, Tuple

from schemaflow.domain.exceptions import ValidationError

SYSTEM_SCHEMA_MESSAGE = "Operations on system schemas are not allowed"
_SYSTEM_SCHEMA = re.compile(r"^(pg_\w*|information_schema)$", re.I)

# (pattern, message) checked against statement text with string literals blanked
DENY_LIST = [
    (re.compile(r"\bDROP\s+DATABASE\b", re.I), "DROP DATABASE is not allowed"),
    (re.compile(r"\bCREATE\s+DATABASE\b", re.I), "CREATE DATABASE is not allowed"),
    (re.compile(r"\bALTER\s+SYSTEM\b", re.I), "ALTER SYSTEM is not allowed"),
    (re.compile(r"\bDROP\s+SCHEMA\b", re.I), "DROP SCHEMA is not allowed"),
    (re.compile(r"^\s*TRUNCATE\b", re.I), "TRUNCATE requires explicit approval"),
    (re.compile(r"^\s*(INSERT|UPDATE|DELETE|MERGE|COPY)\b", re.I),
     "Row-level statements are not allowed in a schema deployment"),
    (re.compile(r"^\s*(BEGIN|COMMIT|ROLLBACK|START\s+TRANSACTION|END|SAVEPOINT)\b", re.I),
     "Transaction control is managed by the executor"),
    (re.compile(
        r"\b(?:TABLE|INDEX|VIEW|SEQUENCE|FUNCTION|TYPE|SCHEMA|POLICY|TRIGGER|EXTENSION|ON)\s+"
        r"(?:IF\s+(?:NOT\s+)?EXISTS\s+)?(?:ONLY\s+)?\"?(pg_\w+|information_schema)\b",
        re.I,
    ), SYSTEM_SCHEMA_MESSAGE),
]


class SQLValidator:
    """
    Validates SQL scripts before they reach a database.
    Single Responsibility: SQL validation.
    """

    def __init__(self, dialect: str = "postgresql"):
        self._dialect = dialect

    def validate_syntax(self, sql: str) -> Tuple[bool, Optional[str]]:
        """
        Validate a script.
        Returns (is_valid, error_message).
        """
        problems = self.find_problems(sql)
        if problems:
            return False, problems[0]
        return True, None

    def ensure_safe(self, sql: str) -> List[str]:
        """Return the individual statements, or raise ValidationError listing every problem."""
        problems = self.find_problems(sql)
        if problems:
            raise ValidationError("; ".join(problems))
        return self.split_statements(sql)

    def find_problems(self, sql: str) -> List[str]:
        if not sql or not sql.strip():
            return ["Empty SQL script"]

        balance_error = self._check_balance(sql)
        if balance_error:
            # Splitting is unreliable past an open quote or parenthesis
            return [balance_error]

        statements = self.split_statements(sql)
        if not statements:
            return ["Empty SQL script"]

        problems = []
        for statement in statements:
            code = self._code_only(statement)
            messages = [message for pattern, message in DENY_LIST if pattern.search(code)]
            if SYSTEM_SCHEMA_MESSAGE not in messages and self._system_schema_names(statement):
                messages.append(SYSTEM_SCHEMA_MESSAGE)
            problems.extend(f"{message}: {statement[:80]}" for message in messages)
        return problems

    def split_statements(self, sql: str) -> List[str]:
        """Split a script into statements, dropping comments and empty fragments."""
        stripped = sqlparse.format(sql, strip_comments=True)
        return [s.strip() for s in sqlparse.split(stripped) if s.strip().rstrip(";").strip()]

    def _system_schema_names(self, statement: str) -> List[str]:
        """Schema-qualified names anywhere in the statement whose schema is a system schema."""
        found = []
        for parsed in sqlparse.parse(statement):
            self._collect_system_names(parsed, found)
        return found

    def _collect_system_names(self, group, found: List[str]) -> None:
        for token in group.tokens:
            if isinstance(token, S.Identifier):
                schema = token.get_parent_name()
                if schema and _SYSTEM_SCHEMA.match(schema):
                    found.append(f"{schema}.{token.get_real_name()}")
            if token.is_group:
                self._collect_system_names(token, found)

    def _code_only(self, statement: str) -> str:
        """Statement text with string literals blanked and comments removed."""
        parts = []
        for parsed in sqlparse.parse(statement):
            for token in parsed.flatten():
                if token.ttype is not None and token.ttype in T.Comment:
                    continue
                if token.ttype is not None and token.ttype in T.String.Single:
                    parts.append("''")
                    continue
                parts.append(token.value)
        return "".join(parts)

    def _check_balance(self, sql: str) -> Optional[str]:
        """Parentheses and quotes must balance outside comments and literals."""
        depth = 0
        quote = None
        i, n = 0, len(sql)
        while i < n:
            ch = sql[i]
            if quote:
                if ch == quote:
                    if i + 1 < n and sql[i + 1] == quote:
                        i += 2
                        continue
                    quote = None
            elif ch in ("'", '"'):
                quote = ch
            elif sql.startswith("--", i):
                end = sql.find("\n", i)
                i = n if end == -1 else end
                continue
            elif sql.startswith("/*", i):
                end = sql.find("*/", i + 2)
                if end == -1:
                    return "Unterminated block comment"
                i = end + 2
                continue
            elif ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth < 0:
                    return "Unbalanced parentheses: unexpected ')'"
            i += 1

        if quote == "'":
            return "Unbalanced quotes: unterminated string literal"
        if quote == '"':
            return "Unbalanced quotes: unterminated quoted identifier"
        if depth:
            return "Unbalanced parentheses: missing ')'"
        return None
