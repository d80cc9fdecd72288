"""
Read-Only SQL Validation Layer
==============================

Hand-written SQL reaches the warehouse only after passing this gate.

SOLUTION:
A pre-execution check over the sqlparse token stream that:
1. Rejects empty input and multi-statement batches
2. Requires the statement to be a SELECT (a WITH ... SELECT counts)
3. Rejects any write/DDL/permission keyword anywhere in the statement

Keywords inside string literals, quoted identifiers and comments are not
keyword tokens, so "WHERE note = 'please delete me'" is still read-only.

WHAT THIS IS NOT:
- NOT SQL repair (we abort, not fix)
- NOT table scoping (see scoped_sql_guard)

enforce_row_limit() bounds the validated statement to the query row cap.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import sqlparse
from sqlparse import lexer
from sqlparse import tokens as T

from errors import UnsafeSQLError

logger = logging.getLogger(__name__)

BLOCKED_KEYWORDS = {
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "ALTER",
    "TRUNCATE",
    "CREATE",
    "GRANT",
    "REVOKE",
    "MERGE",
}


@dataclass
class ReadOnlyValidationResult:
    """
    Result of read-only validation.

    Attributes:
        valid: Whether the SQL may be executed
        statement_type: sqlparse statement type (SELECT, UNKNOWN, ...)
        blocked_keyword: First write/DDL keyword found, if any
        error_message: Human-readable error (if invalid)
        sql: Normalized SQL (trailing semicolon removed)
    """
    valid: bool
    statement_type: Optional[str]
    blocked_keyword: Optional[str]
    error_message: Optional[str]
    sql: str


class ReadOnlySQLValidator:
    """Validates that a SQL string is exactly one read-only SELECT statement"""

    def validate(self, sql: str) -> ReadOnlyValidationResult:
        normalized = (sql or "").strip().rstrip(";").strip()
        if not normalized:
            return self._reject(None, None, "SQL must not be empty", normalized)

        statements = [s for s in sqlparse.parse(normalized) if str(s).strip()]
        if len(statements) != 1:
            return self._reject(None, None, "Only a single SQL statement is allowed", normalized)

        statement = statements[0]
        for token in statement.flatten():
            if token.ttype in T.Keyword and token.normalized in BLOCKED_KEYWORDS:
                return self._reject(
                    statement.get_type(),
                    token.normalized,
                    f"Only read-only SELECT statements are allowed ({token.normalized} found)",
                    normalized,
                )

        statement_type = statement.get_type()
        if statement_type != "SELECT":
            return self._reject(
                statement_type, None, "Only read-only SELECT statements are allowed", normalized
            )

        return ReadOnlyValidationResult(
            valid=True,
            statement_type=statement_type,
            blocked_keyword=None,
            error_message=None,
            sql=normalized,
        )

    @staticmethod
    def _reject(statement_type, keyword, message, sql) -> ReadOnlyValidationResult:
        logger.warning(f"Read-only SQL validation FAILED: {message}")
        return ReadOnlyValidationResult(
            valid=False,
            statement_type=statement_type,
            blocked_keyword=keyword,
            error_message=message,
            sql=sql,
        )


_validator = ReadOnlySQLValidator()


def validate_read_only(sql: str) -> str:
    """
    Validate hand-written SQL and return it normalized.

    Raises:
        UnsafeSQLError: the SQL is empty, batched, or not read-only
    """
    result = _validator.validate(sql)
    if not result.valid:
        raise UnsafeSQLError(result.error_message)
    return result.sql


# =============================================================================
# ROW LIMIT ENFORCER
# =============================================================================
# Hand-written SQL is bounded like compiled plans:
# - top-level numeric LIMIT above the cap -> lowered to the cap
# - LIMIT ALL                              -> the cap
# - no top-level LIMIT                     -> LIMIT <cap> appended
# LIMITs inside subqueries and CTEs are left alone. A statement that ends in
# FETCH FIRST ... ROWS keeps it; the executor's row cap still applies.
# =============================================================================

def enforce_row_limit(sql: str, max_rows: int) -> str:
    """Return sql with its top-level LIMIT clamped to max_rows."""
    tokens = list(lexer.tokenize(sql))
    depth = 0
    limit_index = None
    has_fetch = False
    for i, (ttype, value) in enumerate(tokens):
        if ttype in T.Punctuation and value == "(":
            depth += 1
        elif ttype in T.Punctuation and value == ")":
            depth -= 1
        elif depth == 0 and ttype in T.Keyword:
            word = value.upper()
            if word == "LIMIT":
                limit_index = i
            elif word == "FETCH":
                has_fetch = True

    if limit_index is None:
        if has_fetch:
            return sql
        logger.info(f"[OK] Row limit {max_rows} appended to hand-written SQL")
        return f"{sql}\nLIMIT {max_rows}"

    values = [value for _, value in tokens]
    for j in range(limit_index + 1, len(tokens)):
        ttype, value = tokens[j]
        if ttype in T.Whitespace or ttype in T.Newline or ttype in T.Comment:
            continue
        if ttype in T.Number.Integer and int(value) > max_rows:
            logger.info(f"[OK] LIMIT {value} lowered to {max_rows}")
            values[j] = str(max_rows)
        elif ttype in T.Keyword and value.upper() == "ALL":
            values[j] = str(max_rows)
        break
    return "".join(values)
